"""Configuration loader for the topic reference service."""
from __future__ import annotations

import logging
import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

# Environment variable -> (section, key) overrides applied before validation.
AUTH_ENV_OVERRIDES = {
    "IR_AUTH_CLIENT_ID": "client_id",
    "IR_AUTH_CLIENT_SECRET": "client_secret",
    "IR_AUTH_TENANT": "tenant",
    "IR_AUTH_FLOW": "flow",
    "IR_PUBLIC_BASE_URL": "public_base_url",
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class ServiceConfig(_FrozenModel):
    """Service identity reported by health and envelope payloads."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)


class GraphConfig(_FrozenModel):
    """Graph store connection settings."""

    uri: Optional[str] = Field(default=None)
    username: Optional[str] = Field(default=None)
    password: Optional[str] = Field(default=None)
    database: Optional[str] = Field(default=None)
    connection_timeout_seconds: float = Field(10.0, gt=0)
    apply_schema_on_startup: bool = True


class APIConfig(_FrozenModel):
    """HTTP layer defaults."""

    default_page_size: int = Field(50, ge=1)
    max_page_size: int = Field(500, ge=1)
    allowed_origins: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_page_sizes(self) -> "APIConfig":
        if self.default_page_size > self.max_page_size:
            msg = "api.default_page_size cannot exceed api.max_page_size"
            raise ValueError(msg)
        return self


class AuthConfig(_FrozenModel):
    """Microsoft identity platform settings."""

    enabled: bool = True
    flow: Literal["code", "id_token"] = "code"
    authority: str = Field("https://login.microsoftonline.com", min_length=1)
    tenant: str = Field("common", min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(default="")
    public_base_url: str = Field(..., min_length=1)
    scopes: List[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    http_timeout_seconds: float = Field(10.0, gt=0)
    jwks_cache_seconds: int = Field(3600, ge=0)
    jwks_min_refresh_seconds: float = Field(60.0, ge=0)
    session_ttl_minutes: Optional[int] = Field(default=None, ge=1)
    session_reap_interval_seconds: int = Field(300, ge=1)
    cookie_name: str = Field("ir_session", min_length=1)
    cookie_secure: bool = True
    default_referrer: str = Field("/api/v1/", min_length=1)

    @field_validator("public_base_url", "authority")
    @classmethod
    def _validate_absolute_url(cls, value: str) -> str:
        """Reject relative URLs; the redirect URI must be absolute."""

        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            msg = f"'{value}' must be an absolute http(s) URL"
            raise ValueError(msg)
        return normalized

    @field_validator("scopes")
    @classmethod
    def _require_openid_scope(cls, value: List[str]) -> List[str]:
        normalized = [scope.strip() for scope in value if scope and scope.strip()]
        if "openid" not in normalized:
            normalized.insert(0, "openid")
        return normalized

    @model_validator(mode="after")
    def _require_secret_for_code_flow(self) -> "AuthConfig":
        if self.enabled and self.flow == "code" and not self.client_secret:
            msg = "auth.client_secret is required for the authorization code flow"
            raise ValueError(msg)
        return self

    @property
    def base_url(self) -> str:
        """Return the tenant-scoped OAuth2 v2.0 endpoint prefix."""

        return f"{self.authority}/{self.tenant}/oauth2/v2.0"

    @property
    def authorize_url(self) -> str:
        return f"{self.base_url}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}/token"

    @property
    def jwks_url(self) -> str:
        return f"{self.authority}/{self.tenant}/discovery/v2.0/keys"

    @property
    def redirect_uri(self) -> str:
        return f"{self.public_base_url}/api/v1/auth/authorize"

    @property
    def session_ttl(self) -> Optional[timedelta]:
        """Return the session lifetime, or ``None`` when sessions never expire."""

        if self.session_ttl_minutes is None:
            return None
        return timedelta(minutes=self.session_ttl_minutes)


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    service: ServiceConfig
    graph: GraphConfig
    api: APIConfig
    auth: AuthConfig

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


def _determine_env_file_path() -> Optional[Path]:
    """Return the path to the environment file if one should be loaded."""

    if os.getenv("IR_SKIP_ENV_FILE"):
        return None
    override = os.getenv("IR_ENV_FILE")
    if override:
        candidate = Path(override).expanduser()
        if candidate.exists():
            return candidate
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
        return None
    if DEFAULT_ENV_FILE.exists():
        return DEFAULT_ENV_FILE
    return None


def _strip_inline_comment(value: str) -> str:
    """Remove inline comments from an environment value when unquoted."""

    comment_index = value.find("#")
    if comment_index == -1:
        return value
    return value[:comment_index].rstrip()


def _load_env_file(path: Path) -> None:
    """Populate ``os.environ`` with values read from a ``.env`` file.

    Variables already present in the environment win over the file.
    """

    try:
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.lower().startswith("export "):
                    line = line[7:].lstrip()
                if "=" not in line:
                    continue
                key, raw_value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                existing_value = os.environ.get(key)
                if existing_value is not None and existing_value.strip() != "":
                    continue
                value = raw_value.strip()
                if value and value[0] in {'"', "'"} and value[-1] == value[0]:
                    os.environ[key] = value[1:-1]
                    continue
                os.environ[key] = _strip_inline_comment(value)
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.
    """

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        _load_env_file(env_file_path)

    auth_section = raw_content.setdefault("auth", {})
    overridden: List[str] = []
    for env_key, config_key in AUTH_ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value is None or not value.strip():
            continue
        auth_section[config_key] = value.strip()
        overridden.append(config_key)
    if overridden:
        LOGGER.info(
            "Auth settings overridden from environment",
            extra={"keys": sorted(overridden)},
        )
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
