from __future__ import annotations

from datetime import timedelta

import pytest
import yaml

from backend.app.config import AppConfig, AuthConfig, ConfigError, load_config

AUTH_ENV_KEYS = (
    "IR_AUTH_CLIENT_ID",
    "IR_AUTH_CLIENT_SECRET",
    "IR_AUTH_TENANT",
    "IR_AUTH_FLOW",
    "IR_PUBLIC_BASE_URL",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    load_config.cache_clear()
    monkeypatch.setenv("IR_SKIP_ENV_FILE", "1")
    for key in AUTH_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    load_config.cache_clear()


def test_config_loads_expected_structure() -> None:
    config = load_config()
    assert isinstance(config, AppConfig)
    assert config.service.name == "ir-topic-refs"
    assert config.api.default_page_size == 50
    assert config.auth.flow == "code"
    assert config.auth.cookie_name == "ir_session"
    assert config.auth.default_referrer == "/api/v1/"
    assert config.auth.session_ttl is None
    assert config.auth.scopes == ["openid", "profile", "email"]


def test_auth_endpoints_derive_from_authority_and_tenant() -> None:
    auth = AuthConfig(
        client_id="abc",
        client_secret="shh",
        tenant="contoso.onmicrosoft.com",
        public_base_url="https://refs.example.org/",
    )
    assert auth.authorize_url == (
        "https://login.microsoftonline.com/contoso.onmicrosoft.com/oauth2/v2.0/authorize"
    )
    assert auth.token_url.endswith("/oauth2/v2.0/token")
    assert auth.jwks_url == "https://login.microsoftonline.com/contoso.onmicrosoft.com/discovery/v2.0/keys"
    assert auth.redirect_uri == "https://refs.example.org/api/v1/auth/authorize"


def test_code_flow_requires_client_secret() -> None:
    with pytest.raises(ValueError):
        AuthConfig(client_id="abc", public_base_url="https://refs.example.org")
    implicit = AuthConfig(client_id="abc", flow="id_token", public_base_url="https://refs.example.org")
    assert implicit.client_secret == ""


def test_openid_scope_is_always_requested() -> None:
    auth = AuthConfig(
        client_id="abc",
        client_secret="shh",
        public_base_url="https://refs.example.org",
        scopes=["profile"],
    )
    assert auth.scopes[0] == "openid"


def test_session_ttl_is_optional() -> None:
    auth = AuthConfig(
        client_id="abc",
        client_secret="shh",
        public_base_url="https://refs.example.org",
        session_ttl_minutes=30,
    )
    assert auth.session_ttl == timedelta(minutes=30)


def test_auth_settings_override_from_env(monkeypatch) -> None:
    monkeypatch.setenv("IR_AUTH_CLIENT_ID", "env-client")
    monkeypatch.setenv("IR_AUTH_TENANT", "tenant-from-env")
    monkeypatch.setenv("IR_PUBLIC_BASE_URL", "https://env.example.org")
    config = load_config()
    assert config.auth.client_id == "env-client"
    assert config.auth.tenant == "tenant-from-env"
    assert config.auth.redirect_uri == "https://env.example.org/api/v1/auth/authorize"


def test_auth_settings_loaded_from_env_file(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# local secrets\n"
        "export IR_AUTH_CLIENT_ID='file-client'\n"
        "IR_AUTH_CLIENT_SECRET=file-secret # inline comment\n",
        encoding="utf-8",
    )
    # Blank values are replaced by the file and restored by monkeypatch afterwards.
    monkeypatch.setenv("IR_AUTH_CLIENT_ID", "")
    monkeypatch.setenv("IR_AUTH_CLIENT_SECRET", "")
    monkeypatch.delenv("IR_SKIP_ENV_FILE", raising=False)
    monkeypatch.setenv("IR_ENV_FILE", str(env_file))
    config = load_config()
    assert config.auth.client_id == "file-client"
    assert config.auth.client_secret == "file-secret"


def test_invalid_yaml_raises_config_error(tmp_path) -> None:
    broken = tmp_path / "config.yaml"
    broken.write_text("service: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken)


def test_missing_sections_raise_config_error(tmp_path) -> None:
    partial = tmp_path / "config.yaml"
    partial.write_text(yaml.safe_dump({"service": {"name": "x", "version": "1"}}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(partial)


def test_missing_file_raises_config_error(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml")
