"""Utilities for state tokens, PKCE, and Microsoft id-token verification."""
from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import string
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
from jose import JWTError, jwt

from backend.app.errors import AuthError, IdentityProviderError, NotFoundError, ValidationError

LOGGER = logging.getLogger(__name__)

STATE_ALPHABET = string.ascii_letters + string.digits
STATE_LENGTH = 32
DEFAULT_REFERRER = "/api/v1/"

_STATE_PREFIX = "State="
_REFERRER_PREFIX = "Referrer="


def generate_state_token(length: int = STATE_LENGTH) -> str:
    """Return a random alphanumeric token used as state and session key."""

    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(length))


def generate_nonce(size: int = 32) -> str:
    return secrets.token_urlsafe(size)


def generate_pkce_pair() -> Tuple[str, str]:
    """Return a PKCE ``(verifier, challenge)`` pair using the S256 method."""

    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def safe_referrer(referrer: Optional[str], default: str = DEFAULT_REFERRER) -> str:
    """Restrict post-login redirects to local absolute paths."""

    if not referrer:
        return default
    candidate = referrer.strip()
    if not candidate.startswith("/") or candidate.startswith("//") or "\\" in candidate:
        LOGGER.warning("Rejected non-local referrer", extra={"referrer": candidate})
        return default
    return candidate


def pack_state(state: str, referrer: Optional[str], default: str = DEFAULT_REFERRER) -> str:
    """Combine the state token and referrer so both survive the provider round trip."""

    return f"{_STATE_PREFIX}{state}&{_REFERRER_PREFIX}{safe_referrer(referrer, default)}"


def unpack_state(raw_state: str, default: str = DEFAULT_REFERRER) -> Tuple[str, str]:
    """Split a packed state back into ``(state, referrer)``.

    A bare token without the ``State=`` prefix is accepted and paired with the
    default referrer.

    Raises:
        ValidationError: If the state token is empty.
    """

    if not raw_state.startswith(_STATE_PREFIX):
        state, referrer = raw_state.strip(), default
    else:
        state_part, _, referrer_part = raw_state.partition("&")
        state = state_part[len(_STATE_PREFIX) :]
        referrer = default
        if referrer_part.startswith(_REFERRER_PREFIX):
            referrer = safe_referrer(referrer_part[len(_REFERRER_PREFIX) :], default)
    if not state:
        raise ValidationError("Missing state token")
    return state, referrer


def extract_email(claims: Mapping[str, Any]) -> Optional[str]:
    """Return the first claim that looks like an email address."""

    for claim_name in ("email", "preferred_username", "upn", "unique_name"):
        value = claims.get(claim_name)
        if isinstance(value, str) and "@" in value:
            return value.strip().lower()
    return None


class JWKSClient:
    """Fetch and cache the provider's JSON Web Key Set."""

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient,
        cache_seconds: int = 3600,
        min_refresh_seconds: float = 60.0,
    ) -> None:
        self._url = url
        self._http_client = http_client
        self._cache_seconds = cache_seconds
        self._min_refresh_seconds = min_refresh_seconds
        self._keys: Optional[List[Dict[str, Any]]] = None
        self._fetched_at = 0.0
        self._forced_at: Optional[float] = None

    async def get_keys(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        now = time.monotonic()
        if (
            not force_refresh
            and self._keys is not None
            and now - self._fetched_at < self._cache_seconds
        ):
            return self._keys
        try:
            response = await self._http_client.get(self._url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.error("Failed to fetch signing keys", extra={"url": self._url}, exc_info=True)
            raise IdentityProviderError("Unable to fetch identity provider signing keys") from exc
        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise IdentityProviderError("Invalid JWKS response: missing 'keys' field")
        self._keys = keys
        self._fetched_at = now
        return keys

    async def get_signing_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the key with ``kid``, refreshing the cache once on a miss.

        Forced refreshes are spaced at least ``min_refresh_seconds`` apart, so
        unknown key ids cannot drive one provider request per call.
        """

        for key in await self.get_keys():
            if key.get("kid") == kid:
                return key
        now = time.monotonic()
        if self._forced_at is not None and now - self._forced_at < self._min_refresh_seconds:
            LOGGER.warning("Signing key refresh throttled", extra={"kid": kid})
            return None
        self._forced_at = now
        LOGGER.info("Signing key not cached; refreshing key set", extra={"kid": kid})
        for key in await self.get_keys(force_refresh=True):
            if key.get("kid") == kid:
                return key
        return None


class IdTokenVerifier:
    """Verify id tokens issued for the configured client."""

    def __init__(
        self,
        jwks_client: JWKSClient,
        client_id: str,
        algorithms: Sequence[str] = ("RS256",),
        issuer_prefix: Optional[str] = None,
    ) -> None:
        self._jwks_client = jwks_client
        self._client_id = client_id
        self._algorithms = list(algorithms)
        self._issuer_prefix = issuer_prefix

    async def verify(self, id_token: str) -> Dict[str, Any]:
        """Validate signature, audience and expiry, returning the claims.

        Raises:
            AuthError: If the token is malformed, forged, expired, or issued
                for another audience.
            NotFoundError: If its signing key is not in the key set.
        """

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise AuthError("Malformed id token") from exc
        kid = header.get("kid")
        if not kid:
            raise AuthError("Id token header is missing 'kid'")
        signing_key = await self._jwks_client.get_signing_key(kid)
        if signing_key is None:
            raise NotFoundError(f"Signing key '{kid}' not found in key set")
        try:
            claims = jwt.decode(
                id_token,
                signing_key,
                algorithms=self._algorithms,
                audience=self._client_id,
                options={"verify_at_hash": False, "leeway": 10},
            )
        except JWTError as exc:
            LOGGER.warning("Rejected id token", extra={"kid": kid, "error": str(exc)})
            raise AuthError("Id token verification failed") from exc
        issuer = claims.get("iss", "")
        if self._issuer_prefix and not str(issuer).startswith(self._issuer_prefix):
            raise AuthError(f"Unexpected token issuer: {issuer}")
        return claims


__all__ = [
    "DEFAULT_REFERRER",
    "IdTokenVerifier",
    "JWKSClient",
    "STATE_LENGTH",
    "extract_email",
    "generate_nonce",
    "generate_pkce_pair",
    "generate_state_token",
    "pack_state",
    "safe_referrer",
    "unpack_state",
]
