"""Identity handshake against the Microsoft identity platform."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from backend.app.auth.enums import AuthFlow
from backend.app.auth.schemas import LoginResult, SessionRecord, Token, User
from backend.app.auth.utils import (
    IdTokenVerifier,
    extract_email,
    generate_nonce,
    generate_pkce_pair,
    generate_state_token,
    pack_state,
)
from backend.app.config import AuthConfig
from backend.app.errors import AuthError, IdentityProviderError, NotFoundError
from backend.app.graph.database import Database

LOGGER = logging.getLogger(__name__)


class AuthHandler:
    """Drive the login state machine and answer session validity checks.

    A session moves from *started* (record holds a PKCE verifier or nonce) to
    *completed* (record holds a token) exactly once.
    """

    def __init__(
        self,
        config: AuthConfig,
        database: Database,
        verifier: IdTokenVerifier,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._database = database
        self._verifier = verifier
        self._http_client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._flow = AuthFlow(config.flow)

    @property
    def flow(self) -> AuthFlow:
        return self._flow

    @staticmethod
    def _now() -> datetime:
        """Return current UTC timestamp."""

        return datetime.now(timezone.utc)

    async def aclose(self) -> None:
        await self._http_client.aclose()

    def _session_expired(self, record: SessionRecord, now: datetime) -> bool:
        ttl = self._config.session_ttl
        if ttl is None:
            return False
        created_at = record.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return created_at + ttl <= now

    async def login(self, referrer: Optional[str] = None) -> LoginResult:
        """Start a login attempt and return the provider authorization URL.

        Args:
            referrer: Local path to return to once the handshake completes.

        Returns:
            LoginResult: Redirect URL and the state token that keys the session.
        """

        state = generate_state_token()
        params: Dict[str, str] = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": self._flow.value,
            "response_mode": self._flow.response_mode,
            "scope": " ".join(self._config.scopes),
            "state": pack_state(state, referrer, self._config.default_referrer),
        }
        verifier: Optional[str] = None
        nonce: Optional[str] = None
        if self._flow is AuthFlow.CODE:
            verifier, challenge = generate_pkce_pair()
            params["code_challenge"] = challenge
            params["code_challenge_method"] = "S256"
        else:
            nonce = generate_nonce()
            params["nonce"] = nonce

        record = SessionRecord(key=state, verifier=verifier, nonce=nonce, created_at=self._now())
        await self._database.create_session(state, record)
        LOGGER.info("Login started", extra={"flow": self._flow.value})
        return LoginResult(url=f"{self._config.authorize_url}?{urlencode(params)}", state=state)

    async def _load_pending_session(self, state: str) -> SessionRecord:
        record = await self._database.get_session(state)
        if self._session_expired(record, self._now()):
            raise NotFoundError("Session expired")
        if record.token is not None:
            LOGGER.warning("Rejected replayed login callback")
            raise AuthError("Session already completed")
        return record

    async def complete(self, code_or_id_token: str, state: str) -> Token:
        """Finish the handshake for ``state`` and persist the resulting token.

        Raises:
            NotFoundError: If the session or the token's signing key is absent.
            AuthError: If the token fails validation or the session was used.
            IdentityProviderError: If the provider cannot be reached.
        """

        record = await self._load_pending_session(state)
        if self._flow is AuthFlow.CODE:
            token = await self._exchange_code(code_or_id_token, record)
        else:
            token = await self._accept_id_token(code_or_id_token, record)
        await self._database.update_session(state, token)
        LOGGER.info("Login completed", extra={"flow": self._flow.value})
        return token

    async def _exchange_code(self, code: str, record: SessionRecord) -> Token:
        if not record.verifier:
            raise AuthError("Session has no PKCE verifier")
        form = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
            "code_verifier": record.verifier,
            "scope": " ".join(self._config.scopes),
        }
        try:
            response = await self._http_client.post(self._config.token_url, data=form)
        except httpx.HTTPError as exc:
            LOGGER.error("Token endpoint unreachable", exc_info=True)
            raise IdentityProviderError("Identity provider unreachable") from exc
        if response.status_code in (400, 401):
            LOGGER.warning(
                "Authorization code rejected",
                extra={"status_code": response.status_code},
            )
            raise AuthError("Authorization code rejected by identity provider")
        if response.is_error:
            raise IdentityProviderError(
                f"Token endpoint returned HTTP {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token")
        if not access_token:
            raise IdentityProviderError("Token endpoint response missing access_token")

        issued_at = self._now()
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            try:
                expires_in = int(expires_in)
            except (TypeError, ValueError) as exc:
                raise IdentityProviderError(
                    "Token endpoint returned an invalid expires_in"
                ) from exc
            if expires_in < 0:
                raise IdentityProviderError("Token endpoint returned a negative expires_in")
            expires_at = issued_at + timedelta(seconds=expires_in)
        claims = self._unverified_claims(payload.get("id_token"))
        return Token(
            token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            issued_at=issued_at,
            expires_in=expires_in,
            expires_at=expires_at,
            refresh_token=payload.get("refresh_token"),
            name=claims.get("name"),
            preferred_username=claims.get("preferred_username"),
            email=extract_email(claims),
        )

    @staticmethod
    def _unverified_claims(id_token: Optional[str]) -> Mapping[str, Any]:
        # Received directly from the token endpoint over TLS.
        if not id_token:
            return {}
        try:
            return jwt.get_unverified_claims(id_token)
        except JWTError:
            LOGGER.warning("Ignoring malformed id_token in token response")
            return {}

    async def _accept_id_token(self, id_token: str, record: SessionRecord) -> Token:
        claims = await self._verifier.verify(id_token)
        if not record.nonce or claims.get("nonce") != record.nonce:
            LOGGER.warning("Id token nonce mismatch")
            raise AuthError("Id token nonce does not match session")
        now = self._now()
        issued = claims.get("iat")
        expiry = claims.get("exp")
        issued_at = datetime.fromtimestamp(int(issued), tz=timezone.utc) if issued else now
        expires_at = datetime.fromtimestamp(int(expiry), tz=timezone.utc) if expiry else None
        return Token(
            token=id_token,
            token_type="id_token",
            issued_at=issued_at,
            expires_in=int((expires_at - issued_at).total_seconds()) if expires_at else None,
            expires_at=expires_at,
            name=claims.get("name"),
            preferred_username=claims.get("preferred_username"),
            email=extract_email(claims),
        )

    async def _current_token(self, session_key: Optional[str]) -> Optional[Token]:
        if not session_key:
            return None
        try:
            record = await self._database.get_session(session_key)
        except NotFoundError:
            return None
        now = self._now()
        if self._session_expired(record, now):
            return None
        token = record.token
        if token is None or token.expires_at is None:
            return None
        expires_at = token.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if now >= expires_at:
            return None
        return token

    async def is_logged_in(self, session_key: Optional[str]) -> bool:
        """Return whether the session holds an unexpired token.

        Missing sessions and tokens read as ``False``; store failures propagate.
        """

        return await self._current_token(session_key) is not None

    async def get_user(self, session_key: Optional[str]) -> User:
        token = await self._current_token(session_key)
        if token is None:
            raise AuthError("Not logged in")
        email = token.email or token.preferred_username or ""
        name = token.name or email
        return User(name=name, email=email)

    async def logout(self, session_key: str) -> None:
        await self._database.delete_session(session_key)
        LOGGER.info("Session logged out")

    async def purge_expired_sessions(self) -> int:
        """Delete sessions older than the configured TTL; no-op without a TTL."""

        ttl = self._config.session_ttl
        if ttl is None:
            return 0
        return await self._database.purge_sessions(self._now() - ttl)


__all__ = ["AuthHandler"]
