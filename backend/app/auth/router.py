"""FastAPI router for the login handshake and session guards."""
from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from backend.app.auth.schemas import LogoutResponse, SessionStatusResponse, User
from backend.app.auth.service import AuthHandler
from backend.app.auth.utils import unpack_state
from backend.app.config import AuthConfig
from backend.app.dependencies import raise_http
from backend.app.errors import ServiceError

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

LOGIN_PATH = "/api/v1/auth/login"


def get_auth_config(request: Request) -> AuthConfig:
    """Resolve the auth configuration from the application state."""

    return request.app.state.auth_config


def get_auth_handler(request: Request) -> AuthHandler:
    """Return the handshake handler, or 503 when the graph store is down."""

    handler = getattr(request.app.state, "auth_handler", None)
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is unavailable",
        )
    return handler


def get_session_key(
    request: Request, config: AuthConfig = Depends(get_auth_config)
) -> Optional[str]:
    """Return the session cookie value, if any."""

    return request.cookies.get(config.cookie_name)


async def require_session(
    session_key: Optional[str] = Depends(get_session_key),
    handler: AuthHandler = Depends(get_auth_handler),
) -> str:
    """Guard for API routes: 401 unless the session holds a live token."""

    try:
        logged_in = await handler.is_logged_in(session_key)
    except ServiceError as exc:
        raise_http(exc)
    if not logged_in or session_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")
    return session_key


async def require_login_redirect(
    request: Request,
    session_key: Optional[str] = Depends(get_session_key),
    handler: AuthHandler = Depends(get_auth_handler),
) -> str:
    """Guard for browser routes: redirect to the login route instead of 401."""

    try:
        logged_in = await handler.is_logged_in(session_key)
    except ServiceError as exc:
        raise_http(exc)
    if not logged_in or session_key is None:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        raise HTTPException(
            status_code=status.HTTP_302_FOUND,
            detail="Login required",
            headers={"Location": f"{LOGIN_PATH}?referrer={quote(target, safe='/')}"},
        )
    return session_key


def _redirect_with_session(config: AuthConfig, state: str, referrer: str) -> RedirectResponse:
    response = RedirectResponse(url=referrer, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        key=config.cookie_name,
        value=state,
        httponly=True,
        secure=config.cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


async def _complete(
    handler: AuthHandler, config: AuthConfig, credential: str, raw_state: str
) -> RedirectResponse:
    try:
        state, referrer = unpack_state(raw_state, config.default_referrer)
        await handler.complete(credential, state)
    except ServiceError as exc:
        raise_http(exc)
    return _redirect_with_session(config, state, referrer)


@router.get("/login")
async def login(
    referrer: Optional[str] = Query(default=None),
    handler: AuthHandler = Depends(get_auth_handler),
) -> RedirectResponse:
    """Start a login attempt and redirect to the identity provider."""

    try:
        result = await handler.login(referrer)
    except ServiceError as exc:
        raise_http(exc)
    return RedirectResponse(url=result.url, status_code=status.HTTP_302_FOUND)


@router.get("/authorize")
async def authorize_code(
    state: str = Query(..., min_length=1),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    handler: AuthHandler = Depends(get_auth_handler),
    config: AuthConfig = Depends(get_auth_config),
) -> RedirectResponse:
    """Authorization code callback."""

    if error or not code:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_description or error or "Missing authorization code",
        )
    return await _complete(handler, config, code, state)


@router.post("/authorize")
async def authorize_id_token(
    id_token: str = Form(..., min_length=1),
    state: str = Form(..., min_length=1),
    handler: AuthHandler = Depends(get_auth_handler),
    config: AuthConfig = Depends(get_auth_config),
) -> RedirectResponse:
    """Implicit flow callback posted by the identity provider."""

    return await _complete(handler, config, id_token, state)


@router.get("/user", response_model=User)
async def current_user(
    session_key: Optional[str] = Depends(get_session_key),
    handler: AuthHandler = Depends(get_auth_handler),
) -> User:
    """Return the signed-in user's name and email."""

    try:
        return await handler.get_user(session_key)
    except ServiceError as exc:
        raise_http(exc)


@router.get("/status", response_model=SessionStatusResponse)
async def session_status(
    session_key: Optional[str] = Depends(get_session_key),
    handler: AuthHandler = Depends(get_auth_handler),
) -> SessionStatusResponse:
    """Return authentication status for the current session."""

    try:
        if not await handler.is_logged_in(session_key):
            return SessionStatusResponse(authenticated=False, user=None)
        user = await handler.get_user(session_key)
    except ServiceError as exc:
        raise_http(exc)
    return SessionStatusResponse(authenticated=True, user=user)


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    response: Response,
    session_key: Optional[str] = Depends(get_session_key),
    handler: AuthHandler = Depends(get_auth_handler),
    config: AuthConfig = Depends(get_auth_config),
) -> LogoutResponse:
    """Delete the server-side session and clear the cookie."""

    if not session_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No session")
    try:
        await handler.logout(session_key)
    except ServiceError as exc:
        raise_http(exc)
    response.delete_cookie(config.cookie_name, path="/")
    return LogoutResponse(message="Logged out")


__all__ = [
    "router",
    "get_auth_config",
    "get_auth_handler",
    "get_session_key",
    "require_login_redirect",
    "require_session",
]
