"""Pydantic schemas for the login handshake and session records."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _FrozenModel(BaseModel):
    """Base immutable schema."""

    model_config = ConfigDict(frozen=True)


class Token(_FrozenModel):
    """Credential material obtained from the identity provider.

    The code flow fills the access token fields; the id-token flow fills the
    identity claims. Either flow may populate both.
    """

    token: str = Field(..., min_length=1)
    token_type: str = Field("Bearer", min_length=1)
    issued_at: datetime
    expires_in: Optional[int] = Field(default=None, ge=0)
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    name: Optional[str] = None
    preferred_username: Optional[str] = None
    email: Optional[str] = None


class SessionRecord(_FrozenModel):
    """Server-side state for one login attempt, keyed by its state token."""

    key: str = Field(..., min_length=1)
    verifier: Optional[str] = None
    nonce: Optional[str] = None
    created_at: datetime
    token: Optional[Token] = None


class User(_FrozenModel):
    """Public projection of the identity claims."""

    name: str
    email: str


class LoginResult(_FrozenModel):
    """Authorization URL to redirect to and the state token to remember."""

    url: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class SessionStatusResponse(_FrozenModel):
    """Response payload describing authentication state."""

    authenticated: bool
    user: Optional[User] = None


class LogoutResponse(_FrozenModel):
    """Response payload confirming logout."""

    message: str = Field(..., min_length=1)


__all__ = [
    "LoginResult",
    "LogoutResponse",
    "SessionRecord",
    "SessionStatusResponse",
    "Token",
    "User",
]
