"""Authentication package implementing the Microsoft identity handshake."""

from backend.app.auth.enums import AuthFlow
from backend.app.auth.schemas import SessionRecord, Token, User

__all__ = ["AuthFlow", "SessionRecord", "Token", "User"]
