"""Shared authentication enums."""
from __future__ import annotations

from enum import Enum


class AuthFlow(str, Enum):
    """OAuth2 grant used against the identity provider."""

    CODE = "code"
    ID_TOKEN = "id_token"

    @property
    def response_mode(self) -> str:
        """Return how the provider delivers the callback parameters."""

        return "query" if self is AuthFlow.CODE else "form_post"


__all__ = ["AuthFlow"]
