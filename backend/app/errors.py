"""Error taxonomy shared by the data access layer and the identity handshake."""
from __future__ import annotations

from fastapi import status


class ServiceError(RuntimeError):
    """Raised when a core operation fails.

    The ``reason`` attribute is a transport-neutral classification that the
    HTTP layer translates into a status code.
    """

    reason = "bad_request"

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ValidationError(ServiceError):
    """Caller input rejected before reaching the graph store."""

    reason = "bad_request"


class NotFoundError(ServiceError):
    """Topic, reference, session, or signing key is absent."""

    reason = "not_found"


class ConflictError(ServiceError):
    """Uniqueness violated (duplicate topic name or session key)."""

    reason = "conflict"


class StoreError(ServiceError):
    """Graph store transport or driver failure."""

    reason = "unavailable"


class AuthError(ServiceError):
    """Identity token, nonce, or session validation failed."""

    reason = "unauthorized"


class IdentityProviderError(ServiceError):
    """The identity provider could not be reached or answered with an error."""

    reason = "bad_gateway"


def status_from_reason(reason: str) -> int:
    """Translate service error reasons into HTTP status codes."""

    mapping = {
        "bad_request": status.HTTP_400_BAD_REQUEST,
        "conflict": status.HTTP_409_CONFLICT,
        "unauthorized": status.HTTP_401_UNAUTHORIZED,
        "forbidden": status.HTTP_403_FORBIDDEN,
        "not_found": status.HTTP_404_NOT_FOUND,
        "unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
        "bad_gateway": status.HTTP_502_BAD_GATEWAY,
    }
    return mapping.get(reason, status.HTTP_500_INTERNAL_SERVER_ERROR)


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StoreError",
    "AuthError",
    "IdentityProviderError",
    "status_from_reason",
]
