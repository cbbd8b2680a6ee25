from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Domain failure that the API layer turns into an error envelope.

    ``status_code`` picks the HTTP status, ``error_code`` the stable
    machine-readable code in the envelope, and ``detail`` is passed through
    as ``error.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input, policy violation or an out-of-range lifetime."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidClaimError(AuthenticationError):
    """Claim token unknown, expired or already used.

    Callers cannot tell the three cases apart.
    """

    def __init__(self, message: str = "invalid or expired claim token") -> None:
        super().__init__(message, detail={"action": "request_new_invitation"})


class ServiceAuthError(AuthenticationError):
    """Service token or request proof rejected; ``reason`` names the failed check."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, detail={"reason": reason})
        self.reason = reason


class ForbiddenError(ServiceError):
    """Authenticated, but the role or scope does not cover the action."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email already belongs to an account."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidClaimError",
    "ServiceAuthError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
