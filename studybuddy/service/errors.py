from __future__ import annotations

from typing import Optional

UNAUTHORIZED_MESSAGE = "Not authorized to access this route"
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_credentials (401)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationFailedError(ServiceError):
    """Request input is malformed or fails a business rule (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "Validation failed"


class InvalidCredentialsError(ServiceError):
    """Email/password pair rejected; never says which half was wrong (401)."""
    status_code = 401
    error_code = "invalid_credentials"
    default_message = INVALID_CREDENTIALS_MESSAGE


class UnauthorizedError(ServiceError):
    """Missing, malformed, expired, forged or revoked token (401).

    The message is identical for every cause.
    """
    status_code = 401
    error_code = "unauthorized"
    default_message = UNAUTHORIZED_MESSAGE


class ForbiddenError(ServiceError):
    """Authenticated but not allowed, e.g. unverified email at login (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden"


class NotFoundError(ServiceError):
    """Requested resource or token not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Duplicate unique field or invalid state transition (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many attempts. Please try again later."


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "Server Error"


__all__ = [
    "UNAUTHORIZED_MESSAGE",
    "INVALID_CREDENTIALS_MESSAGE",
    "ServiceError",
    "ValidationFailedError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
