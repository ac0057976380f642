from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` so
    clients can branch on the code rather than on the message text:
    - validation_error (400)
    - unauthorized / invalid_credentials / invalid_token (401)
    - forbidden / ownership_violation (403)
    - not_found (404)
    - conflict / duplicate_email / duplicate_profile / duplicate_schedule /
      invalid_operation (409)
    - upload_failed (502)
    - server_error (500)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match (401)."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Bearer token is malformed, forged or expired (401)."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class OwnershipError(ForbiddenError):
    """Parent resource is missing or belongs to another user (403)."""
    error_code = "ownership_violation"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"


class DuplicateProfileError(ConflictError):
    error_code = "duplicate_profile"


class DuplicateScheduleError(ConflictError):
    error_code = "duplicate_schedule"


class InvalidOperationError(ConflictError):
    """Operation is not allowed in the resource's current state (409)."""
    error_code = "invalid_operation"


class ImageUploadError(ServiceError):
    """Image storage backend failed (502)."""
    status_code = 502
    error_code = "upload_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "OwnershipError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "DuplicateProfileError",
    "DuplicateScheduleError",
    "InvalidOperationError",
    "ImageUploadError",
    "ServerError",
]
