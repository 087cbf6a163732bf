from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that ends up in the error envelope.
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


class EmailTakenError(ServiceError):
    """Registration with an email that already has an account (400)."""
    status_code = 400
    error_code = "email_taken"

    def __init__(self, message: str = "User already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(ServiceError):
    """Verification token unknown or already consumed (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid verification token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(ServiceError):
    """Refresh (403) or reset (400) token unknown, consumed or past expiry."""
    status_code = 403
    error_code = "invalid_or_expired_token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotVerifiedError(AuthenticationError):
    """Correct password but the email address is not yet verified."""
    error_code = "not_verified"

    def __init__(
        self, message: str = "Please verify your email before logging in", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PayloadTooLargeError(ServiceError):
    """Upload exceeds the configured size limit (413)."""
    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, message: str = "File too large", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Too many requests from one client inside the window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "Too many requests, please try again later", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "EmailTakenError",
    "InvalidTokenError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NotVerifiedError",
    "ForbiddenError",
    "NotFoundError",
    "PayloadTooLargeError",
    "RateLimitedError",
    "ServerError",
    "InternalError",
]
