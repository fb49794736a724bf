from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on.
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
    """Request validation failed."""
    status_code = 422
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Unknown email, password-less account or wrong password (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class DuplicateAccount(ServiceError):
    status_code = 409
    error_code = "duplicate_account"


class EmailNotVerified(ServiceError):
    status_code = 403
    error_code = "email_not_verified"


class InvalidCredential(ServiceError):
    """Signed token failed signature, format, issuer, audience or kind checks (401)."""
    status_code = 401
    error_code = "invalid_credential"


class ExpiredCredential(InvalidCredential):
    """Signed token is authentic but past its expiry (401)."""
    error_code = "expired_credential"


class SessionRevoked(ServiceError):
    """Refresh token is well formed but its session is not active (401)."""
    status_code = 401
    error_code = "session_revoked"


class InvalidOrExpiredToken(ServiceError):
    """Single-use action token is unknown, used, expired or of the wrong kind (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"


class InvalidAssertion(ServiceError):
    status_code = 401
    error_code = "invalid_assertion"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "DuplicateAccount",
    "EmailNotVerified",
    "InvalidCredential",
    "ExpiredCredential",
    "SessionRevoked",
    "InvalidOrExpiredToken",
    "InvalidAssertion",
    "RateLimitedError",
]
