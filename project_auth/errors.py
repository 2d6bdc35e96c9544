"""Typed authentication errors.

Every failure the auth core produces is an ``AuthError`` with a stable
machine-readable ``code``, a human-readable ``message`` and the HTTP status
the boundary layer should answer with. Rate-limited errors also carry
``retry_after_seconds``.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Category of an auth failure, independent of transport."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INTERNAL = "internal"


class AuthError(Exception):
    """Base class for all well-kinded auth failures."""

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "INTERNAL_SERVER_ERROR"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[dict[str, Any]] = None,
        retry_after_seconds: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.details = dict(details or {})
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.details["retryAfterSeconds"] = retry_after_seconds
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{"message", "code", "details"}`` error body."""
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details or None,
        }


class EmailInUseError(AuthError):
    kind = ErrorKind.CONFLICT
    code = "EMAIL_IN_USE"
    status_code = 409
    default_message = "This email address is already in use"


class UserNotFoundError(AuthError):
    kind = ErrorKind.NOT_FOUND
    code = "USER_NOT_FOUND"
    status_code = 404
    default_message = "Account not found"


class AlreadyVerifiedError(AuthError):
    kind = ErrorKind.VALIDATION
    code = "ALREADY_VERIFIED"
    status_code = 400
    default_message = "This account is already verified"


class OtpNotFoundError(AuthError):
    kind = ErrorKind.NOT_FOUND
    code = "OTP_NOT_FOUND"
    status_code = 400
    default_message = "No active code found, please request a new one"


class OtpExpiredError(AuthError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "OTP_EXPIRED"
    status_code = 400
    default_message = "The code has expired"


class OtpInvalidError(AuthError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "OTP_INVALID"
    status_code = 400
    default_message = "The code is incorrect"


class OtpRateLimitedError(AuthError):
    kind = ErrorKind.RATE_LIMITED
    code = "OTP_RATE_LIMITED"
    status_code = 429
    default_message = "Codes are being requested too often"


class AccountLockedError(AuthError):
    kind = ErrorKind.RATE_LIMITED
    code = "ACCOUNT_LOCKED"
    status_code = 429
    default_message = "Too many failed sign-in attempts, please wait and try again"


class InvalidCredentialsError(AuthError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class EmailNotVerifiedError(AuthError):
    kind = ErrorKind.FORBIDDEN
    code = "EMAIL_NOT_VERIFIED"
    status_code = 403
    default_message = "Please verify your email before signing in"


class InvalidTokenError(AuthError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "INVALID_TOKEN"
    status_code = 401
    default_message = "Invalid or expired token"


class UnauthenticatedError(AuthError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class EmailDeliveryError(AuthError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    code = "EMAIL_SEND_FAILED"
    status_code = 503
    default_message = "Unable to send email right now, please try again later"


class OtpAttemptsExceededError(AuthError):
    kind = ErrorKind.RATE_LIMITED
    code = "OTP_ATTEMPTS_EXCEEDED"
    status_code = 400
    default_message = "Too many incorrect codes, please request a new one"


class RateLimitedError(AuthError):
    kind = ErrorKind.RATE_LIMITED
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests, please try again later"
