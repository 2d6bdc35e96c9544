"""Models package exports."""

from project_auth.models.auth import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OkPayload,
    RegisterRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    SessionPayload,
    UserPayload,
    VerifyEmailRequest,
)
from project_auth.models.user import (
    AccountType,
    EmailOtp,
    OtpPurpose,
    RefreshSession,
    User,
)

__all__ = [
    "AccountType",
    "EmailOtp",
    "Envelope",
    "ForgotPasswordRequest",
    "LoginRequest",
    "OkPayload",
    "OtpPurpose",
    "RefreshSession",
    "RegisterRequest",
    "ResendOtpRequest",
    "ResetPasswordRequest",
    "SessionPayload",
    "User",
    "UserPayload",
    "VerifyEmailRequest",
]
