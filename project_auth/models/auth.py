"""Auth request and response models with validation."""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from project_auth.models.user import User

T = TypeVar("T")


class RegisterRequest(BaseModel):
    """New account registration.

    Attributes:
        email: Account email (normalized to lowercase by the service)
        password: Plain-text password (min 8 chars)
        name: Display name (min 2 chars)
    """

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=256)
    name: str = Field(..., min_length=2, max_length=255)

    @field_validator("password")
    @classmethod
    def password_not_empty(cls, v: str) -> str:
        """Ensure password is not empty or whitespace only."""
        if not v.strip():
            raise ValueError("Password cannot be empty or whitespace only")
        return v

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        stripped = v.strip()
        if len(stripped) < 2:
            raise ValueError("Name must contain at least 2 characters")
        return stripped


class VerifyEmailRequest(BaseModel):
    """Email verification with a one-time code."""

    email: EmailStr
    code: str = Field(..., min_length=1, max_length=32)


class ResendOtpRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    """Login credentials."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Password reset with the code delivered by email.

    Attributes:
        email: Account email
        token: One-time reset code from the email link
        password: New plain-text password (min 8 chars)
    """

    email: EmailStr
    token: str = Field(..., min_length=1, max_length=32)
    password: str = Field(..., min_length=8, max_length=256)

    @field_validator("password")
    @classmethod
    def password_not_empty(cls, v: str) -> str:
        """Ensure password is not empty or whitespace only."""
        if not v.strip():
            raise ValueError("Password cannot be empty or whitespace only")
        return v


class CamelModel(BaseModel):
    """Response model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserPayload(CamelModel):
    user: User


class SessionPayload(CamelModel):
    """Access token and user returned by login and refresh.

    Both fields are null when refresh finds no usable session.
    """

    access_token: Optional[str] = None
    user: Optional[User] = None


class OkPayload(CamelModel):
    ok: bool = True


class Envelope(CamelModel, Generic[T]):
    """Success envelope: ``{"data": ..., "message": ...}``."""

    data: T
    message: Optional[str] = None
