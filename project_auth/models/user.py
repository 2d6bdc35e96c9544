"""User, one-time code and refresh session models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class AccountType(str, Enum):
    """Role tag carried by every account."""

    ADMINISTRATOR = "ADMINISTRATOR"
    EMPLOYEE = "EMPLOYEE"


class OtpPurpose(str, Enum):
    """What a one-time code may be used for."""

    VERIFY_EMAIL = "VERIFY_EMAIL"
    RESET_PASSWORD = "RESET_PASSWORD"


class User(BaseModel):
    """A registered account, without any secret fields.

    The password hash never lives on this model; stores hand it out
    separately so a ``User`` can always be returned to a caller as-is.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: UUID
    email: str
    name: str
    verified: bool = False
    account_type: AccountType = AccountType.EMPLOYEE
    created_at: datetime
    updated_at: datetime


class EmailOtp(BaseModel):
    """A hashed one-time code issued to a user."""

    id: UUID
    user_id: UUID
    code_hash: str
    purpose: OtpPurpose
    expires_at: datetime
    consumed: bool = False
    created_at: datetime


class RefreshSession(BaseModel):
    """A persisted refresh token, identified by the SHA-256 of the raw token."""

    id: UUID
    user_id: UUID
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime
