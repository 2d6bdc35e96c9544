"""One-time code generation and persistence."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
import structlog

from project_auth.models.user import EmailOtp, OtpPurpose, User
from project_auth.services.user_service import USER_COLUMNS, row_to_user

logger = structlog.get_logger(__name__)

OTP_COLUMNS = "id, user_id, code_hash, purpose, expires_at, consumed, created_at"


def generate_otp(length: int = 6) -> str:
    """Generate a numeric code, one uniformly random digit at a time."""
    if length < 1:
        raise ValueError("OTP length must be positive")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def build_otp_expiry(ttl_minutes: int) -> datetime:
    """Return the UTC instant a code issued now stops being valid."""
    return datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)


def _row_to_otp(row: Any) -> EmailOtp:
    return EmailOtp(
        id=row["id"],
        user_id=row["user_id"],
        code_hash=row["code_hash"],
        purpose=row["purpose"],
        expires_at=row["expires_at"],
        consumed=row["consumed"],
        created_at=row["created_at"],
    )


class EmailOtpService:
    """Service for the ``email_otps`` table.

    Only code hashes are stored. At most one unconsumed code per
    (user, purpose) is live: issuing a new one consumes the rest.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def replace_active(
        self,
        user_id: UUID,
        purpose: OtpPurpose,
        code_hash: str,
        expires_at: datetime,
    ) -> EmailOtp:
        """Consume every live code for (user, purpose) and insert a new one.

        Both statements run in one transaction.
        """
        otp_id = uuid4()
        now = datetime.now(timezone.utc)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE email_otps
                    SET consumed = TRUE
                    WHERE user_id = $1 AND purpose = $2 AND consumed = FALSE
                    """,
                    user_id,
                    purpose.value,
                )
                await conn.execute(
                    """
                    INSERT INTO email_otps (id, user_id, code_hash, purpose, expires_at, consumed, created_at)
                    VALUES ($1, $2, $3, $4, $5, FALSE, $6)
                    """,
                    otp_id,
                    user_id,
                    code_hash,
                    purpose.value,
                    expires_at,
                    now,
                )

        logger.info(
            "otp_issued",
            user_id=str(user_id),
            purpose=purpose.value,
            expires_at=expires_at.isoformat(),
        )

        return EmailOtp(
            id=otp_id,
            user_id=user_id,
            code_hash=code_hash,
            purpose=purpose,
            expires_at=expires_at,
            consumed=False,
            created_at=now,
        )

    async def get_latest_active(
        self, user_id: UUID, purpose: OtpPurpose
    ) -> Optional[EmailOtp]:
        """Most recent unconsumed code for (user, purpose), or None."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {OTP_COLUMNS}
                FROM email_otps
                WHERE user_id = $1 AND purpose = $2 AND consumed = FALSE
                ORDER BY created_at DESC
                LIMIT 1
                """,
                user_id,
                purpose.value,
            )

        if row is None:
            return None

        return _row_to_otp(row)

    async def consume(self, otp_id: UUID) -> None:
        """Mark a code consumed."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE email_otps SET consumed = TRUE WHERE id = $1",
                otp_id,
            )

    async def consume_and_update_user(
        self,
        otp_id: UUID,
        user_id: UUID,
        verified: Optional[bool] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[User]:
        """Consume a code and apply its effect on the user in one transaction.

        Args:
            otp_id: Code being redeemed
            user_id: Owner of the code
            verified: New verified flag (if provided)
            password_hash: New password hash (if provided)

        Returns:
            The updated User, or None if the code was already consumed by a
            concurrent request (nothing is changed in that case)
        """
        set_clauses = []
        params: list[Any] = []
        param_idx = 1

        if verified is not None:
            set_clauses.append(f"verified = ${param_idx}")
            params.append(verified)
            param_idx += 1

        if password_hash is not None:
            set_clauses.append(f"password_hash = ${param_idx}")
            params.append(password_hash)
            param_idx += 1

        set_clauses.append(f"updated_at = ${param_idx}")
        params.append(datetime.now(timezone.utc))
        param_idx += 1

        params.append(user_id)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE email_otps
                    SET consumed = TRUE
                    WHERE id = $1 AND consumed = FALSE
                    """,
                    otp_id,
                )
                if result != "UPDATE 1":
                    logger.warning("otp_already_consumed", otp_id=str(otp_id))
                    return None

                row = await conn.fetchrow(
                    f"""
                    UPDATE users
                    SET {', '.join(set_clauses)}
                    WHERE id = ${param_idx}
                    RETURNING {USER_COLUMNS}
                    """,
                    *params,
                )

        if row is None:
            return None

        logger.info(
            "otp_redeemed",
            user_id=str(user_id),
            fields_updated=[c.split(" = ")[0] for c in set_clauses if "updated_at" not in c],
        )
        return row_to_user(row)
