"""User persistence."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
import structlog

from project_auth.errors import EmailInUseError
from project_auth.models.user import AccountType, User

logger = structlog.get_logger(__name__)

USER_COLUMNS = "id, email, name, verified, account_type, created_at, updated_at"


def row_to_user(row: Any) -> User:
    """Build a User from a database row, leaving secret columns behind."""
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        verified=row["verified"],
        account_type=row["account_type"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class UserService:
    """Service for user reads and writes against the ``users`` table."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_by_email(self, email: str) -> Optional[tuple[User, str]]:
        """Get a user and their password hash by normalized email.

        Args:
            email: Lowercase email address

        Returns:
            Tuple of (User, password_hash) or None if not found
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {USER_COLUMNS}, password_hash
                FROM users
                WHERE email = $1
                """,
                email,
            )

        if row is None:
            return None

        return row_to_user(row), row["password_hash"]

    async def get_by_id(self, user_id: UUID) -> Optional[User]:
        """Get a user by UUID, or None if not found."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = $1",
                user_id,
            )

        if row is None:
            return None

        return row_to_user(row)

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        account_type: AccountType = AccountType.EMPLOYEE,
    ) -> User:
        """Insert a new, unverified user.

        Raises:
            EmailInUseError: If another request registered the email first
        """
        user_id = uuid4()
        now = datetime.now(timezone.utc)

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash, name, verified, account_type, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, FALSE, $5, $6, $7)
                    """,
                    user_id,
                    email,
                    password_hash,
                    name,
                    account_type.value,
                    now,
                    now,
                )
        except asyncpg.UniqueViolationError:
            logger.warning("user_create_conflict", email=email)
            raise EmailInUseError()

        logger.info("user_created", user_id=str(user_id), email=email)

        return User(
            id=user_id,
            email=email,
            name=name,
            verified=False,
            account_type=account_type,
            created_at=now,
            updated_at=now,
        )

    async def update_pending_user(
        self, user_id: UUID, name: str, password_hash: str
    ) -> Optional[User]:
        """Overwrite name and password of a user awaiting verification.

        Returns:
            Updated User, or None if the user is gone
        """
        now = datetime.now(timezone.utc)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE users
                SET name = $1, password_hash = $2, verified = FALSE, updated_at = $3
                WHERE id = $4
                RETURNING {USER_COLUMNS}
                """,
                name,
                password_hash,
                now,
                user_id,
            )

        if row is None:
            return None

        logger.info("pending_user_updated", user_id=str(user_id))
        return row_to_user(row)

    async def update_password_hash(self, user_id: UUID, password_hash: str) -> bool:
        """Replace a stored password hash, e.g. after a cost upgrade."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE users SET password_hash = $1, updated_at = $2
                WHERE id = $3
                """,
                password_hash,
                datetime.now(timezone.utc),
                user_id,
            )
        return result == "UPDATE 1"
