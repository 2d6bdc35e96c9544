"""Refresh session persistence."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg
import structlog

from project_auth.models.user import RefreshSession

logger = structlog.get_logger(__name__)


def _row_to_session(row: Any) -> RefreshSession:
    return RefreshSession(
        id=row["id"],
        user_id=row["user_id"],
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        revoked=row["revoked"],
        created_at=row["created_at"],
    )


class RefreshSessionService:
    """Service for the ``refresh_tokens`` table.

    Rows are keyed by the SHA-256 of the raw refresh token and are revoked,
    never deleted. Revocation is permanent.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(
        self, user_id: UUID, token_hash: str, expires_at: datetime
    ) -> RefreshSession:
        """Persist a new refresh session."""
        session_id = uuid4()
        now = datetime.now(timezone.utc)

        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, revoked, created_at)
                VALUES ($1, $2, $3, $4, FALSE, $5)
                """,
                session_id,
                user_id,
                token_hash,
                expires_at,
                now,
            )

        logger.info(
            "refresh_session_created",
            user_id=str(user_id),
            session_id=str(session_id),
            expires_at=expires_at.isoformat(),
        )

        return RefreshSession(
            id=session_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            revoked=False,
            created_at=now,
        )

    async def get_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        """Look up a session by token hash, revoked or not."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, token_hash, expires_at, revoked, created_at
                FROM refresh_tokens
                WHERE token_hash = $1
                """,
                token_hash,
            )

        if row is None:
            return None

        return _row_to_session(row)

    async def revoke(self, token_hash: str) -> bool:
        """Revoke the session with this hash.

        Returns:
            True if a live session was revoked, False if none matched
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked = TRUE, revoked_at = $1
                WHERE token_hash = $2 AND revoked = FALSE
                """,
                datetime.now(timezone.utc),
                token_hash,
            )

        revoked = result != "UPDATE 0"
        if revoked:
            logger.info("refresh_session_revoked")
        return revoked

    async def rotate(
        self,
        old_token_hash: str,
        user_id: UUID,
        new_token_hash: str,
        expires_at: datetime,
    ) -> bool:
        """Revoke a session and insert its replacement in one transaction.

        The revoke only matches a live row, so of two concurrent rotations
        of the same token exactly one succeeds.

        Returns:
            True if rotated, False if the old session was already revoked
        """
        now = datetime.now(timezone.utc)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE refresh_tokens
                    SET revoked = TRUE, revoked_at = $1
                    WHERE token_hash = $2 AND revoked = FALSE
                    """,
                    now,
                    old_token_hash,
                )
                if result != "UPDATE 1":
                    logger.warning("refresh_rotation_lost_race", user_id=str(user_id))
                    return False

                await conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, revoked, created_at)
                    VALUES ($1, $2, $3, $4, FALSE, $5)
                    """,
                    uuid4(),
                    user_id,
                    new_token_hash,
                    expires_at,
                    now,
                )

        logger.info("refresh_session_rotated", user_id=str(user_id))
        return True

    async def revoke_all_for_user(self, user_id: UUID) -> None:
        """Revoke every live refresh session of a user."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE refresh_tokens
                SET revoked = TRUE, revoked_at = $1
                WHERE user_id = $2 AND revoked = FALSE
                """,
                datetime.now(timezone.utc),
                user_id,
            )

        logger.info(
            "all_refresh_sessions_revoked",
            user_id=str(user_id),
            result=result,
        )
