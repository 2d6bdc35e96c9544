"""Access and refresh token signing."""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

import jwt
import structlog

from project_auth.config import Settings
from project_auth.errors import InvalidTokenError

logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest under which a refresh token is persisted."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenService:
    """Signs and verifies tokens in two independent domains.

    Access tokens are short-lived and stateless. Refresh tokens are
    long-lived, carry a unique ``jti`` and are tracked server-side by hash.
    Each domain has its own secret, so a token from one never verifies
    in the other.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ):
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    def sign_access(self, claims: dict[str, Any]) -> str:
        """Create a signed access token.

        Args:
            claims: Must include ``sub`` (user id); usually also ``email``

        Returns:
            Encoded JWT string
        """
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._access_secret, algorithm=JWT_ALGORITHM)

    def verify_access(self, token: str) -> dict[str, Any]:
        """Decode and validate an access token.

        Raises:
            InvalidTokenError: On any signature, expiry or format problem
        """
        return self._decode(token, self._access_secret, "access")

    def sign_refresh(self, claims: dict[str, Any], token_id: UUID) -> str:
        """Create a signed refresh token identified by ``token_id``."""
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "jti": str(token_id),
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=JWT_ALGORITHM)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        """Decode and validate a refresh token.

        Raises:
            InvalidTokenError: On any signature, expiry or format problem
        """
        return self._decode(token, self._refresh_secret, "refresh")

    def _decode(self, token: str, secret: str, domain: str) -> dict[str, Any]:
        # Every library failure collapses into one outcome.
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[JWT_ALGORITHM],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("token_rejected", domain=domain, reason=type(e).__name__)
            raise InvalidTokenError()
