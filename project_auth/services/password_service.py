"""Argon2id hashing for passwords and one-time codes."""

import secrets
from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError
import structlog

from project_auth.config import Settings

logger = structlog.get_logger(__name__)


def _argon2(memory_cost: int, time_cost: int, parallelism: int) -> PasswordHasher:
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        type=Type.ID,
    )


@lru_cache(maxsize=8)
def _placeholder_hash(memory_cost: int, time_cost: int, parallelism: int) -> str:
    """A hash of a random secret, made once per cost configuration."""
    return _argon2(memory_cost, time_cost, parallelism).hash(secrets.token_urlsafe(32))


class CredentialHasher:
    """Memory-hard one-way hashing with fixed Argon2id parameters.

    The cost parameters are encoded into every hash, so hashes produced
    under older settings keep verifying after the defaults change;
    ``needs_rehash`` reports them.
    """

    def __init__(self, memory_cost: int, time_cost: int, parallelism: int):
        self._params = (memory_cost, time_cost, parallelism)
        self._hasher = _argon2(memory_cost, time_cost, parallelism)

    def hash(self, secret: str) -> str:
        """Hash a secret with a fresh random salt.

        Args:
            secret: Plain-text password or code

        Returns:
            Encoded Argon2id hash string
        """
        return self._hasher.hash(secret)

    def verify(self, secret_hash: str, secret: str) -> bool:
        """Check a secret against a stored hash.

        Never raises: a mismatch or a malformed hash both yield False.
        """
        if not secret_hash:
            return False
        try:
            return self._hasher.verify(secret_hash, secret)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("credential_hash_malformed")
            return False

    def verify_placeholder(self, secret: str) -> bool:
        """Do the work of a verification when there is no stored hash.

        Always returns False.
        """
        self.verify(_placeholder_hash(*self._params), secret)
        return False

    def needs_rehash(self, secret_hash: str) -> bool:
        """Whether a stored hash was made with different parameters."""
        try:
            return self._hasher.check_needs_rehash(secret_hash)
        except InvalidHashError:
            return True


def password_hasher(settings: Settings) -> CredentialHasher:
    """Build the hasher used for account passwords."""
    return CredentialHasher(
        memory_cost=settings.password_hash_memory_cost,
        time_cost=settings.password_hash_time_cost,
        parallelism=settings.password_hash_parallelism,
    )


def otp_hasher(settings: Settings) -> CredentialHasher:
    """Build the lighter hasher used for short-lived one-time codes."""
    return CredentialHasher(
        memory_cost=settings.otp_hash_memory_cost,
        time_cost=settings.otp_hash_time_cost,
        parallelism=settings.otp_hash_parallelism,
    )
