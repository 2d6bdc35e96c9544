"""OTP resend cooldown, failure lockouts and per-route request windows.

Cooldowns and lockouts are keyed by identifier (the normalized email,
prefixed by purpose for one-time codes). Each identifier has a last-sent
timestamp and a failure count with a lockout deadline. Route windows are
keyed by path and client address.
"""

import math
import time
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from project_auth.config import get_settings
from project_auth.services.redis_service import get_redis

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class CooldownStatus:
    allowed: bool
    retry_after_seconds: Optional[int] = None


@dataclass(frozen=True)
class LoginAttempt:
    """State after a failed login; ``locked_until`` is an epoch timestamp."""

    count: int
    locked_until: Optional[float] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    retry_after_seconds: Optional[int] = None


@dataclass(frozen=True)
class WindowStatus:
    """Outcome of one request against a fixed window."""

    allowed: bool
    remaining: int
    retry_after_seconds: Optional[int] = None


def _seconds_until(deadline: float, now: float) -> int:
    return max(1, math.ceil(deadline - now))


class InMemoryRateGuard:
    """Process-local guard state.

    Best effort only: concurrent requests for one identifier may undercount,
    and the state is lost on restart.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._otp_sent: dict[str, float] = {}
        self._attempts: dict[str, LoginAttempt] = {}
        self._code_attempts: dict[str, LoginAttempt] = {}
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = Lock()

    async def check_otp_cooldown(
        self, identifier: str, cooldown_seconds: int
    ) -> CooldownStatus:
        """Deny if a code was sent to this identifier within the cooldown.

        A marker older than the cooldown is dropped.
        """
        with self._lock:
            sent_at = self._otp_sent.get(identifier)
            if sent_at is None:
                return CooldownStatus(allowed=True)

            elapsed = self._clock() - sent_at
            if elapsed < cooldown_seconds:
                return CooldownStatus(
                    allowed=False,
                    retry_after_seconds=math.ceil(cooldown_seconds - elapsed),
                )
            del self._otp_sent[identifier]
            return CooldownStatus(allowed=True)

    async def mark_otp_sent(self, identifier: str) -> None:
        with self._lock:
            self._otp_sent[identifier] = self._clock()

    def _count_failure(
        self,
        table: dict[str, LoginAttempt],
        identifier: str,
        threshold: int,
        lockout_seconds: int,
    ) -> LoginAttempt:
        now = self._clock()
        with self._lock:
            entry = table.get(identifier, LoginAttempt(count=0))
            if entry.locked_until is not None:
                if entry.locked_until > now:
                    return entry
                entry = LoginAttempt(count=0)

            count = entry.count + 1
            if count >= threshold:
                updated = LoginAttempt(count=count, locked_until=now + lockout_seconds)
            else:
                updated = LoginAttempt(count=count)
            table[identifier] = updated
            return updated

    async def register_failed_login(
        self, identifier: str, threshold: int, lockout_seconds: int
    ) -> LoginAttempt:
        """Count a failed login; lock once the count reaches ``threshold``.

        While locked the state is frozen and returned unchanged.
        """
        return self._count_failure(self._attempts, identifier, threshold, lockout_seconds)

    async def register_failed_code(
        self, identifier: str, threshold: int, lockout_seconds: int
    ) -> LoginAttempt:
        """Count a wrong one-time code, with the same freeze as logins."""
        return self._count_failure(
            self._code_attempts, identifier, threshold, lockout_seconds
        )

    async def reset_code_attempts(self, identifier: str) -> None:
        with self._lock:
            self._code_attempts.pop(identifier, None)

    async def hit_window(
        self, identifier: str, limit: int, window_seconds: int
    ) -> WindowStatus:
        """Count one request in a fixed window starting at its first hit."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(identifier, (now, 0))
            if now - started >= window_seconds:
                started, count = now, 0

            if count >= limit:
                return WindowStatus(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=_seconds_until(started + window_seconds, now),
                )

            self._windows[identifier] = (started, count + 1)
            return WindowStatus(allowed=True, remaining=limit - count - 1)

    async def is_login_locked(self, identifier: str) -> LockStatus:
        """Report lock state, dropping an expired lockout on the way."""
        now = self._clock()
        with self._lock:
            entry = self._attempts.get(identifier)
            if entry is None or entry.locked_until is None:
                return LockStatus(locked=False)
            if entry.locked_until > now:
                return LockStatus(
                    locked=True,
                    retry_after_seconds=_seconds_until(entry.locked_until, now),
                )
            del self._attempts[identifier]
            return LockStatus(locked=False)

    async def reset_login_attempts(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)


class RedisRateGuard:
    """Guard state in Redis, shared by every instance of the service.

    Keys expire on their own. When Redis is unreachable the guard logs a
    warning and uses an in-process guard until it comes back.
    """

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[Optional[redis.Redis]]],
        key_prefix: str = "auth:guard:",
        otp_marker_ttl_seconds: int = 3600,
        clock: Clock = time.time,
    ):
        self._client_factory = client_factory
        self._prefix = key_prefix
        self._otp_marker_ttl = otp_marker_ttl_seconds
        self._clock = clock
        self.fallback = InMemoryRateGuard(clock=clock)

    def _key(self, kind: str, identifier: str) -> str:
        return f"{self._prefix}{kind}:{identifier}"

    async def check_otp_cooldown(
        self, identifier: str, cooldown_seconds: int
    ) -> CooldownStatus:
        client = await self._client_factory()
        if client is None:
            return await self.fallback.check_otp_cooldown(identifier, cooldown_seconds)

        try:
            sent_at = await client.get(self._key("otp", identifier))
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="check_otp_cooldown", error=str(e))
            return await self.fallback.check_otp_cooldown(identifier, cooldown_seconds)

        if sent_at is None:
            return CooldownStatus(allowed=True)

        elapsed = self._clock() - float(sent_at)
        if elapsed < cooldown_seconds:
            return CooldownStatus(
                allowed=False,
                retry_after_seconds=math.ceil(cooldown_seconds - elapsed),
            )
        return CooldownStatus(allowed=True)

    async def mark_otp_sent(self, identifier: str) -> None:
        client = await self._client_factory()
        if client is None:
            await self.fallback.mark_otp_sent(identifier)
            return

        try:
            await client.set(
                self._key("otp", identifier),
                str(self._clock()),
                ex=self._otp_marker_ttl,
            )
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="mark_otp_sent", error=str(e))
            await self.fallback.mark_otp_sent(identifier)

    async def _count_failure(
        self,
        attempts_kind: str,
        lock_kind: str,
        identifier: str,
        threshold: int,
        lockout_seconds: int,
    ) -> Optional[LoginAttempt]:
        """Shared counter for logins and codes; None when Redis is unusable."""
        client = await self._client_factory()
        if client is None:
            return None

        attempts_key = self._key(attempts_kind, identifier)
        lock_key = self._key(lock_kind, identifier)
        now = self._clock()

        try:
            locked_until = await client.get(lock_key)
            if locked_until is not None and float(locked_until) > now:
                count = await client.get(attempts_key)
                return LoginAttempt(
                    count=int(count or threshold),
                    locked_until=float(locked_until),
                )

            count = await client.incr(attempts_key)
            await client.expire(attempts_key, lockout_seconds)

            if count >= threshold:
                deadline = now + lockout_seconds
                await client.set(lock_key, str(deadline), ex=lockout_seconds)
                return LoginAttempt(count=count, locked_until=deadline)
            return LoginAttempt(count=count)
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op=attempts_kind, error=str(e))
            return None

    async def register_failed_login(
        self, identifier: str, threshold: int, lockout_seconds: int
    ) -> LoginAttempt:
        attempt = await self._count_failure(
            "attempts", "lock", identifier, threshold, lockout_seconds
        )
        if attempt is None:
            return await self.fallback.register_failed_login(
                identifier, threshold, lockout_seconds
            )
        return attempt

    async def register_failed_code(
        self, identifier: str, threshold: int, lockout_seconds: int
    ) -> LoginAttempt:
        attempt = await self._count_failure(
            "code-attempts", "code-lock", identifier, threshold, lockout_seconds
        )
        if attempt is None:
            return await self.fallback.register_failed_code(
                identifier, threshold, lockout_seconds
            )
        return attempt

    async def reset_code_attempts(self, identifier: str) -> None:
        await self.fallback.reset_code_attempts(identifier)

        client = await self._client_factory()
        if client is None:
            return

        try:
            await client.delete(
                self._key("code-attempts", identifier),
                self._key("code-lock", identifier),
            )
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="reset_code_attempts", error=str(e))

    async def hit_window(
        self, identifier: str, limit: int, window_seconds: int
    ) -> WindowStatus:
        """Fixed window on an expiring counter, created by the first hit."""
        client = await self._client_factory()
        if client is None:
            return await self.fallback.hit_window(identifier, limit, window_seconds)

        key = self._key("window", identifier)
        try:
            count = await client.incr(key)
            if count == 1:
                await client.expire(key, window_seconds)
            if count > limit:
                ttl = await client.ttl(key)
                return WindowStatus(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=ttl if ttl > 0 else window_seconds,
                )
            return WindowStatus(allowed=True, remaining=limit - count)
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="hit_window", error=str(e))
            return await self.fallback.hit_window(identifier, limit, window_seconds)

    async def is_login_locked(self, identifier: str) -> LockStatus:
        client = await self._client_factory()
        if client is None:
            return await self.fallback.is_login_locked(identifier)

        try:
            locked_until = await client.get(self._key("lock", identifier))
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="is_login_locked", error=str(e))
            return await self.fallback.is_login_locked(identifier)

        now = self._clock()
        if locked_until is not None and float(locked_until) > now:
            return LockStatus(
                locked=True,
                retry_after_seconds=_seconds_until(float(locked_until), now),
            )
        return LockStatus(locked=False)

    async def reset_login_attempts(self, identifier: str) -> None:
        await self.fallback.reset_login_attempts(identifier)

        client = await self._client_factory()
        if client is None:
            return

        try:
            await client.delete(
                self._key("attempts", identifier),
                self._key("lock", identifier),
            )
        except RedisError as e:
            logger.warning("rate_guard_redis_failed", op="reset_login_attempts", error=str(e))


RateGuard = InMemoryRateGuard | RedisRateGuard


@lru_cache
def get_rate_guard() -> RateGuard:
    """Process-wide guard instance for the configured backend."""
    settings = get_settings()
    if settings.rate_guard_backend == "redis":
        return RedisRateGuard(
            client_factory=get_redis,
            key_prefix=settings.rate_guard_key_prefix,
            otp_marker_ttl_seconds=max(settings.otp_cooldown_seconds, 60),
        )
    return InMemoryRateGuard()
