"""Shared Redis client for the rate guard backend."""

import time
from typing import Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from project_auth.config import get_settings

logger = structlog.get_logger(__name__)

_redis_client: Optional[redis.Redis] = None

# Monotonic time before which no reconnect is attempted
_retry_after: float = 0.0


async def get_redis() -> Optional[redis.Redis]:
    """Return the connected client, connecting on first use.

    Returns None when no URL is configured or Redis is unreachable. After a
    failed connect, further attempts are skipped for
    ``redis_reconnect_backoff_seconds`` so an outage does not add a connect
    timeout to every request.
    """
    global _redis_client, _retry_after

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    if not settings.redis_url:
        return None

    if time.monotonic() < _retry_after:
        return None

    client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        _retry_after = time.monotonic() + settings.redis_reconnect_backoff_seconds
        logger.warning(
            "redis_connection_failed",
            error=str(e),
            retry_in_seconds=settings.redis_reconnect_backoff_seconds,
        )
        await client.aclose()
        return None

    _redis_client = client
    _retry_after = 0.0
    logger.info("redis_connected", url=settings.redis_url.split("@")[-1])
    return _redis_client


async def close_redis() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("redis_connection_closed")
