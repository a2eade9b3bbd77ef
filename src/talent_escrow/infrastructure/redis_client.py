"""Redis client for shared, TTL-based rate-limit counters.

Counters live in Redis so every API instance sees the same budget; the
window is a fixed bucket keyed on the current epoch window.

Usage:
    from talent_escrow.infrastructure.redis_client import get_redis, hit_rate_limit

    count = await hit_rate_limit(get_redis(), "ratelimit:offers:10.0.0.1", window_seconds=60)
"""

from __future__ import annotations

import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from talent_escrow.config import get_settings
from talent_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis | None:
    """Initialize the Redis client. Called during app startup.

    Returns None (and logs) when Redis is unreachable; rate limiting is then
    disabled rather than blocking the payment flows.
    """
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis.unavailable", url=settings.redis_url, error=str(exc))
        await client.aclose()
        return None
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis | None:
    """Return the Redis client singleton, or None if it was never connected."""
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Rate Limit Helpers ---


def window_key(prefix: str, window_seconds: int, now: float | None = None) -> str:
    """Key for the fixed window containing `now`."""
    current = time.time() if now is None else now
    return f"{prefix}:{int(current // window_seconds)}"


async def hit_rate_limit(
    client: aioredis.Redis,
    key_prefix: str,
    window_seconds: int,
    now: float | None = None,
) -> int:
    """Count one hit against the window and return the running total.

    INCR and EXPIRE go out in one MULTI/EXEC pipeline so a crashed caller
    never leaves a counter without a TTL.
    """
    key = window_key(key_prefix, window_seconds, now)
    async with client.pipeline(transaction=True) as pipe:
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        count, _ = await pipe.execute()
    return int(count)


def seconds_until_reset(window_seconds: int, now: float | None = None) -> int:
    current = time.time() if now is None else now
    return max(1, int(window_seconds - (current % window_seconds)))
