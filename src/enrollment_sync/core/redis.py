"""
Redis Connection

Shared async client for the Redis-backed local state store. Only opened
when `state_store_backend` is "redis"; the SQL store needs no Redis.
"""

import logging

from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from enrollment_sync.core.config import settings

logger = logging.getLogger(__name__)

# Process-wide client, owned by the application lifespan
redis_client: Redis | None = None


async def init_redis(url: str | None = None) -> Redis:
    """
    Open the Redis connection and confirm it answers.

    Queue writes must be durable before enqueue returns, so a Redis that
    cannot be reached at startup is an error rather than a silent fallback.

    Args:
        url: Connection URL; defaults to settings.redis_url

    Returns:
        The connected client
    """
    global redis_client
    client = from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.request_timeout_seconds,
        health_check_interval=settings.health_check_interval_seconds,
    )
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        logger.error("Redis did not answer PING; local state store unavailable")
        raise

    redis_client = client
    logger.info("Redis connection established for local state")
    return redis_client


async def close_redis() -> None:
    """Close the shared client. Safe to call when it was never opened."""
    global redis_client
    if redis_client is None:
        return
    await redis_client.aclose()
    redis_client = None
