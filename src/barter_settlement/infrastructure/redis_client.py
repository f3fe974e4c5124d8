"""Redis client for rate limiting, notification fan-out, and the activity feed.

Usage:
    from barter_settlement.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.publish("notifications:<user_id>", payload)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from barter_settlement.config import get_settings
from barter_settlement.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity before publishing the singleton
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def get_redis_or_none() -> aioredis.Redis | None:
    """Return the client if startup managed to connect, else None."""
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None
