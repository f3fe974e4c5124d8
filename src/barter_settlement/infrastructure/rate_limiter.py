"""Fixed-window rate limiter backed by Redis.

The limiter is an explicit component handed to whoever needs it, so state is
shared across workers through Redis rather than living in a module global.

Usage:
    limiter = RedisRateLimiter(get_redis(), limit=30, window_seconds=60)
    await limiter.check(f"fee-preview:{client_ip}")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from barter_settlement.domain.exceptions import RateLimitExceededError
from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in: int


class RedisRateLimiter:
    """INCR a per-window counter and set its TTL on first hit."""

    def __init__(
        self,
        redis: aioredis.Redis,
        limit: int,
        window_seconds: int,
        prefix: str = "ratelimit",
    ) -> None:
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self._redis = redis
        self._limit = limit
        self._window = window_seconds
        self._prefix = prefix

    async def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and report whether it is within the limit."""
        redis_key = f"{self._prefix}:{key}"
        count = int(await self._redis.incr(redis_key))
        if count == 1:
            await self._redis.expire(redis_key, self._window)
            ttl = self._window
        else:
            ttl = int(await self._redis.ttl(redis_key))
            if ttl < 0:
                # Counter lost its expiry (e.g. crash between INCR and EXPIRE).
                await self._redis.expire(redis_key, self._window)
                ttl = self._window
        return RateLimitDecision(
            allowed=count <= self._limit,
            remaining=max(0, self._limit - count),
            reset_in=ttl,
        )

    async def check(self, key: str) -> RateLimitDecision:
        """Like hit(), but raise RateLimitExceededError when over the limit."""
        decision = await self.hit(key)
        if not decision.allowed:
            logger.warning("rate_limit.exceeded", key=key, reset_in=decision.reset_in)
            raise RateLimitExceededError(key, decision.reset_in)
        return decision
