"""Tests for the Redis fixed-window rate limiter (Redis mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from barter_settlement.domain.exceptions import RateLimitExceededError
from barter_settlement.infrastructure.rate_limiter import RedisRateLimiter


def _redis(count: int, ttl: int = 42) -> AsyncMock:
    redis = AsyncMock()
    redis.incr.return_value = count
    redis.ttl.return_value = ttl
    return redis


class TestRedisRateLimiter:
    @pytest.mark.asyncio
    async def test_first_hit_sets_expiry(self) -> None:
        redis = _redis(1)
        limiter = RedisRateLimiter(redis, limit=3, window_seconds=60)

        decision = await limiter.hit("fee-preview:1.2.3.4")

        redis.incr.assert_awaited_once_with("ratelimit:fee-preview:1.2.3.4")
        redis.expire.assert_awaited_once_with("ratelimit:fee-preview:1.2.3.4", 60)
        assert (decision.allowed, decision.remaining, decision.reset_in) == (True, 2, 60)

    @pytest.mark.asyncio
    async def test_later_hits_read_ttl(self) -> None:
        redis = _redis(3, ttl=17)
        limiter = RedisRateLimiter(redis, limit=3, window_seconds=60)

        decision = await limiter.hit("k")

        redis.expire.assert_not_awaited()
        assert (decision.allowed, decision.remaining, decision.reset_in) == (True, 0, 17)

    @pytest.mark.asyncio
    async def test_repairs_missing_expiry(self) -> None:
        redis = _redis(5, ttl=-1)
        limiter = RedisRateLimiter(redis, limit=10, window_seconds=30, prefix="rl")

        decision = await limiter.hit("k")

        redis.expire.assert_awaited_once_with("rl:k", 30)
        assert decision.reset_in == 30

    @pytest.mark.asyncio
    async def test_check_raises_over_limit(self) -> None:
        limiter = RedisRateLimiter(_redis(4, ttl=12), limit=3, window_seconds=60)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check("k")
        assert exc_info.value.retry_after == 12
        assert exc_info.value.code == "RATE_LIMITED"

    @pytest.mark.parametrize(("limit", "window"), [(0, 60), (5, 0)])
    def test_rejects_bad_configuration(self, limit: int, window: int) -> None:
        with pytest.raises(ValueError):
            RedisRateLimiter(AsyncMock(), limit=limit, window_seconds=window)
