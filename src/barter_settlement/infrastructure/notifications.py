"""NotificationSink and ActivityFeed adapters.

Redis-backed adapters publish notifications on a per-user channel for the
push service to pick up, and keep the activity feed as a capped list. When
Redis is unavailable the logging adapters stand in so settlements still
leave a trace.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    import redis.asyncio as aioredis

    from barter_settlement.domain.collaborators import ActivityEvent
    from barter_settlement.domain.enums import NotificationEvent

logger = get_logger(__name__)

NOTIFICATION_CHANNEL = "notifications:{user_id}"
ACTIVITY_FEED_KEY = "activity:feed"


class RedisNotificationSink:
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def notify(
        self, user_id: uuid.UUID, event_type: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        message = json.dumps({"type": str(event_type), "payload": payload}, default=str)
        await self._redis.publish(NOTIFICATION_CHANNEL.format(user_id=user_id), message)


class RedisActivityFeed:
    def __init__(self, redis: aioredis.Redis, max_length: int = 1000) -> None:
        self._redis = redis
        self._max_length = max_length

    async def record(self, event: ActivityEvent) -> None:
        await self._redis.lpush(ACTIVITY_FEED_KEY, json.dumps(event.to_dict(), default=str))
        await self._redis.ltrim(ACTIVITY_FEED_KEY, 0, self._max_length - 1)


class LoggingNotificationSink:
    async def notify(
        self, user_id: uuid.UUID, event_type: NotificationEvent, payload: dict[str, Any]
    ) -> None:
        logger.info(
            "notification.logged",
            user_id=str(user_id),
            event_type=str(event_type),
            payload=payload,
        )


class LoggingActivityFeed:
    async def record(self, event: ActivityEvent) -> None:
        logger.info("activity.logged", **event.to_dict())


def build_default_collaborators(
    redis: aioredis.Redis | None, feed_max_length: int = 1000
) -> tuple[RedisNotificationSink | LoggingNotificationSink, RedisActivityFeed | LoggingActivityFeed]:
    """Pick Redis adapters when a client is available, logging ones otherwise."""
    if redis is None:
        return LoggingNotificationSink(), LoggingActivityFeed()
    return RedisNotificationSink(redis), RedisActivityFeed(redis, feed_max_length)
