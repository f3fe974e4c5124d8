"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the rate limiter, and configuration.
"""

from __future__ import annotations

import hmac
import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from barter_settlement.config import Settings, get_settings
from barter_settlement.domain.collaborators import ActivityFeed, NotificationSink
from barter_settlement.infrastructure.database.engine import (
    get_async_session,
    get_session_factory,
)
from barter_settlement.infrastructure.notifications import build_default_collaborators
from barter_settlement.infrastructure.rate_limiter import RedisRateLimiter
from barter_settlement.infrastructure.redis_client import get_redis_or_none
from barter_settlement.services.dispute_service import DisputeService
from barter_settlement.services.feedback_service import FeedbackService
from barter_settlement.services.negotiation_service import NegotiationService
from barter_settlement.services.swap_service import SwapCollaborators, SwapService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the sweepers, which open one session per swap."""
    return get_session_factory()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_sinks(
    settings: Settings = Depends(get_app_settings),
) -> tuple[NotificationSink, ActivityFeed]:
    """Redis-backed notification sink and activity feed, or logging fallbacks."""
    return build_default_collaborators(get_redis_or_none(), settings.activity_feed_max_length)


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> uuid.UUID:
    """The acting user, as asserted by the upstream auth gateway."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header required")
    try:
        return uuid.UUID(x_actor_id)
    except ValueError as err:
        raise HTTPException(status_code=401, detail="X-Actor-Id must be a UUID") from err


async def get_swap_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    sinks: tuple[NotificationSink, ActivityFeed] = Depends(get_sinks),
) -> SwapService:
    """Provide a SwapService bound to the current session."""
    notifications, activity = sinks
    return SwapService(
        session,
        SwapCollaborators.for_session(session, notifications, activity),
        settings,
    )


async def get_dispute_service(
    swaps: SwapService = Depends(get_swap_service),
) -> DisputeService:
    return DisputeService(swaps)


async def get_negotiation_service(
    swaps: SwapService = Depends(get_swap_service),
) -> NegotiationService:
    return NegotiationService(swaps)


async def get_feedback_service(
    swaps: SwapService = Depends(get_swap_service),
) -> FeedbackService:
    return FeedbackService(swaps)


def get_rate_limiter(
    settings: Settings = Depends(get_app_settings),
) -> RedisRateLimiter | None:
    """The shared limiter, or None when Redis is not connected."""
    redis = get_redis_or_none()
    if redis is None:
        return None
    return RedisRateLimiter(
        redis, settings.rate_limit_requests, settings.rate_limit_window_seconds
    )


async def enforce_rate_limit(
    request: Request,
    limiter: RedisRateLimiter | None = Depends(get_rate_limiter),
) -> None:
    if limiter is None:
        return
    route = getattr(request.scope.get("route"), "path", request.url.path)
    client = request.client.host if request.client else "unknown"
    await limiter.check(f"{route}:{client}")


def verify_cron_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Require ``Authorization: Bearer <cron_secret>`` when a secret is configured."""
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Invalid cron credentials")
