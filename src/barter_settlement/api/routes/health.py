"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Redis is optional: without it the rate limiter is off and notifications
fall back to the log. Only a Redis that is configured but unreachable
marks the service degraded.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from barter_settlement.infrastructure.database.engine import _get_engine
from barter_settlement.infrastructure.redis_client import get_redis_or_none
from barter_settlement.logging_config import get_logger
from barter_settlement.schemas.swap import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"
    redis_status = "unknown"

    try:
        async with _get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    redis = get_redis_or_none()
    if redis is None:
        redis_status = "not configured"
    else:
        try:
            await redis.ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    redis_ok = not redis_status.startswith("unhealthy")
    overall = "ok" if db_status == "healthy" and redis_ok else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
