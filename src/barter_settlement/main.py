"""FastAPI application for the barter settlement engine.

Startup order: logging, database (tables are created in development),
then Redis. Redis is optional: without it the rate limiter is disabled
and notifications/activity fall back to the log, so a missing Redis only
produces a warning.

The timeout sweeps are not scheduled in-process. An external scheduler
calls the /api/v1/jobs endpoints or runs ``barter-sweep``.

Run with:
    uv run uvicorn barter_settlement.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from barter_settlement.config import get_settings
from barter_settlement.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        dispute_window_hours=settings.dispute_window_hours,
        auto_cancel_hours=settings.auto_cancel_hours,
        auto_complete_high_risk=settings.auto_complete_high_risk,
    )
    if not settings.is_development and not settings.cron_secret:
        logger.warning("app.jobs_unprotected", hint="set CRON_SECRET")

    from barter_settlement.infrastructure.database.engine import close_db, init_db
    from barter_settlement.infrastructure.redis_client import close_redis, init_redis

    await init_db()

    app.state.redis_enabled = False
    try:
        await init_redis()
        app.state.redis_enabled = True
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc), fallback="logging sinks")

    logger.info("app.started", host=settings.app_host, port=settings.app_port)
    try:
        yield
    finally:
        logger.info("app.shutting_down")
        await close_db()
        await close_redis()
        logger.info("app.stopped")


def create_app() -> FastAPI:
    """Build the app: middleware, then the health, swap, dispute, Valor and job routers."""
    settings = get_settings()

    app = FastAPI(
        title="Barter Settlement Engine",
        description="Escrow, fees and settlement for Valor-backed peer-to-peer swaps.",
        version=API_VERSION,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    from barter_settlement.api.middleware import setup_middleware
    from barter_settlement.api.routes.disputes import router as disputes_router
    from barter_settlement.api.routes.health import router as health_router
    from barter_settlement.api.routes.jobs import router as jobs_router
    from barter_settlement.api.routes.swaps import router as swaps_router
    from barter_settlement.api.routes.valor import router as valor_router

    setup_middleware(app)
    for router in (health_router, swaps_router, disputes_router, valor_router, jobs_router):
        app.include_router(router)

    return app


app = create_app()
