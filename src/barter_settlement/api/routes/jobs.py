"""Scheduled job triggers.

An external scheduler (cron, Cloud Scheduler, k8s CronJob) hits these
endpoints; the sweep logic itself lives in services/automation.py and is
also reachable from the ``barter-sweep`` console script.

Routes:
    POST   /api/v1/jobs/auto-cancel          - Remind, then cancel stalled swaps
    GET    /api/v1/jobs/auto-cancel/status   - Counts only, no mutation
    POST   /api/v1/jobs/auto-complete        - Settle swaps past their dispute window
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from barter_settlement.api.deps import (
    get_app_settings,
    get_db_session_factory,
    get_sinks,
    verify_cron_secret,
)
from barter_settlement.config import Settings
from barter_settlement.domain.collaborators import ActivityFeed, NotificationSink
from barter_settlement.schemas.swap import SweepResponse
from barter_settlement.services.automation import AutoCancelSweeper, AutoCompleteSweeper

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["Jobs"],
    dependencies=[Depends(verify_cron_secret)],
)


def _cancel_sweeper(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
    sinks: tuple[NotificationSink, ActivityFeed] = Depends(get_sinks),
) -> AutoCancelSweeper:
    return AutoCancelSweeper(factory, settings, *sinks)


def _complete_sweeper(
    factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    settings: Settings = Depends(get_app_settings),
    sinks: tuple[NotificationSink, ActivityFeed] = Depends(get_sinks),
) -> AutoCompleteSweeper:
    return AutoCompleteSweeper(factory, settings, *sinks)


@router.post("/auto-cancel", response_model=SweepResponse, summary="Run the auto-cancel sweep")
async def run_auto_cancel(
    sweeper: AutoCancelSweeper = Depends(_cancel_sweeper),
) -> SweepResponse:
    result = await sweeper.run()
    return SweepResponse(**result.to_dict())


@router.get("/auto-cancel/status", summary="Stalled swap counts")
async def auto_cancel_status(
    sweeper: AutoCancelSweeper = Depends(_cancel_sweeper),
) -> dict[str, Any]:
    return await sweeper.sweep_status()


@router.post(
    "/auto-complete",
    response_model=SweepResponse,
    summary="Run the auto-complete sweep",
)
async def run_auto_complete(
    sweeper: AutoCompleteSweeper = Depends(_complete_sweeper),
) -> SweepResponse:
    result = await sweeper.run()
    return SweepResponse(**result.to_dict())
