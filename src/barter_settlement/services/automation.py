"""Timeout automation: the auto-cancel and auto-complete sweeps.

Both sweepers are stateless functions of the rows in the database. Each
run selects candidates in one read-only session, then processes every
candidate in its own unit of work through SwapService, so a failure on one
swap never blocks the rest and a missed run simply catches up next time.

The claiming UPDATE inside SwapService repeats the full guard, which makes
concurrent sweeps safe: the loser sees no row change and reports the swap
as skipped.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from barter_settlement.config import Settings, get_settings
from barter_settlement.domain.enums import (
    STALLABLE_STATUSES,
    NotificationEvent,
    SwapStatus,
)
from barter_settlement.infrastructure.database.repositories import SwapRepository
from barter_settlement.infrastructure.notifications import (
    LoggingActivityFeed,
    LoggingNotificationSink,
)
from barter_settlement.logging_config import get_logger
from barter_settlement.services.outbox import Outbox
from barter_settlement.services.swap_service import SwapCollaborators, SwapService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from barter_settlement.domain.collaborators import ActivityFeed, NotificationSink

logger = get_logger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    completed: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    reminders_sent: int = 0
    total_refunded: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _Sweeper:
    """Shared plumbing: one session per candidate, shared sinks and clock."""

    name = "sweep"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        notifications: NotificationSink | None = None,
        activity: ActivityFeed | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._notifications = notifications or LoggingNotificationSink()
        self._activity = activity or LoggingActivityFeed()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _service(self, session: AsyncSession) -> SwapService:
        return SwapService(
            session,
            SwapCollaborators.for_session(session, self._notifications, self._activity),
            self._settings,
            self._clock,
        )

    async def _process(self, swap_id: uuid.UUID, result: SweepResult, handler) -> None:  # noqa: ANN001
        """Run ``handler(service)`` in a fresh unit of work, counting the outcome."""
        result.processed += 1
        async with self._session_factory() as session:
            svc = self._service(session)
            try:
                outcome = await handler(svc)
                if outcome is None:
                    await session.rollback()
                    result.skipped += 1
                    result.details.append({"swap_id": str(swap_id), "action": "skipped"})
                    return
                await svc.commit()
            except Exception as err:
                await session.rollback()
                result.errors += 1
                result.details.append(
                    {"swap_id": str(swap_id), "action": "error", "error": str(err)}
                )
                logger.exception(f"sweep.{self.name}.item_failed", swap_id=str(swap_id))
                return
        self._record(swap_id, outcome, result)

    def _record(self, swap_id: uuid.UUID, outcome: Any, result: SweepResult) -> None:
        raise NotImplementedError


class AutoCancelSweeper(_Sweeper):
    """Reminds, then reclaims, swaps that stalled before delivery."""

    name = "auto_cancel"

    async def run(self) -> SweepResult:
        now = self._clock()
        result = SweepResult()
        logger.info("sweep.auto_cancel.started", now=now.isoformat())

        result.reminders_sent = await self._send_reminders(now)

        cutoff = now - timedelta(hours=self._settings.auto_cancel_hours)
        async with self._session_factory() as session:
            stalled = await SwapRepository(session).find_idle(
                STALLABLE_STATUSES,
                updated_before=cutoff,
                limit=self._settings.sweep_batch_size,
            )
            candidate_ids = [swap.id for swap in stalled]

        for swap_id in candidate_ids:
            await self._process(swap_id, result, lambda svc, sid=swap_id: svc.expire(sid))

        logger.info(
            "sweep.auto_cancel.finished",
            processed=result.processed,
            cancelled=result.cancelled,
            skipped=result.skipped,
            errors=result.errors,
            reminders=result.reminders_sent,
            refunded=result.total_refunded,
        )
        return result

    def _record(self, swap_id: uuid.UUID, outcome: Any, result: SweepResult) -> None:
        refunded = outcome.transaction.amount if outcome.transaction is not None else 0
        result.cancelled += 1
        result.total_refunded += refunded
        result.details.append(
            {"swap_id": str(swap_id), "action": "cancelled", "refunded": refunded}
        )

    async def _send_reminders(self, now: datetime) -> int:
        """Warn the party expected to act. Read-only; never touches the swap."""
        window_start = now - timedelta(hours=self._settings.reminder_window_end_hours)
        window_end = now - timedelta(hours=self._settings.reminder_window_start_hours)
        outbox = Outbox()
        async with self._session_factory() as session:
            due = await SwapRepository(session).find_idle(
                STALLABLE_STATUSES,
                updated_after=window_start,
                updated_before=window_end,
                limit=self._settings.sweep_batch_size,
            )
            for swap in due:
                idle_hours = (now - swap.updated_at).total_seconds() / 3600
                hours_left = max(0, round(self._settings.auto_cancel_hours - idle_hours))
                status = SwapStatus(swap.status)
                if status == SwapStatus.PENDING:
                    targets = [swap.owner_id]
                elif status == SwapStatus.ACCEPTED:
                    targets = [swap.requester_id]
                else:
                    targets = [swap.owner_id, swap.requester_id]
                for user_id in targets:
                    outbox.notify(
                        user_id,
                        NotificationEvent.SWAP_REMINDER,
                        swap_id=str(swap.id),
                        status=swap.status,
                        hours_left=hours_left,
                    )
        sent = len(outbox.notifications)
        failures = await outbox.dispatch(self._notifications, self._activity)
        return sent - failures

    async def sweep_status(self) -> dict[str, Any]:
        """Counts of stalled swaps by how close they are to the cutoff."""
        now = self._clock()
        cutoff = now - timedelta(hours=self._settings.auto_cancel_hours)
        warn_from = now - timedelta(hours=self._settings.reminder_window_start_hours)
        async with self._session_factory() as session:
            repo = SwapRepository(session)
            expired = await repo.count_by_status(STALLABLE_STATUSES, updated_before=cutoff)
            expiring_soon = await repo.count_by_status(
                STALLABLE_STATUSES, updated_after=cutoff, updated_before=warn_from
            )
            active = await repo.count_by_status(STALLABLE_STATUSES)
        return {
            "expired": expired,
            "expiring_soon": expiring_soon,
            "active": active,
            "auto_cancel_hours": self._settings.auto_cancel_hours,
            "checked_at": now.isoformat(),
        }


class AutoCompleteSweeper(_Sweeper):
    """Settles delivered swaps whose dispute window closed quietly."""

    name = "auto_complete"

    async def run(self) -> SweepResult:
        now = self._clock()
        result = SweepResult()
        logger.info("sweep.auto_complete.started", now=now.isoformat())

        gate = not self._settings.auto_complete_high_risk
        batch = self._settings.sweep_batch_size
        async with self._session_factory() as session:
            repo = SwapRepository(session)
            candidates = [
                swap.id
                for swap in await repo.find_auto_complete_candidates(
                    now, batch, low_risk_only=gate
                )
            ]
            held = (
                [(swap.id, swap.risk_tier) for swap in await repo.find_held_for_review(now, batch)]
                if gate
                else []
            )

        for swap_id, risk_tier in held:
            result.skipped += 1
            result.details.append(
                {"swap_id": str(swap_id), "action": "skipped", "risk_tier": risk_tier}
            )
        for swap_id in candidates:
            await self._process(swap_id, result, lambda svc, sid=swap_id: svc.auto_complete(sid))

        logger.info(
            "sweep.auto_complete.finished",
            processed=result.processed,
            completed=result.completed,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    def _record(self, swap_id: uuid.UUID, outcome: Any, result: SweepResult) -> None:
        fee = outcome.fee.total if outcome.fee is not None else 0
        result.completed += 1
        result.details.append({"swap_id": str(swap_id), "action": "completed", "fee": fee})
