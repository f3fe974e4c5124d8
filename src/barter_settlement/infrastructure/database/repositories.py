"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change on swap_requests is a *conditional* UPDATE whose WHERE
clause repeats the guard (``status IN (...)`` and friends). The caller checks
the returned boolean; False means another worker got there first.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm.attributes import set_committed_value

from barter_settlement.domain.enums import DisputeStatus, RiskTier, SwapStatus
from barter_settlement.infrastructure.database.orm_models import (
    DisputeReport,
    NegotiationEvent,
    Product,
    SwapFeedback,
    SwapRequest,
    SwapStatusLog,
    SystemStats,
    User,
    ValorTransaction,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement


_CLOSED_DISPUTE_STATUSES = (DisputeStatus.RESOLVED.value, DisputeStatus.REJECTED.value)


def mirror_update(instance: Any, values: dict[str, Any]) -> None:
    """Copy values written by a Core UPDATE onto a loaded instance.

    The attributes are set as already persisted so the next flush does not
    emit a second UPDATE over them.
    """
    for key, value in values.items():
        set_committed_value(instance, key, value)


class UserRepository:
    """Data access for users. Balance columns are written only by ValorLedger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user: User) -> User:
        self._session.add(user)
        await self._session.flush()
        return user

    async def get_by_id(self, user_id: uuid.UUID, *, for_update: bool = False) -> User | None:
        """Fetch a user, always re-reading columns changed by Core UPDATEs."""
        stmt = (
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def adjust_balance(
        self,
        user_id: uuid.UUID,
        delta: int,
        *,
        locked_delta: int = 0,
    ) -> bool:
        """Atomically add ``delta`` to the spendable balance and ``locked_delta`` to
        the locked balance. Refuses (returns False) if either would go negative."""
        conditions = [User.id == user_id]
        if delta < 0:
            conditions.append(User.valor_balance >= -delta)
        if locked_delta < 0:
            conditions.append(User.locked_valor >= -locked_delta)
        result = await self._session.execute(
            update(User)
            .where(*conditions)
            .values(
                valor_balance=User.valor_balance + delta,
                locked_valor=User.locked_valor + locked_delta,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_trust_score(self, user_id: uuid.UUID, score: int) -> None:
        await self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(trust_score=score)
            .execution_options(synchronize_session=False)
        )

    async def set_suspended(self, user_id: uuid.UUID, suspended: bool) -> bool:
        result = await self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(is_suspended=suspended)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, product: Product) -> Product:
        self._session.add(product)
        await self._session.flush()
        return product

    async def get_by_id(self, product_id: uuid.UUID) -> Product | None:
        result = await self._session.execute(
            select(Product)
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_status(self, product_id: uuid.UUID, status: str) -> bool:
        result = await self._session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SwapRepository:
    """Data access for swap requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, swap: SwapRequest) -> SwapRequest:
        """Insert a new swap request."""
        self._session.add(swap)
        await self._session.flush()
        return swap

    async def get_by_id(self, swap_id: uuid.UUID, *, for_update: bool = False) -> SwapRequest | None:
        """Fetch a swap by its UUID, refreshing any identity-mapped copy."""
        stmt = (
            select(SwapRequest)
            .where(SwapRequest.id == swap_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def conditional_update(
        self,
        swap_id: uuid.UUID,
        values: dict[str, Any],
        *conditions: ColumnElement[bool],
    ) -> bool:
        """UPDATE one swap only if every condition still holds. True if a row changed.

        ``updated_at`` moves only when ``values`` sets it: ledger claims must
        not reset the idle timer the auto-cancel sweep reads.
        """
        result = await self._session.execute(
            update(SwapRequest)
            .where(SwapRequest.id == swap_id, *conditions)
            .values(**{"updated_at": SwapRequest.updated_at, **values})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition(
        self,
        swap_id: uuid.UUID,
        sources: Iterable[SwapStatus],
        values: dict[str, Any],
        *extra_conditions: ColumnElement[bool],
    ) -> bool:
        """Flip status (and any other columns in ``values``) iff the row is
        still in one of ``sources``."""
        return await self.conditional_update(
            swap_id,
            values,
            SwapRequest.status.in_([s.value for s in sources]),
            *extra_conditions,
        )

    async def find_idle(
        self,
        statuses: Iterable[SwapStatus],
        *,
        updated_after: datetime | None = None,
        updated_before: datetime,
        limit: int | None = None,
    ) -> list[SwapRequest]:
        """Swaps in ``statuses`` whose last update falls in the given window."""
        stmt = select(SwapRequest).where(
            SwapRequest.status.in_([s.value for s in statuses]),
            SwapRequest.updated_at < updated_before,
        )
        if updated_after is not None:
            stmt = stmt.where(SwapRequest.updated_at >= updated_after)
        stmt = stmt.order_by(SwapRequest.updated_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(
        self,
        statuses: Iterable[SwapStatus],
        *,
        updated_after: datetime | None = None,
        updated_before: datetime | None = None,
    ) -> int:
        stmt = select(func.count(SwapRequest.id)).where(
            SwapRequest.status.in_([s.value for s in statuses])
        )
        if updated_after is not None:
            stmt = stmt.where(SwapRequest.updated_at >= updated_after)
        if updated_before is not None:
            stmt = stmt.where(SwapRequest.updated_at < updated_before)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def find_auto_complete_candidates(
        self, now: datetime, limit: int, *, low_risk_only: bool = False
    ) -> list[SwapRequest]:
        """Delivered swaps whose dispute window has closed with no dispute.

        With ``low_risk_only`` the risk gate is part of the selection, so
        swaps held for review never take up room in the batch.
        """
        stmt = select(SwapRequest).where(*self.auto_complete_conditions(now))
        if low_risk_only:
            stmt = stmt.where(self.low_risk_condition())
        result = await self._session.execute(
            stmt.order_by(SwapRequest.dispute_window_ends_at.asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def find_held_for_review(self, now: datetime, limit: int) -> list[SwapRequest]:
        """Swaps that would auto-complete if their risk tier allowed it."""
        result = await self._session.execute(
            select(SwapRequest)
            .where(*self.auto_complete_conditions(now), ~self.low_risk_condition())
            .order_by(SwapRequest.dispute_window_ends_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def low_risk_condition() -> ColumnElement[bool]:
        return or_(
            SwapRequest.risk_tier.is_(None), SwapRequest.risk_tier == RiskTier.LOW.value
        )

    @staticmethod
    def auto_complete_conditions(now: datetime) -> tuple[ColumnElement[bool], ...]:
        """The full auto-complete guard, reused verbatim in the claiming UPDATE."""
        return (
            SwapRequest.status == SwapStatus.DELIVERED.value,
            SwapRequest.auto_complete_eligible.is_(True),
            SwapRequest.dispute_window_ends_at.is_not(None),
            SwapRequest.dispute_window_ends_at <= now,
            ~exists()
            .where(DisputeReport.swap_request_id == SwapRequest.id)
            .correlate(SwapRequest),
        )


class StatusLogRepository:
    """Data access for the append-only swap status log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        swap_id: uuid.UUID,
        old_status: SwapStatus | str | None,
        new_status: SwapStatus | str,
        changed_by: str = "SYSTEM",
        reason: str | None = None,
        metadata: dict | None = None,
        created_at: datetime | None = None,
    ) -> SwapStatusLog:
        """Append a new audit entry. This is the ONLY write operation allowed."""
        entry = SwapStatusLog(
            swap_request_id=swap_id,
            from_status=str(old_status) if old_status else None,
            to_status=str(new_status),
            changed_by=changed_by,
            reason=reason,
            metadata_json=metadata,
        )
        if created_at is not None:
            entry.created_at = created_at
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_swap(self, swap_id: uuid.UUID) -> list[SwapStatusLog]:
        """Fetch all entries for a swap in chronological order."""
        result = await self._session.execute(
            select(SwapStatusLog)
            .where(SwapStatusLog.swap_request_id == swap_id)
            .order_by(SwapStatusLog.created_at.asc(), SwapStatusLog.id.asc())
        )
        return list(result.scalars().all())


class TransactionRepository:
    """Data access for the append-only Valor journal."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, txn: ValorTransaction) -> ValorTransaction:
        self._session.add(txn)
        await self._session.flush()
        return txn

    async def get_by_swap(self, swap_id: uuid.UUID) -> list[ValorTransaction]:
        result = await self._session.execute(
            select(ValorTransaction)
            .where(ValorTransaction.swap_request_id == swap_id)
            .order_by(ValorTransaction.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_user(self, user_id: uuid.UUID, limit: int = 50) -> list[ValorTransaction]:
        result = await self._session.execute(
            select(ValorTransaction)
            .where(
                (ValorTransaction.from_user_id == user_id)
                | (ValorTransaction.to_user_id == user_id)
            )
            .order_by(ValorTransaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_credits(self, user_id: uuid.UUID, types: Iterable[str]) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(ValorTransaction.net_amount), 0)).where(
                ValorTransaction.to_user_id == user_id,
                ValorTransaction.type.in_(list(types)),
            )
        )
        return int(result.scalar_one())

    async def sum_debits(self, user_id: uuid.UUID, types: Iterable[str]) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(ValorTransaction.amount), 0)).where(
                ValorTransaction.from_user_id == user_id,
                ValorTransaction.type.in_(list(types)),
            )
        )
        return int(result.scalar_one())

    async def sum_for_swap(self, swap_id: uuid.UUID, types: Iterable[str]) -> int:
        result = await self._session.execute(
            select(func.coalesce(func.sum(ValorTransaction.amount), 0)).where(
                ValorTransaction.swap_request_id == swap_id,
                ValorTransaction.type.in_(list(types)),
            )
        )
        return int(result.scalar_one())


class DisputeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: DisputeReport) -> DisputeReport:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> DisputeReport | None:
        result = await self._session.execute(
            select(DisputeReport)
            .where(DisputeReport.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_open_for_swap(self, swap_id: uuid.UUID) -> DisputeReport | None:
        result = await self._session.execute(
            select(DisputeReport).where(
                DisputeReport.swap_request_id == swap_id,
                DisputeReport.status.not_in(_CLOSED_DISPUTE_STATUSES),
            )
        )
        return result.scalars().first()

    async def list_by_status(
        self, status: DisputeStatus | None = None, limit: int = 100
    ) -> list[DisputeReport]:
        stmt = select(DisputeReport).order_by(DisputeReport.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(DisputeReport.status == status.value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def close(
        self,
        dispute_id: uuid.UUID,
        values: dict[str, Any],
    ) -> bool:
        """Close a dispute iff it is still open. True if this call closed it."""
        result = await self._session.execute(
            update(DisputeReport)
            .where(
                DisputeReport.id == dispute_id,
                DisputeReport.status.not_in(_CLOSED_DISPUTE_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def close_all_for_swap(self, swap_id: uuid.UUID, values: dict[str, Any]) -> int:
        result = await self._session.execute(
            update(DisputeReport)
            .where(
                DisputeReport.swap_request_id == swap_id,
                DisputeReport.status.not_in(_CLOSED_DISPUTE_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount)

    async def submit_evidence(self, dispute_id: uuid.UUID, values: dict[str, Any]) -> bool:
        result = await self._session.execute(
            update(DisputeReport)
            .where(
                DisputeReport.id == dispute_id,
                DisputeReport.status == DisputeStatus.OPEN.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class NegotiationRepository:
    """Data access for the append-only negotiation history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, entry: NegotiationEvent) -> NegotiationEvent:
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get_by_swap(self, swap_id: uuid.UUID) -> list[NegotiationEvent]:
        result = await self._session.execute(
            select(NegotiationEvent)
            .where(NegotiationEvent.swap_request_id == swap_id)
            .order_by(NegotiationEvent.created_at.asc(), NegotiationEvent.id.asc())
        )
        return list(result.scalars().all())


class FeedbackRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, feedback: SwapFeedback) -> SwapFeedback:
        self._session.add(feedback)
        await self._session.flush()
        return feedback

    async def get_by_swap_and_user(
        self, swap_id: uuid.UUID, user_id: uuid.UUID
    ) -> SwapFeedback | None:
        result = await self._session.execute(
            select(SwapFeedback).where(
                SwapFeedback.swap_request_id == swap_id,
                SwapFeedback.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_by_swap(self, swap_id: uuid.UUID) -> list[SwapFeedback]:
        result = await self._session.execute(
            select(SwapFeedback)
            .where(SwapFeedback.swap_request_id == swap_id)
            .order_by(SwapFeedback.created_at.asc())
        )
        return list(result.scalars().all())


class SystemStatsRepository:
    """Single-row platform counters, incremented atomically."""

    ROW_ID = "main"

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure(self) -> None:
        """Create the counters row if it is missing.

        Insert-or-ignore, so two first settlements on a fresh database
        cannot collide on the primary key.
        """
        dialect = self._session.get_bind().dialect.name
        insert = postgresql_insert if dialect == "postgresql" else sqlite_insert
        await self._session.execute(
            insert(SystemStats)
            .values(id=self.ROW_ID)
            .on_conflict_do_nothing(index_elements=[SystemStats.id])
        )

    async def get(self) -> SystemStats:
        stats = await self._load()
        if stats is None:
            await self.ensure()
            stats = await self._load()
        return stats

    async def _load(self) -> SystemStats | None:
        result = await self._session.execute(
            select(SystemStats)
            .where(SystemStats.id == self.ROW_ID)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def increment(self, **deltas: int) -> None:
        await self.ensure()
        await self._session.execute(
            update(SystemStats)
            .where(SystemStats.id == self.ROW_ID)
            .values(
                **{
                    column: getattr(SystemStats, column) + delta
                    for column, delta in deltas.items()
                }
            )
            .execution_options(synchronize_session=False)
        )
