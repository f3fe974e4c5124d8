"""Dispute Service - opening, evidencing and adjudicating disputes.

A dispute freezes a delivered swap: auto-completion is switched off and
only an admin resolution (or a force-complete) can move the swap on. The
resolution always lands the swap in ``resolved``; the admin's outcome
decides whether the escrow settles to the owner or refunds the requester.

Shares the session and outbox of the SwapService it wraps, so
``commit()`` on either dispatches everything queued.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from barter_settlement.domain.enums import (
    DisputeStatus,
    DisputeType,
    NotificationEvent,
    SettlementOutcome,
    SwapStatus,
)
from barter_settlement.domain.exceptions import (
    AlreadyDisputedError,
    DeadlineExpiredError,
    DisputeNotFoundError,
    InvalidStateTransitionError,
    MissingEvidenceError,
    NotAuthorizedError,
    ValidationFailedError,
)
from barter_settlement.domain.trust import TrustEvent
from barter_settlement.infrastructure.database.orm_models import DisputeReport, SwapRequest
from barter_settlement.infrastructure.database.repositories import (
    DisputeRepository,
    mirror_update,
)
from barter_settlement.logging_config import get_logger
from barter_settlement.services.swap_service import MAX_PHOTOS, SettlementResult, SwapService

if TYPE_CHECKING:
    import uuid

    from barter_settlement.services.outbox import Outbox

logger = get_logger(__name__)


class DisputeService:
    """Disputes on top of a SwapService's unit of work."""

    def __init__(self, swaps: SwapService) -> None:
        self._swaps = swaps
        self._disputes = DisputeRepository(swaps.session)
        self._settings = swaps.settings

    @property
    def outbox(self) -> Outbox:
        return self._swaps.outbox

    async def commit(self) -> None:
        await self._swaps.commit()

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        swap_id: uuid.UUID,
        reporter_id: uuid.UUID,
        dispute_type: DisputeType | str,
        description: str,
        evidence: list[str],
    ) -> DisputeReport:
        """Freeze a delivered swap while its dispute window is still open."""
        swap = await self._swaps.get_swap(swap_id)
        if reporter_id not in (swap.owner_id, swap.requester_id):
            raise NotAuthorizedError(str(reporter_id), "dispute this swap")
        try:
            dispute_type = DisputeType(dispute_type)
        except ValueError as err:
            raise ValidationFailedError(f"Unknown dispute type: {dispute_type}", "type") from err
        if not (description or "").strip():
            raise ValidationFailedError("A description is required", "description")
        if not 1 <= len(evidence) <= MAX_PHOTOS:
            raise MissingEvidenceError("Dispute evidence photos", 1, MAX_PHOTOS)

        if swap.status == SwapStatus.DISPUTED.value:
            raise AlreadyDisputedError(str(swap.id))
        if await self._disputes.get_open_for_swap(swap.id) is not None:
            raise AlreadyDisputedError(str(swap.id))
        if swap.status != SwapStatus.DELIVERED.value:
            raise InvalidStateTransitionError(
                swap.status, "open_dispute", "only delivered swaps can be disputed"
            )

        now = self._swaps.now()
        if swap.dispute_window_ends_at is None or now > swap.dispute_window_ends_at:
            raise DeadlineExpiredError("Dispute window")

        await self._swaps.transition(
            swap,
            "open_dispute",
            actor=str(reporter_id),
            values={"auto_complete_eligible": False},
            conditions=(
                SwapRequest.dispute_window_ends_at >= now,
                SwapRequest.auto_complete_eligible.is_(True),
            ),
            reason=f"DISPUTE|{dispute_type.value}",
        )
        dispute = await self._disputes.create(
            DisputeReport(
                swap_request_id=swap.id,
                reporter_id=reporter_id,
                reported_user_id=swap.counterparty_of(reporter_id),
                type=dispute_type.value,
                description=description,
                evidence=list(evidence),
                reported_evidence=[],
                status=DisputeStatus.OPEN.value,
                evidence_deadline=now + timedelta(hours=self._settings.evidence_window_hours),
                created_at=now,
                updated_at=now,
            )
        )

        self.outbox.notify(
            dispute.reported_user_id,
            NotificationEvent.DISPUTE_OPENED,
            swap_id=str(swap.id),
            dispute_id=str(dispute.id),
            type=dispute_type.value,
            evidence_deadline=dispute.evidence_deadline.isoformat(),
        )
        logger.info(
            "dispute.opened",
            dispute_id=str(dispute.id),
            swap_id=str(swap.id),
            type=dispute_type.value,
        )
        return dispute

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def submit_dispute_evidence(
        self,
        dispute_id: uuid.UUID,
        actor_id: uuid.UUID,
        photos: list[str],
        note: str | None = None,
    ) -> DisputeReport:
        """The reported party answers. Submissions past the deadline are
        accepted but flagged late for the adjudicator."""
        dispute = await self.get_dispute(dispute_id)
        if actor_id != dispute.reported_user_id:
            raise NotAuthorizedError(str(actor_id), "answer this dispute")
        if dispute.status != DisputeStatus.OPEN.value:
            raise InvalidStateTransitionError(
                dispute.status,
                "submit_evidence",
                "evidence was already submitted or the dispute is closed",
            )
        if not 1 <= len(photos) <= MAX_PHOTOS:
            raise MissingEvidenceError("Evidence photos", 1, MAX_PHOTOS)

        now = self._swaps.now()
        values = {
            "reported_evidence": list(photos),
            "reported_evidence_note": note,
            "evidence_submitted_late": now > dispute.evidence_deadline,
            "status": DisputeStatus.EVIDENCE_SUBMITTED.value,
            "updated_at": now,
        }
        if not await self._disputes.submit_evidence(dispute.id, values):
            raise InvalidStateTransitionError(dispute.status, "submit_evidence")
        mirror_update(dispute, values)
        swap = await self._swaps.get_swap(dispute.swap_request_id)
        await self._swaps.record_note(
            swap,
            actor=str(actor_id),
            reason="DISPUTE_EVIDENCE",
            metadata={
                "dispute_id": str(dispute.id),
                "photos": len(photos),
                "late": values["evidence_submitted_late"],
            },
        )

        self.outbox.notify(
            dispute.reporter_id,
            NotificationEvent.DISPUTE_EVIDENCE,
            dispute_id=str(dispute.id),
            late=values["evidence_submitted_late"],
        )
        if values["evidence_submitted_late"]:
            logger.warning("dispute.evidence_late", dispute_id=str(dispute.id))
        return dispute

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        admin_id: uuid.UUID,
        status: DisputeStatus | str,
        note: str,
        outcome: SettlementOutcome | str | None = None,
        compensation_amount: int | None = None,
        penalize_reported: bool = False,
    ) -> SettlementResult:
        """Close the dispute and terminate the swap in ``resolved``.

        ``status`` is ``resolved`` (complaint upheld) or ``rejected``. The
        outcome defaults to REFUND for an upheld complaint raised by the
        requester and to SETTLE otherwise. Compensation is paid to the
        reporter from platform funds, never from the escrow.
        """
        if not await self.is_admin(admin_id):
            raise NotAuthorizedError(str(admin_id), "resolve disputes")
        try:
            status = DisputeStatus(status)
        except ValueError as err:
            raise ValidationFailedError(f"Unknown dispute status: {status}", "status") from err
        if not status.is_closed:
            raise ValidationFailedError("Resolution must be 'resolved' or 'rejected'", "status")
        if compensation_amount is not None and compensation_amount <= 0:
            raise ValidationFailedError("Compensation must be positive", "compensation_amount")

        dispute = await self.get_dispute(dispute_id)
        if DisputeStatus(dispute.status).is_closed:
            raise InvalidStateTransitionError(dispute.status, "resolve", "dispute already closed")
        swap = await self._swaps.get_swap(dispute.swap_request_id)

        if outcome is None:
            upheld_by_requester = (
                status == DisputeStatus.RESOLVED and dispute.reporter_id == swap.requester_id
            )
            outcome = SettlementOutcome.REFUND if upheld_by_requester else SettlementOutcome.SETTLE
        else:
            outcome = SettlementOutcome(outcome)

        now = self._swaps.now()
        dispute_values = {
            "status": status.value,
            "outcome": outcome.value,
            "resolution_note": note,
            "compensation_amount": compensation_amount,
            "resolved_by": admin_id,
            "resolved_at": now,
            "updated_at": now,
        }
        if not await self._disputes.close(dispute.id, dispute_values):
            raise InvalidStateTransitionError(dispute.status, "resolve", "dispute already closed")
        mirror_update(dispute, dispute_values)

        result = await self._swaps.terminate(
            swap,
            outcome,
            "resolve",
            actor=str(admin_id),
            reason=f"DISPUTE_{status.value.upper()}|{note}",
            metadata={"dispute_id": str(dispute.id)},
        )
        if result is None:
            raise InvalidStateTransitionError(swap.status, "resolve", "swap changed concurrently")

        if compensation_amount:
            await self._swaps.ledger.pay_compensation(
                dispute.reporter_id,
                compensation_amount,
                swap.id,
                description=f"Compensation for dispute {dispute.id}",
            )
        if penalize_reported:
            await self._swaps.adjust_trust(dispute.reported_user_id, TrustEvent.DISPUTE_LOST)

        for party in (swap.owner_id, swap.requester_id):
            self.outbox.notify(
                party,
                NotificationEvent.DISPUTE_RESOLVED,
                dispute_id=str(dispute.id),
                swap_id=str(swap.id),
                status=status.value,
                outcome=outcome.value,
                compensation=compensation_amount or 0,
            )
        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute.id),
            swap_id=str(swap.id),
            status=status.value,
            outcome=outcome.value,
            compensation=compensation_amount or 0,
            penalized=penalize_reported,
        )
        result.details["dispute"] = dispute
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def is_admin(self, user_id: uuid.UUID) -> bool:
        return await self._swaps.collaborators.directory.is_admin(user_id)

    async def get_dispute(self, dispute_id: uuid.UUID) -> DisputeReport:
        dispute = await self._disputes.get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    async def list_disputes(
        self,
        status: DisputeStatus | str | None = None,
        limit: int = 100,
    ) -> list[DisputeReport]:
        return await self._disputes.list_by_status(
            DisputeStatus(status) if status is not None else None, limit
        )
