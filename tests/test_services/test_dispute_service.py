"""Tests for DisputeService: opening, evidence and admin resolution."""

from __future__ import annotations

import pytest

from barter_settlement.domain.enums import (
    DisputeStatus,
    EscrowState,
    NotificationEvent,
    SettlementOutcome,
    SwapStatus,
    TransactionType,
)
from barter_settlement.domain.exceptions import (
    AlreadyDisputedError,
    DeadlineExpiredError,
    InvalidStateTransitionError,
    MissingEvidenceError,
    NotAuthorizedError,
    ValidationFailedError,
)
from barter_settlement.infrastructure.database.repositories import SystemStatsRepository
from barter_settlement.services.outbox import Outbox


@pytest.fixture
def delivered(driver, parties, make_product):  # noqa: ANN001, ANN201
    async def _make(price: int = 800):  # noqa: ANN202
        owner, requester = parties
        return await driver.delivered(requester, await make_product(owner, price=price))

    return _make


async def _open(disputes, swap, reporter):  # noqa: ANN001, ANN202
    dispute = await disputes.open_dispute(
        swap.id, reporter, "damaged", "Screen cracked on arrival", ["crack.jpg"]
    )
    await disputes.commit()
    return dispute


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_freezes_the_swap(self, disputes, parties, delivered, sink, clock) -> None:
        owner, requester = parties
        swap = await delivered()

        dispute = await _open(disputes, swap, requester)

        assert swap.status == SwapStatus.DISPUTED
        assert not swap.auto_complete_eligible
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.reported_user_id == owner
        hours = (dispute.evidence_deadline - clock()).total_seconds() / 3600
        assert 47.9 < hours <= 48
        (uid, payload), = sink.of_type(NotificationEvent.DISPUTE_OPENED)
        assert uid == owner
        assert payload["type"] == "damaged"

    @pytest.mark.asyncio
    async def test_stranger_cannot_dispute(self, disputes, make_user, delivered) -> None:
        swap = await delivered()
        with pytest.raises(NotAuthorizedError):
            await disputes.open_dispute(
                swap.id, await make_user(), "damaged", "not mine", ["x.jpg"]
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("photos", [[], [f"{i}.jpg" for i in range(6)]])
    async def test_evidence_count(self, disputes, parties, delivered, photos) -> None:
        _, requester = parties
        swap = await delivered()
        with pytest.raises(MissingEvidenceError):
            await disputes.open_dispute(swap.id, requester, "damaged", "cracked", photos)

    @pytest.mark.asyncio
    async def test_unknown_type(self, disputes, parties, delivered) -> None:
        _, requester = parties
        swap = await delivered()
        with pytest.raises(ValidationFailedError):
            await disputes.open_dispute(swap.id, requester, "vibes", "cracked", ["x.jpg"])

    @pytest.mark.asyncio
    async def test_only_one_dispute(self, disputes, parties, delivered) -> None:
        owner, requester = parties
        swap = await delivered()
        await _open(disputes, swap, requester)

        with pytest.raises(AlreadyDisputedError) as exc_info:
            await disputes.open_dispute(swap.id, owner, "other", "they lie", ["x.jpg"])
        assert exc_info.value.already_done

    @pytest.mark.asyncio
    async def test_needs_delivered_swap(self, disputes, driver, parties, make_product) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(InvalidStateTransitionError):
            await disputes.open_dispute(swap.id, requester, "damaged", "cracked", ["x.jpg"])

    @pytest.mark.asyncio
    async def test_window_closed(self, disputes, parties, delivered, clock) -> None:
        _, requester = parties
        swap = await delivered()
        clock.advance(hours=49)
        with pytest.raises(DeadlineExpiredError):
            await disputes.open_dispute(swap.id, requester, "damaged", "cracked", ["x.jpg"])

    @pytest.mark.asyncio
    async def test_disputed_swap_cannot_auto_complete(
        self, svc, disputes, parties, delivered, clock
    ) -> None:
        _, requester = parties
        swap = await delivered()
        await _open(disputes, swap, requester)
        clock.advance(hours=72)

        assert await svc.auto_complete(swap.id) is None

    @pytest.mark.asyncio
    async def test_shares_the_swap_service_outbox(
        self, svc, disputes, parties, delivered, sink
    ) -> None:
        owner, requester = parties
        swap = await delivered()
        assert isinstance(disputes.outbox, Outbox)
        assert disputes.outbox is svc.outbox

        await disputes.open_dispute(
            swap.id, requester, "damaged", "Screen cracked on arrival", ["crack.jpg"]
        )
        assert [n.user_id for n in svc.outbox.notifications] == [owner]

        await svc.commit()
        assert svc.outbox.notifications == []
        assert [uid for uid, _ in sink.of_type(NotificationEvent.DISPUTE_OPENED)] == [owner]


class TestEvidence:
    @pytest.mark.asyncio
    async def test_reported_party_answers(
        self, svc, disputes, parties, delivered, sink
    ) -> None:
        owner, requester = parties
        swap = await delivered()
        dispute = await _open(disputes, swap, requester)

        await disputes.submit_dispute_evidence(dispute.id, owner, ["sealed.jpg"], "was sealed")
        await disputes.commit()

        assert dispute.status == DisputeStatus.EVIDENCE_SUBMITTED
        assert dispute.reported_evidence == ["sealed.jpg"]
        assert not dispute.evidence_submitted_late
        (uid, payload), = sink.of_type(NotificationEvent.DISPUTE_EVIDENCE)
        assert (uid, payload["late"]) == (requester, False)

        note = (await svc.get_logs(swap.id))[-1]
        assert note.reason == "DISPUTE_EVIDENCE"
        assert note.from_status == note.to_status == "disputed"

    @pytest.mark.asyncio
    async def test_late_evidence_is_flagged(
        self, disputes, parties, delivered, clock
    ) -> None:
        owner, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        clock.advance(hours=50)

        await disputes.submit_dispute_evidence(dispute.id, owner, ["late.jpg"])

        assert dispute.evidence_submitted_late

    @pytest.mark.asyncio
    async def test_reporter_cannot_answer(self, disputes, parties, delivered) -> None:
        _, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        with pytest.raises(NotAuthorizedError):
            await disputes.submit_dispute_evidence(dispute.id, requester, ["x.jpg"])

    @pytest.mark.asyncio
    async def test_single_submission(self, disputes, parties, delivered) -> None:
        owner, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        await disputes.submit_dispute_evidence(dispute.id, owner, ["a.jpg"])
        await disputes.commit()

        with pytest.raises(InvalidStateTransitionError):
            await disputes.submit_dispute_evidence(dispute.id, owner, ["b.jpg"])


class TestResolve:
    @pytest.mark.asyncio
    async def test_upheld_requester_complaint_refunds(
        self, svc, disputes, session, parties, admin, delivered, balance, sink
    ) -> None:
        owner, requester = parties
        swap = await delivered()
        dispute = await _open(disputes, swap, requester)

        result = await disputes.resolve_dispute(
            dispute.id,
            admin,
            "resolved",
            "Photos show transit damage",
            compensation_amount=25,
            penalize_reported=True,
        )
        await disputes.commit()

        assert result.swap.status == SwapStatus.RESOLVED
        assert result.swap.escrow_state == EscrowState.REFUNDED
        assert result.details["dispute"].outcome == SettlementOutcome.REFUND
        assert (await balance(requester)).valor_balance == 1500 + 25
        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor) == (500, 0)
        assert owner_row.trust_score == 80

        stats = await SystemStatsRepository(session).get()
        assert stats.total_compensation_paid == 25
        assert stats.total_swaps_completed == 0
        txn_types = [t.type for t in await svc.get_transactions(swap.id)]
        assert TransactionType.COMPENSATION in txn_types
        assert {uid for uid, _ in sink.of_type(NotificationEvent.DISPUTE_RESOLVED)} == {
            owner,
            requester,
        }

    @pytest.mark.asyncio
    async def test_rejected_complaint_settles(
        self, disputes, parties, admin, delivered, balance
    ) -> None:
        owner, requester = parties
        swap = await delivered()
        dispute = await _open(disputes, swap, requester)

        result = await disputes.resolve_dispute(dispute.id, admin, "rejected", "No damage shown")
        await disputes.commit()

        assert result.swap.status == SwapStatus.RESOLVED
        assert result.swap.escrow_state == EscrowState.RELEASED
        assert result.fee.total == 9
        assert (await balance(owner)).valor_balance == 1291
        assert (await balance(requester)).valor_balance == 700

    @pytest.mark.asyncio
    async def test_explicit_outcome_wins(
        self, disputes, parties, admin, delivered, balance
    ) -> None:
        owner, requester = parties
        dispute = await _open(disputes, await delivered(), requester)

        await disputes.resolve_dispute(
            dispute.id, admin, "resolved", "Partial fault", outcome="settle"
        )
        await disputes.commit()

        assert (await balance(owner)).valor_balance == 1291

    @pytest.mark.asyncio
    async def test_admin_only(self, disputes, parties, delivered) -> None:
        owner, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        with pytest.raises(NotAuthorizedError):
            await disputes.resolve_dispute(dispute.id, owner, "rejected", "mine")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "compensation"),
        [("open", None), ("evidence_submitted", None), ("nope", None), ("resolved", 0)],
    )
    async def test_resolution_validation(
        self, disputes, parties, admin, delivered, status, compensation
    ) -> None:
        _, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        with pytest.raises(ValidationFailedError):
            await disputes.resolve_dispute(
                dispute.id, admin, status, "note", compensation_amount=compensation
            )

    @pytest.mark.asyncio
    async def test_resolves_once(self, disputes, parties, admin, delivered) -> None:
        _, requester = parties
        dispute = await _open(disputes, await delivered(), requester)
        await disputes.resolve_dispute(dispute.id, admin, "rejected", "first")
        await disputes.commit()

        with pytest.raises(InvalidStateTransitionError):
            await disputes.resolve_dispute(dispute.id, admin, "resolved", "second")

    @pytest.mark.asyncio
    async def test_force_complete_closes_open_dispute(
        self, svc, disputes, parties, admin, delivered
    ) -> None:
        _, requester = parties
        swap = await delivered()
        dispute = await _open(disputes, swap, requester)

        result = await svc.force_complete(swap.id, admin, "courier confirmed delivery")
        await svc.commit()

        assert result.swap.status == SwapStatus.COMPLETED
        closed = await disputes.get_dispute(dispute.id)
        assert closed.status == DisputeStatus.RESOLVED
        assert closed.outcome == SettlementOutcome.SETTLE

    @pytest.mark.asyncio
    async def test_list_by_status(self, disputes, parties, admin, delivered) -> None:
        _, requester = parties
        first = await _open(disputes, await delivered(price=300), requester)
        await _open(disputes, await delivered(price=300), requester)
        await disputes.resolve_dispute(first.id, admin, "rejected", "no")
        await disputes.commit()

        assert len(await disputes.list_disputes("open")) == 1
        assert [d.id for d in await disputes.list_disputes("rejected")] == [first.id]
        assert len(await disputes.list_disputes()) == 2
