"""Tests for SwapService: offers, delivery, settlement and cancellation.

Every test runs against a real SQLite database, so the conditional UPDATEs,
the ledger's balance guards and the audit log are exercised end to end.
"""

from __future__ import annotations

from collections import Counter
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from barter_settlement.config import Settings
from barter_settlement.domain.enums import (
    EscrowState,
    NotificationEvent,
    ProductStatus,
    SettlementOutcome,
    SwapStatus,
    TransactionType,
)
from barter_settlement.domain.exceptions import (
    AlreadySettledError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    InvalidVerificationCodeError,
    MissingEvidenceError,
    NotAuthorizedError,
    SelfApprovalError,
    UserSuspendedError,
    ValidationFailedError,
)
from barter_settlement.domain.state_machine import legal_edges
from barter_settlement.infrastructure.database.repositories import (
    ProductRepository,
    SystemStatsRepository,
    UserRepository,
)
from barter_settlement.services.swap_service import generate_delivery_code


class TestCreateOffer:
    @pytest.mark.asyncio
    async def test_holds_listed_price_in_escrow(
        self, svc, parties, make_product, balance, sink
    ) -> None:
        owner, requester = parties
        product = await make_product(owner, price=800)

        swap = await svc.create_offer(requester, product)

        assert swap.status == SwapStatus.PENDING
        assert swap.pending_valor_amount == 800
        assert swap.escrow_state == EscrowState.HELD
        assert (await balance(requester)).valor_balance == 700

        # notifications wait for the commit
        assert sink.sent == []
        await svc.commit()
        assert sink.events_for(owner) == [NotificationEvent.SWAP_OFFER]

    @pytest.mark.asyncio
    async def test_custom_amount(self, svc, parties, make_product, balance) -> None:
        owner, requester = parties
        product = await make_product(owner, price=800)

        swap = await svc.create_offer(requester, product, valor_amount=650)

        assert swap.pending_valor_amount == 650
        assert (await balance(requester)).valor_balance == 850

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, svc, make_user, make_product) -> None:
        owner = await make_user(valor=0)
        poor = await make_user(valor=100)
        product = await make_product(owner, price=800)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await svc.create_offer(poor, product)
        assert exc_info.value.details["available"] == 100

    @pytest.mark.asyncio
    async def test_cannot_request_own_product(self, svc, parties, make_product) -> None:
        owner, _ = parties
        product = await make_product(owner)
        with pytest.raises(ValidationFailedError):
            await svc.create_offer(owner, product)

    @pytest.mark.asyncio
    async def test_zero_valor_rejected_without_item(self, svc, parties, make_product) -> None:
        owner, requester = parties
        product = await make_product(owner)
        with pytest.raises(ValidationFailedError):
            await svc.create_offer(requester, product, valor_amount=0)

    @pytest.mark.asyncio
    async def test_suspended_requester(self, svc, session, parties, make_product) -> None:
        owner, requester = parties
        product = await make_product(owner)
        await UserRepository(session).set_suspended(requester, True)

        with pytest.raises(UserSuspendedError):
            await svc.create_offer(requester, product)

    @pytest.mark.asyncio
    async def test_item_for_item_without_valor(
        self, svc, parties, make_product, balance
    ) -> None:
        owner, requester = parties
        product = await make_product(owner, price=300)
        theirs = await make_product(requester, price=250)

        swap = await svc.create_offer(requester, product, offered_product_id=theirs)

        assert swap.is_item_for_item
        assert swap.pending_valor_amount is None
        assert swap.escrow_state == EscrowState.NONE
        assert (await balance(requester)).valor_balance == 1500

    @pytest.mark.asyncio
    async def test_cannot_offer_someone_elses_item(
        self, svc, parties, make_user, make_product
    ) -> None:
        owner, requester = parties
        stranger = await make_user()
        product = await make_product(owner)
        not_theirs = await make_product(stranger)

        with pytest.raises(NotAuthorizedError):
            await svc.create_offer(requester, product, offered_product_id=not_theirs)


class TestAcceptAndReject:
    @pytest.mark.asyncio
    async def test_accept_locks_deposit_and_reserves(
        self, svc, session, parties, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        product = await make_product(owner, price=800)
        swap = await driver.offer(requester, product)

        await svc.accept_offer(swap.id, owner)
        await svc.commit()

        assert swap.status == SwapStatus.ACCEPTED
        assert swap.owner_deposit == 80
        assert swap.owner_deposit_locked
        assert swap.risk_tier == "high"
        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor) == (420, 80)
        stored = await ProductRepository(session).get_by_id(product)
        assert stored.status == ProductStatus.RESERVED

    @pytest.mark.asyncio
    async def test_only_owner_accepts(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        with pytest.raises(NotAuthorizedError):
            await svc.accept_offer(swap.id, requester)

    @pytest.mark.asyncio
    async def test_owner_needs_deposit(self, svc, make_user, make_product, driver) -> None:
        owner = await make_user(valor=10)
        requester = await make_user(valor=1000)
        swap = await driver.offer(requester, await make_product(owner, price=800))

        with pytest.raises(InsufficientBalanceError):
            await svc.accept_offer(swap.id, owner)

    @pytest.mark.asyncio
    async def test_accept_twice(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(InvalidStateTransitionError):
            await svc.accept_offer(swap.id, owner)

    @pytest.mark.asyncio
    async def test_reserved_product_cannot_be_requested(
        self, svc, parties, make_user, make_product, driver
    ) -> None:
        owner, requester = parties
        product = await make_product(owner)
        await driver.accept(await driver.offer(requester, product))
        latecomer = await make_user(valor=2000)

        with pytest.raises(ValidationFailedError):
            await svc.create_offer(latecomer, product)

    @pytest.mark.asyncio
    async def test_reject_refunds_in_full(
        self, svc, parties, make_product, balance, driver, sink
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))

        result = await svc.reject_offer(swap.id, owner, "keeping it")
        await svc.commit()

        assert result.swap.status == SwapStatus.CANCELLED
        assert result.swap.escrow_state == EscrowState.REFUNDED
        assert result.transaction.type == TransactionType.ESCROW_REFUND
        assert (await balance(requester)).valor_balance == 1500
        assert (await balance(owner)).trust_score == 90
        assert sink.events_for(requester) == [NotificationEvent.SWAP_REJECTED]

    @pytest.mark.asyncio
    async def test_requester_cannot_reject(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        with pytest.raises(NotAuthorizedError):
            await svc.reject_offer(swap.id, requester)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_delivery_point_issues_codes(
        self, svc, parties, make_product, driver, sink
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))

        await svc.setup_delivery(
            swap.id, owner, "delivery_point", ["a.jpg", "b.jpg"], delivery_point_id="DP-9"
        )
        await svc.commit()

        assert swap.status == SwapStatus.AWAITING_DELIVERY
        assert swap.delivery_code.startswith("SWAP-")
        assert len(swap.verification_code) == 6 and swap.verification_code.isdigit()
        assert swap.verification_code_b is None
        (_, payload), = sink.of_type(NotificationEvent.DELIVERY_READY)
        assert payload["verification_code"] == swap.verification_code

    @pytest.mark.asyncio
    async def test_item_for_item_gets_two_codes(
        self, svc, parties, make_product, driver, sink
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(
            requester,
            await make_product(owner, price=300),
            offered_product_id=await make_product(requester, price=200),
        )
        await driver.arrange(await driver.accept(swap))

        assert swap.verification_code_b is not None
        assert swap.delivery_code_b != swap.delivery_code
        recipients = {uid for uid, _ in sink.of_type(NotificationEvent.DELIVERY_READY)}
        assert recipients == {owner, requester}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "kwargs"),
        [
            ("delivery_point", {}),
            ("custom_location", {"custom_location": "   "}),
            ("pigeon", {}),
        ],
    )
    async def test_arrangement_validation(
        self, svc, parties, make_product, driver, method, kwargs
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(ValidationFailedError):
            await svc.setup_delivery(swap.id, owner, method, ["a.jpg"], **kwargs)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("photos", [[], [f"{i}.jpg" for i in range(6)]])
    async def test_packaging_photo_count(
        self, svc, parties, make_product, driver, photos
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(MissingEvidenceError):
            await svc.setup_delivery(swap.id, owner, "cargo", photos)

    @pytest.mark.asyncio
    async def test_cargo_ships(self, svc, parties, make_product, driver, sink) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        await driver.arrange(swap, "cargo")

        await svc.mark_shipped(swap.id, owner, "TRK-123")
        await svc.commit()

        assert swap.status == SwapStatus.IN_DELIVERY
        (_, payload), = sink.of_type(NotificationEvent.ITEM_SHIPPED)
        assert payload["tracking_number"] == "TRK-123"

    @pytest.mark.asyncio
    async def test_only_cargo_ships(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        await driver.arrange(swap, "custom_location")
        with pytest.raises(ValidationFailedError):
            await svc.mark_shipped(swap.id, owner)

    def test_delivery_code_format(self, clock) -> None:
        code = generate_delivery_code(clock())
        prefix, stamp, suffix = code.split("-")
        assert prefix == "SWAP"
        assert stamp.isalnum() and stamp.isupper()
        assert len(suffix) == 8


class TestRedeem:
    @pytest.mark.asyncio
    async def test_wrong_code(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        await driver.arrange(swap)
        with pytest.raises(InvalidVerificationCodeError):
            await svc.redeem_delivery(swap.id, "abcdef", requester)

    @pytest.mark.asyncio
    async def test_redeem_opens_dispute_window(
        self, svc, parties, make_product, driver, clock
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        await driver.arrange(swap)
        before = clock()

        await svc.redeem_delivery(swap.id, swap.verification_code, requester, ["got.jpg"])
        await svc.commit()

        assert swap.status == SwapStatus.DELIVERED
        assert swap.requester_received_product
        assert swap.verification_code_used
        assert swap.auto_complete_eligible
        assert swap.receiving_photos == ["got.jpg"]
        window = (swap.dispute_window_ends_at - before).total_seconds() / 3600
        assert 48 <= window < 48.1

    @pytest.mark.asyncio
    async def test_redeem_before_arrangement(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(InvalidStateTransitionError):
            await svc.redeem_delivery(swap.id, "123456", requester)

    @pytest.mark.asyncio
    async def test_stranger_cannot_redeem(
        self, svc, parties, make_user, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        await driver.arrange(swap)
        with pytest.raises(NotAuthorizedError):
            await svc.redeem_delivery(swap.id, swap.verification_code, await make_user())

    @pytest.mark.asyncio
    async def test_item_for_item_needs_both_legs(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(
            requester,
            await make_product(owner, price=300),
            offered_product_id=await make_product(requester, price=200),
        )
        await driver.arrange(await driver.accept(swap))

        await svc.redeem_delivery(swap.id, swap.verification_code, requester)
        await svc.commit()
        assert swap.status == SwapStatus.PARTIALLY_DELIVERED
        assert swap.dispute_window_ends_at is None

        pending = await svc.confirm_settlement(swap.id, requester)
        assert pending.partial
        assert pending.waiting_for == "owner"
        assert pending.swap.status == SwapStatus.PARTIALLY_DELIVERED

        with pytest.raises(InvalidVerificationCodeError, match="already used"):
            await svc.redeem_delivery(swap.id, swap.verification_code, requester)

        await svc.redeem_delivery(swap.id, swap.verification_code_b, owner)
        await svc.commit()
        assert swap.status == SwapStatus.DELIVERED
        assert swap.owner_received_product and swap.requester_received_product


class TestConfirmSettlement:
    @pytest.mark.asyncio
    async def test_settles_net_of_fee(
        self, svc, session, parties, make_product, balance, driver, sink, feed
    ) -> None:
        owner, requester = parties
        product = await make_product(owner, price=800)
        swap = await driver.delivered(requester, product)

        result = await svc.confirm_settlement(swap.id, requester)
        await svc.commit()

        assert result.swap.status == SwapStatus.COMPLETED
        assert result.swap.escrow_state == EscrowState.RELEASED
        assert result.fee.total == 9
        assert result.transaction.net_amount == 791
        assert result.transaction.fee_breakdown["total"] == 9

        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor) == (1291, 0)
        assert owner_row.trust_score == 92
        assert (await balance(requester)).valor_balance == 700

        stats = await SystemStatsRepository(session).get()
        assert stats.total_swaps_completed == 1
        assert stats.total_fees_collected == 9
        assert stats.community_pool_valor == 4

        stored = await ProductRepository(session).get_by_id(product)
        assert stored.status == ProductStatus.SWAPPED
        assert {uid for uid, _ in sink.of_type(NotificationEvent.SWAP_COMPLETED)} == {
            owner,
            requester,
        }
        assert [e.kind for e in feed.events] == ["swap_completed"]

    @pytest.mark.asyncio
    async def test_transitions_are_logged(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))

        with capture_logs() as logs:
            await svc.confirm_settlement(swap.id, requester)
            await svc.commit()

        moves = [e for e in logs if e["event"] == "swap.transition"]
        assert [(e["transition"], e["new"]) for e in moves] == [("confirm", "completed")]
        terminated = [e for e in logs if e["event"] == "swap.terminated"]
        assert terminated[0]["transition"] == "confirm"
        assert terminated[0]["outcome"] == "settle"

    @pytest.mark.asyncio
    async def test_journal_reconciles(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))
        await svc.confirm_settlement(swap.id, owner)
        await svc.commit()

        assert await svc.ledger.reconcile_user(owner) == (1291, 0)
        assert await svc.ledger.reconcile_user(requester) == (700, 0)
        assert await svc.ledger.escrow_outstanding(swap.id) == 0
        txn_types = Counter(t.type for t in await svc.get_transactions(swap.id))
        assert txn_types == Counter(
            {
                TransactionType.ESCROW_HOLD: 1,
                TransactionType.DEPOSIT_LOCK: 1,
                TransactionType.SWAP_COMPLETED: 1,
                TransactionType.DEPOSIT_RELEASE: 1,
            }
        )

    @pytest.mark.asyncio
    async def test_second_confirm_is_already_settled(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))
        await svc.confirm_settlement(swap.id, requester)
        await svc.commit()

        with pytest.raises(AlreadySettledError) as exc_info:
            await svc.confirm_settlement(swap.id, owner)
        assert exc_info.value.already_done

    @pytest.mark.asyncio
    async def test_confirm_before_delivery(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(InvalidStateTransitionError):
            await svc.confirm_settlement(swap.id, requester)

    @pytest.mark.asyncio
    async def test_item_only_swap_settles_without_fee(
        self, svc, parties, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(
            requester,
            await make_product(owner, price=300),
            offered_product_id=await make_product(requester, price=200),
        )

        result = await svc.confirm_settlement(swap.id, requester)
        await svc.commit()

        assert result.fee is None
        assert result.transaction is None
        assert result.swap.escrow_state == EscrowState.NONE
        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor) == (500, 0)

    @pytest.mark.asyncio
    async def test_audit_trail_follows_the_table(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))
        await svc.confirm_settlement(swap.id, requester)
        await svc.commit()

        logs = await svc.get_logs(swap.id)
        assert [entry.to_status for entry in logs] == [
            "pending",
            "accepted",
            "awaiting_delivery",
            "delivered",
            "completed",
        ]
        assert logs[0].from_status is None
        edges = legal_edges()
        assert all((e.from_status, e.to_status) in edges for e in logs[1:])
        assert logs[-1].metadata_json["fee"] == 9


class TestFlatFeeSchedule:
    @pytest.fixture
    def settings(self) -> Settings:
        return Settings(
            _env_file=None,
            cron_secret="",
            app_env="development",
            fee_brackets=[(None, Decimal("0.05"))],
        )

    @pytest.mark.asyncio
    async def test_single_bracket_fee(
        self, svc, session, parties, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner, price=200))

        result = await svc.confirm_settlement(swap.id, requester)
        await svc.commit()

        assert result.fee.total == 10
        assert result.transaction.amount == 200
        assert result.transaction.net_amount == 190
        assert (await balance(owner)).valor_balance == 690
        assert (await balance(requester)).valor_balance == 1300
        stats = await SystemStatsRepository(session).get()
        assert (stats.total_fees_collected, stats.community_pool_valor) == (10, 5)


class TestConcurrentSettlement:
    @pytest.mark.asyncio
    async def test_stale_worker_loses_the_claim(
        self, svc, session_factory, make_service, parties, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))

        async with session_factory() as other:
            stale_svc = make_service(other)
            stale = await stale_svc.get_swap(swap.id)
            assert stale.status == SwapStatus.DELIVERED

            await svc.confirm_settlement(swap.id, requester)
            await svc.commit()

            assert (
                await stale_svc.terminate(
                    stale, SettlementOutcome.SETTLE, "confirm", actor=str(owner)
                )
                is None
            )
            with pytest.raises(AlreadySettledError):
                await stale_svc.transition(stale, "confirm", actor=str(owner))
            await other.rollback()

        assert (await balance(owner)).valor_balance == 1291


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_refunds_and_penalizes_actor(
        self, svc, parties, make_product, balance, driver, sink
    ) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner)))
        )

        result = await svc.cancel(swap.id, owner, "item_unavailable")
        await svc.commit()

        assert result.swap.status == SwapStatus.CANCELLED
        assert result.swap.escrow_state == EscrowState.REFUNDED
        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor) == (500, 0)
        assert owner_row.trust_score == 87
        requester_row = await balance(requester)
        assert (requester_row.valor_balance, requester_row.trust_score) == (1500, 100)
        assert sink.events_for(requester) == [
            NotificationEvent.SWAP_ACCEPTED,
            NotificationEvent.DELIVERY_READY,
            NotificationEvent.SWAP_CANCELLED,
        ]

    @pytest.mark.asyncio
    async def test_pending_cannot_be_cancelled(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        with pytest.raises(InvalidStateTransitionError, match="rejected"):
            await svc.cancel(swap.id, requester, "changed_mind")

    @pytest.mark.asyncio
    async def test_delivered_cannot_be_cancelled(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))
        with pytest.raises(InvalidStateTransitionError, match="dispute"):
            await svc.cancel(swap.id, requester, "changed_mind")

    @pytest.mark.asyncio
    async def test_other_needs_a_note(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(ValidationFailedError):
            await svc.cancel(swap.id, requester, "other")
        with pytest.raises(ValidationFailedError):
            await svc.cancel(swap.id, requester, "bored")

        result = await svc.cancel(swap.id, requester, "other", note="moving abroad")
        assert result.swap.status == SwapStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_penalty_can_suspend(
        self, svc, make_user, make_product, balance, driver
    ) -> None:
        owner = await make_user(valor=500)
        requester = await make_user(valor=1000, trust=31)
        product = await make_product(owner, price=100)
        swap = await driver.accept(await driver.offer(requester, product))

        await svc.cancel(swap.id, requester, "changed_mind")
        await svc.commit()

        requester_row = await balance(requester)
        assert requester_row.trust_score == 28
        assert requester_row.is_suspended
        with pytest.raises(UserSuspendedError):
            await svc.create_offer(requester, product)


class TestMutualCancel:
    @pytest.mark.asyncio
    async def test_decline_resumes(self, svc, parties, make_product, driver, sink) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner)))
        )

        await svc.request_mutual_cancel(swap.id, requester, "schedule_conflict", "away")
        await svc.commit()
        assert swap.status == SwapStatus.CANCEL_REQUESTED
        assert swap.status_before_cancel_request == SwapStatus.AWAITING_DELIVERY

        with pytest.raises(SelfApprovalError):
            await svc.respond_mutual_cancel(swap.id, requester, accept=True)

        await svc.respond_mutual_cancel(swap.id, owner, accept=False)
        await svc.commit()
        assert swap.status == SwapStatus.AWAITING_DELIVERY
        assert swap.cancel_requested_by is None
        assert NotificationEvent.MUTUAL_CANCEL_REJECTED in sink.events_for(requester)

    @pytest.mark.asyncio
    async def test_accept_refunds_without_penalty(
        self, svc, parties, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))

        await svc.request_mutual_cancel(swap.id, owner, "personal_reasons")
        await svc.respond_mutual_cancel(swap.id, requester, accept=True)
        await svc.commit()

        assert swap.status == SwapStatus.CANCELLED_MUTUAL
        assert swap.escrow_state == EscrowState.REFUNDED
        owner_row = await balance(owner)
        assert (owner_row.valor_balance, owner_row.locked_valor, owner_row.trust_score) == (
            500,
            0,
            90,
        )
        requester_row = await balance(requester)
        assert (requester_row.valor_balance, requester_row.trust_score) == (1500, 100)

        logs = await svc.get_logs(swap.id)
        assert logs[-2].reason.startswith("MUTUAL_CANCEL_REQUEST|personal_reasons")

    @pytest.mark.asyncio
    async def test_respond_without_request(self, svc, parties, make_product, driver) -> None:
        owner, requester = parties
        swap = await driver.accept(await driver.offer(requester, await make_product(owner)))
        with pytest.raises(InvalidStateTransitionError):
            await svc.respond_mutual_cancel(swap.id, owner, accept=True)


class TestExpire:
    @pytest.mark.asyncio
    async def test_idle_swap_expires(
        self, svc, parties, make_product, balance, driver, clock, sink
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        clock.advance(hours=25)

        result = await svc.expire(swap.id)
        await svc.commit()

        assert result.swap.status == SwapStatus.CANCELLED
        assert result.transaction.amount == 800
        assert (await balance(requester)).valor_balance == 1500
        assert {uid for uid, _ in sink.of_type(NotificationEvent.SWAP_EXPIRED)} == {
            owner,
            requester,
        }

    @pytest.mark.asyncio
    async def test_recent_swap_is_left_alone(
        self, svc, parties, make_product, driver, clock
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        clock.advance(hours=10)

        assert await svc.expire(swap.id) is None
        assert (await svc.get_swap(swap.id)).status == SwapStatus.PENDING

    @pytest.mark.asyncio
    async def test_shipped_swap_never_expires(
        self, svc, parties, make_product, driver, clock
    ) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner))),
            "cargo",
        )
        await svc.mark_shipped(swap.id, owner)
        await svc.commit()
        clock.advance(hours=200)

        assert await svc.expire(swap.id) is None


class TestAutoAndForceComplete:
    @pytest.mark.asyncio
    async def test_auto_complete_waits_for_window(
        self, svc, parties, make_product, driver, clock
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner))

        assert await svc.auto_complete(swap.id) is None

        clock.advance(hours=49)
        result = await svc.auto_complete(swap.id)
        await svc.commit()

        assert result.swap.status == SwapStatus.COMPLETED
        assert result.transaction.type == TransactionType.AUTO_COMPLETE_RELEASE
        assert not result.swap.auto_complete_eligible

    @pytest.mark.asyncio
    async def test_force_complete_requires_admin(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner)))
        )
        with pytest.raises(NotAuthorizedError):
            await svc.force_complete(swap.id, owner, "just because")

    @pytest.mark.asyncio
    async def test_force_complete_before_handover(
        self, svc, parties, admin, make_product, balance, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.arrange(
            await driver.accept(await driver.offer(requester, await make_product(owner)))
        )

        result = await svc.force_complete(swap.id, admin, "handed over outside the app")
        await svc.commit()

        assert result.swap.status == SwapStatus.COMPLETED
        assert (await balance(owner)).valor_balance == 1291
        assert (await svc.get_logs(swap.id))[-1].changed_by == str(admin)

    @pytest.mark.asyncio
    async def test_force_complete_never_from_pending(
        self, svc, parties, admin, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.offer(requester, await make_product(owner))
        with pytest.raises(InvalidStateTransitionError):
            await svc.force_complete(swap.id, admin, "too early")


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_of_delivered_swap(
        self, svc, parties, make_product, driver
    ) -> None:
        owner, requester = parties
        swap = await driver.delivered(requester, await make_product(owner, price=80))

        status = await svc.get_status(swap.id)

        assert status["status"] == "delivered"
        assert status["risk_tier"] == "low"
        assert set(status["allowed_events"]) >= {"confirm", "open_dispute"}
        assert 47.9 <= status["dispute_window_remaining_hours"] <= 48.0
        assert status["auto_complete_eligible"] is True
