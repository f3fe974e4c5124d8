"""Swap Service - core business logic for the swap lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Valor ledger (escrow, deposits, fees)
    - Collaborators (product catalog, user directory, notifications, feed)
    - Repositories (data access) and the status log (audit trail)

REST routes, the dispute service and the timeout sweepers all call into
this service, so every path to ``completed`` or ``cancelled`` runs through
the single ``terminate`` method.

Guards raise typed SettlementError subclasses before any row is written.
Status changes are conditional UPDATEs; if another worker moved the swap
first, user-facing operations raise InvalidStateTransitionError and
sweeper-facing ones return None.

Nothing here commits. Call ``commit()`` to commit the session and then
dispatch the queued notifications.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from barter_settlement.config import Settings, get_settings
from barter_settlement.domain.collaborators import ActivityEvent
from barter_settlement.domain.enums import (
    CancelReason,
    DeliveryMethod,
    DisputeStatus,
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
    SwapNotFoundError,
    UserNotFoundError,
    UserSuspendedError,
    ValidationFailedError,
)
from barter_settlement.domain.fees import brackets_from_pairs, calculate_progressive_fee
from barter_settlement.domain.risk import calculate_risk_tier
from barter_settlement.domain.state_machine import (
    SwapStateMachine,
    sources_for,
    validate_transition,
)
from barter_settlement.domain.trust import TrustEvent, apply_trust_delta, trust_points_from_settings
from barter_settlement.infrastructure.database.directory import (
    SqlProductCatalog,
    SqlUserDirectory,
)
from barter_settlement.infrastructure.database.orm_models import SwapRequest
from barter_settlement.infrastructure.database.repositories import (
    DisputeRepository,
    StatusLogRepository,
    SwapRepository,
    SystemStatsRepository,
    TransactionRepository,
    UserRepository,
    mirror_update,
)
from barter_settlement.infrastructure.notifications import (
    LoggingActivityFeed,
    LoggingNotificationSink,
)
from barter_settlement.logging_config import get_logger
from barter_settlement.services.ledger import ValorLedger
from barter_settlement.services.outbox import Outbox

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from barter_settlement.domain.collaborators import (
        ActivityFeed,
        NotificationSink,
        ProductCatalog,
        UserDirectory,
    )
    from barter_settlement.domain.fees import FeeBreakdown
    from barter_settlement.infrastructure.database.orm_models import (
        SwapStatusLog,
        ValorTransaction,
    )

logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"
MAX_PHOTOS = 5
HANDOVER_STATUSES = (
    SwapStatus.AWAITING_DELIVERY,
    SwapStatus.IN_DELIVERY,
    SwapStatus.PARTIALLY_DELIVERED,
)


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
        if number == 0:
            return out


def generate_delivery_code(now: datetime) -> str:
    """Scannable handover code, e.g. ``SWAP-M3X9K2QA-1F2E3D4C``."""
    stamp = _base36(int(now.timestamp() * 1000))
    return f"SWAP-{stamp}-{secrets.token_hex(4)}".upper()


def generate_verification_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


# ---------------------------------------------------------------------------
# Collaborators & results
# ---------------------------------------------------------------------------


@dataclass
class SwapCollaborators:
    catalog: ProductCatalog
    directory: UserDirectory
    notifications: NotificationSink
    activity: ActivityFeed

    @classmethod
    def for_session(
        cls,
        session: AsyncSession,
        notifications: NotificationSink | None = None,
        activity: ActivityFeed | None = None,
    ) -> SwapCollaborators:
        """SQL catalog/directory on ``session``; logging sinks unless given."""
        return cls(
            catalog=SqlProductCatalog(session),
            directory=SqlUserDirectory(session),
            notifications=notifications or LoggingNotificationSink(),
            activity=activity or LoggingActivityFeed(),
        )


@dataclass
class SettlementResult:
    """Outcome of a settlement attempt.

    ``partial`` is True when an item-for-item swap is still waiting for one
    side's handover; nothing was changed in that case.
    """

    swap: SwapRequest
    partial: bool = False
    waiting_for: str | None = None
    fee: FeeBreakdown | None = None
    transaction: ValorTransaction | None = None
    details: dict[str, Any] = field(default_factory=dict)


class SwapService:
    """Manages the swap lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        collaborators: SwapCollaborators | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._collab = collaborators or SwapCollaborators.for_session(session)
        self._swaps = SwapRepository(session)
        self._logs = StatusLogRepository(session)
        self._txns = TransactionRepository(session)
        self._users = UserRepository(session)
        self._stats = SystemStatsRepository(session)
        self.ledger = ValorLedger(session, self._settings.community_pool_share)
        self.outbox = Outbox()
        self._brackets = brackets_from_pairs(self._settings.fee_brackets)
        self._trust_points = trust_points_from_settings(self._settings)

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def collaborators(self) -> SwapCollaborators:
        return self._collab

    def now(self) -> datetime:
        return self._clock()

    async def commit(self) -> None:
        """Commit the unit of work, then deliver queued notifications."""
        try:
            await self._session.commit()
        except Exception:
            self.outbox.clear()
            raise
        await self.outbox.dispatch(self._collab.notifications, self._collab.activity)

    # ------------------------------------------------------------------
    # Offer
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        requester_id: uuid.UUID,
        product_id: uuid.UUID,
        valor_amount: int | None = None,
        offered_product_id: uuid.UUID | None = None,
        message: str | None = None,
    ) -> SwapRequest:
        """Create a pending swap and hold the requester's Valor in escrow.

        A pure Valor offer defaults to the product's listed price. An
        item-for-item offer carries no Valor leg unless one is given.
        """
        if await self._collab.directory.is_suspended(requester_id):
            raise UserSuspendedError(str(requester_id))

        product = await self._collab.catalog.get_product(product_id)
        if product.status != ProductStatus.ACTIVE:
            raise ValidationFailedError(
                f"Product {product_id} is not available ({product.status})", "product_id"
            )
        if product.owner_id == requester_id:
            raise ValidationFailedError("Cannot request your own product", "product_id")

        if offered_product_id is not None:
            offered = await self._collab.catalog.get_product(offered_product_id)
            if offered.owner_id != requester_id:
                raise NotAuthorizedError(str(requester_id), "offer a product they do not own")
            if offered.status != ProductStatus.ACTIVE:
                raise ValidationFailedError(
                    f"Offered product {offered_product_id} is not available",
                    "offered_product_id",
                )
        elif valor_amount is None:
            valor_amount = product.valor_price

        if valor_amount is not None and valor_amount <= 0:
            if offered_product_id is None:
                raise ValidationFailedError("Valor amount must be positive", "valor_amount")
            valor_amount = None

        if valor_amount is not None:
            requester = await self._users.get_by_id(requester_id)
            if requester is None:
                raise UserNotFoundError(str(requester_id))
            if requester.valor_balance < valor_amount:
                raise InsufficientBalanceError(
                    str(requester_id), valor_amount, requester.valor_balance
                )

        now = self.now()
        swap = await self._swaps.create(
            SwapRequest(
                owner_id=product.owner_id,
                requester_id=requester_id,
                product_id=product_id,
                offered_product_id=offered_product_id,
                pending_valor_amount=valor_amount,
                message=message,
                status=SwapStatus.PENDING.value,
                escrow_state=EscrowState.NONE.value,
                created_at=now,
                updated_at=now,
            )
        )
        await self.ledger.hold_escrow(swap)
        await self._logs.record(
            swap.id,
            None,
            SwapStatus.PENDING,
            changed_by=str(requester_id),
            metadata={"valor_amount": valor_amount},
            created_at=now,
        )
        self.outbox.notify(
            swap.owner_id,
            NotificationEvent.SWAP_OFFER,
            swap_id=str(swap.id),
            valor_amount=valor_amount,
            item_for_item=offered_product_id is not None,
        )
        logger.info(
            "swap.offer_created",
            swap_id=str(swap.id),
            requester_id=str(requester_id),
            amount=valor_amount,
        )
        return swap

    async def accept_offer(self, swap_id: uuid.UUID, actor_id: uuid.UUID) -> SwapRequest:
        """Owner accepts: classify risk, lock the owner deposit, reserve products."""
        swap = await self.get_swap(swap_id)
        self._require_owner(swap, actor_id, "accept this offer")
        self._fire_transition(swap, "accept")
        if await self._collab.directory.is_suspended(actor_id):
            raise UserSuspendedError(str(actor_id))

        product = await self._collab.catalog.get_product(swap.product_id)
        amount = swap.pending_valor_amount or product.valor_price
        tier = calculate_risk_tier(
            amount,
            product.category,
            multipliers=self._settings.category_risk_multipliers,
            low_max=self._settings.risk_low_max,
            medium_max=self._settings.risk_medium_max,
        )
        deposit = int(
            (Decimal(product.valor_price) * self._settings.owner_deposit_rate).to_integral_value(
                rounding=ROUND_FLOOR
            )
        )
        owner = await self._users.get_by_id(swap.owner_id)
        if owner is None:
            raise UserNotFoundError(str(swap.owner_id))
        if owner.valor_balance < deposit:
            raise InsufficientBalanceError(str(swap.owner_id), deposit, owner.valor_balance)

        now = self.now()
        await self.transition(
            swap,
            "accept",
            actor=str(actor_id),
            values={"accepted_at": now, "risk_tier": tier.value},
            metadata={"risk_tier": tier.value, "owner_deposit": deposit},
        )
        await self.ledger.lock_deposit(swap, deposit)
        await self._set_product_status(swap, ProductStatus.RESERVED)

        self.outbox.notify(
            swap.requester_id, NotificationEvent.SWAP_ACCEPTED, swap_id=str(swap.id)
        )
        logger.info(
            "swap.accepted",
            swap_id=str(swap.id),
            risk_tier=tier.value,
            owner_deposit=deposit,
        )
        return swap

    async def reject_offer(
        self, swap_id: uuid.UUID, actor_id: uuid.UUID, reason: str | None = None
    ) -> SettlementResult:
        """Owner declines a pending offer. Full refund, no trust change."""
        swap = await self.get_swap(swap_id)
        self._require_owner(swap, actor_id, "reject this offer")
        result = await self.terminate(
            swap,
            SettlementOutcome.REFUND,
            "reject",
            actor=str(actor_id),
            reason=reason,
        )
        self._require_claimed(swap, "reject", result)
        self.outbox.notify(
            swap.requester_id,
            NotificationEvent.SWAP_REJECTED,
            swap_id=str(swap.id),
            reason=reason,
        )
        return result

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def setup_delivery(
        self,
        swap_id: uuid.UUID,
        actor_id: uuid.UUID,
        method: DeliveryMethod | str,
        packaging_photos: list[str],
        delivery_point_id: str | None = None,
        custom_location: str | None = None,
    ) -> SwapRequest:
        """Owner fixes the handover arrangement; issues single-use codes."""
        swap = await self.get_swap(swap_id)
        self._require_owner(swap, actor_id, "arrange delivery")
        self._fire_transition(swap, "setup_delivery")

        try:
            method = DeliveryMethod(method)
        except ValueError as err:
            raise ValidationFailedError(f"Unknown delivery method: {method}", "method") from err
        if method == DeliveryMethod.DELIVERY_POINT and not delivery_point_id:
            raise ValidationFailedError("A delivery point is required", "delivery_point_id")
        if method == DeliveryMethod.CUSTOM_LOCATION and not (custom_location or "").strip():
            raise ValidationFailedError("A meeting location is required", "custom_location")
        if not 1 <= len(packaging_photos) <= MAX_PHOTOS:
            raise MissingEvidenceError("Packaging photos", 1, MAX_PHOTOS)

        now = self.now()
        values: dict[str, Any] = {
            "delivery_method": method.value,
            "delivery_point_id": delivery_point_id,
            "custom_location": custom_location,
            "packaging_photos": list(packaging_photos),
            "delivery_code": generate_delivery_code(now),
            "verification_code": generate_verification_code(),
        }
        if swap.is_item_for_item:
            values["delivery_code_b"] = generate_delivery_code(now)
            values["verification_code_b"] = generate_verification_code()

        await self.transition(
            swap,
            "setup_delivery",
            actor=str(actor_id),
            values=values,
            metadata={"method": method.value, "photos": len(packaging_photos)},
        )

        # The verification code travels separately from the scannable code.
        self.outbox.notify(
            swap.requester_id,
            NotificationEvent.DELIVERY_READY,
            swap_id=str(swap.id),
            delivery_code=swap.delivery_code,
            verification_code=swap.verification_code,
            method=method.value,
        )
        if swap.is_item_for_item:
            self.outbox.notify(
                swap.owner_id,
                NotificationEvent.DELIVERY_READY,
                swap_id=str(swap.id),
                delivery_code=swap.delivery_code_b,
                verification_code=swap.verification_code_b,
                method=method.value,
            )
        logger.info("swap.delivery_arranged", swap_id=str(swap.id), method=method.value)
        return swap

    async def mark_shipped(
        self, swap_id: uuid.UUID, actor_id: uuid.UUID, tracking_number: str | None = None
    ) -> SwapRequest:
        """Owner hands a cargo shipment to the carrier."""
        swap = await self.get_swap(swap_id)
        self._require_owner(swap, actor_id, "mark this swap shipped")
        self._fire_transition(swap, "ship")
        if swap.delivery_method != DeliveryMethod.CARGO.value:
            raise ValidationFailedError("Only cargo deliveries can be shipped", "method")

        await self.transition(
            swap,
            "ship",
            actor=str(actor_id),
            metadata={"tracking_number": tracking_number},
        )
        self.outbox.notify(
            swap.requester_id,
            NotificationEvent.ITEM_SHIPPED,
            swap_id=str(swap.id),
            tracking_number=tracking_number,
        )
        return swap

    async def redeem_delivery(
        self,
        swap_id: uuid.UUID,
        verification_code: str,
        actor_id: uuid.UUID | None = None,
        receiving_photos: list[str] | None = None,
    ) -> SwapRequest:
        """Receiver proves the handover with their verification code.

        Code A is the requester's (owner's product changes hands); code B,
        only on item-for-item swaps, is the owner's. When every leg has been
        redeemed the swap becomes ``delivered`` and the dispute window opens.
        """
        swap = await self.get_swap(swap_id)
        if actor_id is not None:
            self._require_party(swap, actor_id, "confirm this handover")
        if SwapStatus(swap.status) not in HANDOVER_STATUSES:
            raise InvalidStateTransitionError(swap.status, "redeem_delivery")
        photos = list(receiving_photos or [])
        if len(photos) > MAX_PHOTOS:
            raise MissingEvidenceError("Receiving photos", 0, MAX_PHOTOS)

        code = (verification_code or "").strip()
        if swap.verification_code and secrets.compare_digest(code, swap.verification_code):
            if swap.verification_code_used:
                raise InvalidVerificationCodeError(str(swap.id), "code already used")
            used_flag, received_flag = "verification_code_used", "requester_received_product"
        elif (
            swap.is_item_for_item
            and swap.verification_code_b
            and secrets.compare_digest(code, swap.verification_code_b)
        ):
            if swap.verification_code_b_used:
                raise InvalidVerificationCodeError(str(swap.id), "code already used")
            used_flag, received_flag = "verification_code_b_used", "owner_received_product"
        else:
            raise InvalidVerificationCodeError(str(swap.id))

        owner_received = swap.owner_received_product or received_flag == "owner_received_product"
        requester_received = (
            swap.requester_received_product or received_flag == "requester_received_product"
        )
        complete = requester_received and (owner_received or not swap.is_item_for_item)

        now = self.now()
        values: dict[str, Any] = {
            used_flag: True,
            received_flag: True,
            "receiving_photos": list(swap.receiving_photos or []) + photos,
        }
        if complete:
            event = "complete_handover"
            values.update(
                delivered_at=now,
                dispute_window_ends_at=now
                + timedelta(hours=self._settings.dispute_window_hours),
                delivery_confirm_deadline=now
                + timedelta(hours=self._settings.delivery_confirm_hours),
                auto_complete_eligible=True,
            )
        else:
            event = "partial_handover"

        await self.transition(
            swap,
            event,
            actor=str(actor_id) if actor_id else SYSTEM_ACTOR,
            values=values,
            conditions=(getattr(SwapRequest, used_flag).is_(False),),
            metadata={"leg": "B" if used_flag.endswith("_b_used") else "A"},
        )

        if complete:
            for party in (swap.owner_id, swap.requester_id):
                self.outbox.notify(
                    party,
                    NotificationEvent.SWAP_DELIVERED,
                    swap_id=str(swap.id),
                    dispute_window_ends_at=swap.dispute_window_ends_at.isoformat(),
                )
        logger.info("swap.handover_redeemed", swap_id=str(swap.id), status=swap.status)
        return swap

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def confirm_settlement(
        self, swap_id: uuid.UUID, actor_id: uuid.UUID
    ) -> SettlementResult:
        """A party confirms receipt and the escrow is released to the owner.

        Idempotency: a swap that is already completed raises AlreadySettledError,
        which callers can treat as success.
        """
        swap = await self.get_swap(swap_id)
        self._require_party(swap, actor_id, "confirm this swap")
        if swap.status == SwapStatus.COMPLETED.value:
            raise AlreadySettledError(str(swap.id), swap.status)

        if swap.status == SwapStatus.PARTIALLY_DELIVERED.value:
            waiting_for = "owner" if not swap.owner_received_product else "requester"
            return SettlementResult(
                swap=swap,
                partial=True,
                waiting_for=waiting_for,
                details={
                    "owner_received": swap.owner_received_product,
                    "requester_received": swap.requester_received_product,
                },
            )

        result = await self.terminate(
            swap, SettlementOutcome.SETTLE, "confirm", actor=str(actor_id)
        )
        return self._require_claimed(swap, "confirm", result)

    async def auto_complete(self, swap_id: uuid.UUID) -> SettlementResult | None:
        """Settle a delivered swap whose dispute window closed without a dispute.

        Returns None if the swap no longer qualifies (already handled by a
        concurrent worker, disputed, or window not yet over).
        """
        swap = await self._swaps.get_by_id(swap_id)
        if swap is None or swap.status != SwapStatus.DELIVERED.value:
            return None
        return await self.terminate(
            swap,
            SettlementOutcome.SETTLE,
            "auto_complete",
            actor=SYSTEM_ACTOR,
            txn_type=TransactionType.AUTO_COMPLETE_RELEASE,
            reason="dispute window closed without dispute",
            conditions=SwapRepository.auto_complete_conditions(self.now()),
        )

    async def force_complete(
        self, swap_id: uuid.UUID, admin_id: uuid.UUID, reason: str
    ) -> SettlementResult:
        """Admin override: settle now, bypassing the window and open disputes."""
        if not await self._collab.directory.is_admin(admin_id):
            raise NotAuthorizedError(str(admin_id), "force-complete swaps")
        swap = await self.get_swap(swap_id)
        if swap.status == SwapStatus.COMPLETED.value:
            raise AlreadySettledError(str(swap.id), swap.status)
        self._fire_transition(swap, "force_complete")

        closed = await DisputeRepository(self._session).close_all_for_swap(
            swap.id,
            {
                "status": DisputeStatus.RESOLVED.value,
                "outcome": SettlementOutcome.SETTLE.value,
                "resolution_note": f"Closed by admin force-complete: {reason}",
                "resolved_by": admin_id,
                "resolved_at": self.now(),
            },
        )
        result = await self.terminate(
            swap,
            SettlementOutcome.SETTLE,
            "force_complete",
            actor=str(admin_id),
            reason=reason,
            metadata={"forced_by": str(admin_id), "disputes_closed": closed},
        )
        logger.warning(
            "swap.force_completed",
            swap_id=str(swap.id),
            admin_id=str(admin_id),
            disputes_closed=closed,
        )
        return self._require_claimed(swap, "force_complete", result)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        swap_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason_code: CancelReason | str,
        note: str | None = None,
    ) -> SettlementResult:
        """Unilateral exit after acceptance. Refunds escrow; penalizes the actor."""
        swap = await self.get_swap(swap_id)
        self._require_party(swap, actor_id, "cancel this swap")
        try:
            reason_code = CancelReason(reason_code)
        except ValueError as err:
            raise ValidationFailedError(f"Unknown cancel reason: {reason_code}", "reason") from err
        if reason_code == CancelReason.OTHER and not (note or "").strip():
            raise ValidationFailedError("Describe the reason when choosing 'other'", "note")

        status = SwapStatus(swap.status)
        if status == SwapStatus.PENDING:
            raise InvalidStateTransitionError(
                swap.status, "cancel", "pending offers are rejected, not cancelled"
            )
        if status == SwapStatus.DELIVERED:
            raise InvalidStateTransitionError(
                swap.status, "cancel", "goods already delivered; open a dispute instead"
            )
        if status == SwapStatus.COMPLETED:
            raise AlreadySettledError(str(swap.id), swap.status)

        reason = f"{reason_code.value}|{note}" if note else reason_code.value
        result = await self.terminate(
            swap,
            SettlementOutcome.REFUND,
            "cancel",
            actor=str(actor_id),
            reason=reason,
            penalize=actor_id,
        )
        self._require_claimed(swap, "cancel", result)
        self.outbox.notify(
            swap.counterparty_of(actor_id),
            NotificationEvent.SWAP_CANCELLED,
            swap_id=str(swap.id),
            reason=reason_code.value,
            note=note,
        )
        return result

    async def expire(self, swap_id: uuid.UUID) -> SettlementResult | None:
        """Reclaim a swap idle for longer than the auto-cancel window.

        Returns None if the swap moved on (or was touched) in the meantime.
        """
        swap = await self._swaps.get_by_id(swap_id)
        if swap is None:
            return None
        cutoff = self.now() - timedelta(hours=self._settings.auto_cancel_hours)
        try:
            result = await self.terminate(
                swap,
                SettlementOutcome.REFUND,
                "expire",
                actor=SYSTEM_ACTOR,
                reason=f"no activity for {self._settings.auto_cancel_hours}h",
                conditions=(SwapRequest.updated_at < cutoff,),
            )
        except InvalidStateTransitionError:
            return None
        if result is not None:
            for party in (swap.owner_id, swap.requester_id):
                self.outbox.notify(
                    party,
                    NotificationEvent.SWAP_EXPIRED,
                    swap_id=str(swap.id),
                    refunded=result.transaction.amount if result.transaction else 0,
                )
        return result

    async def request_mutual_cancel(
        self,
        swap_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: str,
        note: str | None = None,
    ) -> SwapRequest:
        """One party proposes walking away together; the other must approve."""
        swap = await self.get_swap(swap_id)
        self._require_party(swap, actor_id, "request cancellation")
        previous = swap.status
        self._fire_transition(swap, "request_mutual_cancel")

        await self.transition(
            swap,
            "request_mutual_cancel",
            actor=str(actor_id),
            values={
                "status_before_cancel_request": previous,
                "cancel_requested_by": actor_id,
            },
            reason=f"MUTUAL_CANCEL_REQUEST|{reason}|{note or ''}",
        )
        self.outbox.notify(
            swap.counterparty_of(actor_id),
            NotificationEvent.MUTUAL_CANCEL_REQUESTED,
            swap_id=str(swap.id),
            reason=reason,
            note=note,
        )
        return swap

    async def respond_mutual_cancel(
        self, swap_id: uuid.UUID, actor_id: uuid.UUID, accept: bool
    ) -> SwapRequest:
        """The other party approves (refund, no penalty) or declines (resume)."""
        swap = await self.get_swap(swap_id)
        self._require_party(swap, actor_id, "answer this cancellation request")
        if swap.status != SwapStatus.CANCEL_REQUESTED.value:
            raise InvalidStateTransitionError(swap.status, "respond_mutual_cancel")
        if swap.cancel_requested_by == actor_id:
            raise SelfApprovalError(str(actor_id))

        if accept:
            result = await self.terminate(
                swap,
                SettlementOutcome.REFUND,
                "accept_mutual_cancel",
                actor=str(actor_id),
                reason="MUTUAL_CANCEL_ACCEPTED",
            )
            self._require_claimed(swap, "accept_mutual_cancel", result)
            for party in (swap.owner_id, swap.requester_id):
                self.outbox.notify(
                    party, NotificationEvent.MUTUAL_CANCEL_ACCEPTED, swap_id=str(swap.id)
                )
            return swap

        previous = swap.status_before_cancel_request or SwapStatus.ACCEPTED.value
        requested_by = swap.cancel_requested_by
        await self.transition(
            swap,
            f"resume_{previous}",
            actor=str(actor_id),
            values={"status_before_cancel_request": None, "cancel_requested_by": None},
            reason="MUTUAL_CANCEL_REJECTED",
        )
        if requested_by is not None:
            self.outbox.notify(
                requested_by, NotificationEvent.MUTUAL_CANCEL_REJECTED, swap_id=str(swap.id)
            )
        return swap

    # ------------------------------------------------------------------
    # Shared transition machinery
    # ------------------------------------------------------------------

    async def transition(
        self,
        swap: SwapRequest,
        event: str,
        *,
        actor: str,
        values: dict[str, Any] | None = None,
        conditions: Iterable[ColumnElement[bool]] = (),
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> SwapStatus:
        """Validate ``event``, apply it with a conditional UPDATE, log it.

        Raises InvalidStateTransitionError if the table forbids it or if a
        concurrent writer moved the swap first.
        """
        if not await self._try_transition(
            swap, event, actor=actor, values=values, conditions=conditions,
            reason=reason, metadata=metadata,
        ):
            await self._raise_lost_race(swap, event)
        return SwapStatus(swap.status)

    async def _try_transition(
        self,
        swap: SwapRequest,
        event: str,
        *,
        actor: str,
        values: dict[str, Any] | None = None,
        conditions: Iterable[ColumnElement[bool]] = (),
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        old_status = swap.status
        new_status = self._fire_transition(swap, event)
        now = self.now()
        row_values = {**(values or {}), "status": new_status, "updated_at": now}

        claimed = await self._swaps.transition(
            swap.id, sources_for(event), row_values, *conditions
        )
        if not claimed:
            return False

        mirror_update(swap, row_values)
        await self._logs.record(
            swap.id,
            old_status,
            new_status,
            changed_by=actor,
            reason=reason,
            metadata=metadata,
            created_at=now,
        )
        logger.debug(
            "swap.transition", swap_id=str(swap.id), transition=event, old=old_status, new=new_status
        )
        return True

    async def record_note(
        self,
        swap: SwapRequest,
        *,
        actor: str,
        reason: str,
        metadata: dict | None = None,
    ) -> None:
        """Audit a sub-event that leaves the status unchanged."""
        await self._logs.record(
            swap.id,
            swap.status,
            swap.status,
            changed_by=actor,
            reason=reason,
            metadata=metadata,
            created_at=self.now(),
        )

    async def terminate(
        self,
        swap: SwapRequest,
        outcome: SettlementOutcome,
        event: str,
        *,
        actor: str,
        txn_type: TransactionType = TransactionType.SWAP_COMPLETED,
        reason: str | None = None,
        penalize: uuid.UUID | None = None,
        conditions: Iterable[ColumnElement[bool]] = (),
        metadata: dict | None = None,
    ) -> SettlementResult | None:
        """The single exit path from an open swap.

        SETTLE: release escrow to the owner net of the fee, mark products
        swapped, bump platform counters and the owner's trust.
        REFUND: return escrow to the requester in full, reactivate products,
        and penalize ``penalize`` if given.
        Both release the owner deposit. Returns None when the conditional
        UPDATE found the swap already moved on.
        """
        now = self.now()
        breakdown = None
        if outcome == SettlementOutcome.SETTLE and swap.pending_valor_amount:
            breakdown = calculate_progressive_fee(
                swap.pending_valor_amount, self._brackets, self._settings.minimum_fee
            )

        stamp = "completed_at" if outcome == SettlementOutcome.SETTLE else "cancelled_at"
        log_meta = {"outcome": outcome.value, **(metadata or {})}
        if breakdown is not None:
            log_meta.update(fee=breakdown.total, net_amount=breakdown.net_amount)

        claimed = await self._try_transition(
            swap,
            event,
            actor=actor,
            values={stamp: now, "auto_complete_eligible": False},
            conditions=conditions,
            reason=reason,
            metadata=log_meta,
        )
        if not claimed:
            return None

        if outcome == SettlementOutcome.SETTLE:
            txn = await self.ledger.settle_escrow(swap, breakdown, txn_type) if breakdown else None
            await self.ledger.release_deposit(swap)
            await self._set_product_status(swap, ProductStatus.SWAPPED)
            await self._stats.increment(total_swaps_completed=1)
            await self.adjust_trust(swap.owner_id, TrustEvent.COMPLETED_SWAP)
            self._queue_completion(swap, breakdown)
        else:
            txn = await self.ledger.refund_escrow(swap)
            await self.ledger.release_deposit(swap)
            await self._set_product_status(swap, ProductStatus.ACTIVE)
            if penalize is not None:
                await self.adjust_trust(penalize, TrustEvent.CANCELLED_BY_USER)

        logger.info(
            "swap.terminated",
            swap_id=str(swap.id),
            transition=event,
            outcome=outcome.value,
            status=swap.status,
            fee=breakdown.total if breakdown else 0,
            actor=actor,
        )
        return SettlementResult(swap=swap, fee=breakdown, transaction=txn)

    async def adjust_trust(self, user_id: uuid.UUID, trust_event: TrustEvent) -> int:
        """Set the user's trust to the clamped result of the event's delta."""
        delta = self._trust_points[trust_event]
        current = await self._collab.directory.get_trust_score(user_id, for_update=True)
        updated = apply_trust_delta(current, delta)
        if updated != current:
            await self._collab.directory.set_trust_score(user_id, updated)
        if (
            updated < self._settings.trust_suspension_threshold
            and current >= self._settings.trust_suspension_threshold
        ):
            await self._collab.directory.suspend(user_id)
            logger.warning("trust.user_suspended", user_id=str(user_id), trust_score=updated)
        return updated

    def _queue_completion(self, swap: SwapRequest, breakdown: FeeBreakdown | None) -> None:
        payload = {
            "swap_id": str(swap.id),
            "fee": breakdown.total if breakdown else 0,
            "net_amount": breakdown.net_amount if breakdown else 0,
        }
        for party in (swap.owner_id, swap.requester_id):
            self.outbox.notify(party, NotificationEvent.SWAP_COMPLETED, **payload)
        self.outbox.record_activity(
            ActivityEvent(
                kind="swap_completed",
                swap_id=swap.id,
                actor_ids=(swap.owner_id, swap.requester_id),
                data={"valor_amount": swap.pending_valor_amount, "risk_tier": swap.risk_tier},
                occurred_at=self.now(),
            )
        )

    async def _set_product_status(self, swap: SwapRequest, status: ProductStatus) -> None:
        await self._collab.catalog.set_status(swap.product_id, status)
        if swap.offered_product_id is not None:
            await self._collab.catalog.set_status(swap.offered_product_id, status)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_swap(self, swap_id: uuid.UUID) -> SwapRequest:
        """Get a swap or raise SwapNotFoundError."""
        swap = await self._swaps.get_by_id(swap_id)
        if swap is None:
            raise SwapNotFoundError(str(swap_id))
        return swap

    async def get_status(self, swap_id: uuid.UUID) -> dict:
        """Get swap status with allowed events and the relevant deadlines."""
        swap = await self.get_swap(swap_id)
        sm = SwapStateMachine(current_status=swap.status)
        remaining = None
        if swap.dispute_window_ends_at is not None:
            remaining = max(
                0.0, (swap.dispute_window_ends_at - self.now()).total_seconds() / 3600
            )
        return {
            "swap_id": str(swap.id),
            "status": swap.status,
            "escrow_state": swap.escrow_state,
            "risk_tier": swap.risk_tier,
            "allowed_events": sm.get_allowed_events(),
            "dispute_window_ends_at": swap.dispute_window_ends_at,
            "dispute_window_remaining_hours": (
                round(remaining, 1) if remaining is not None else None
            ),
            "auto_complete_eligible": swap.auto_complete_eligible,
        }

    async def get_logs(self, swap_id: uuid.UUID) -> list[SwapStatusLog]:
        await self.get_swap(swap_id)
        return await self._logs.get_by_swap(swap_id)

    async def get_transactions(self, swap_id: uuid.UUID) -> list[ValorTransaction]:
        await self.get_swap(swap_id)
        return await self._txns.get_by_swap(swap_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _fire_transition(self, swap: SwapRequest, event_name: str) -> str:
        """Validate a state machine transition and return the target status.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        try:
            return validate_transition(swap.status, event_name)
        except (TransitionNotAllowed, ValueError) as err:
            raise InvalidStateTransitionError(swap.status, event_name) from err

    async def _raise_lost_race(self, swap: SwapRequest, event: str) -> None:
        current = await self._swaps.get_by_id(swap.id)
        found = current.status if current else "missing"
        logger.info("swap.transition_lost_race", swap_id=str(swap.id), transition=event, found=found)
        if found == SwapStatus.COMPLETED.value:
            raise AlreadySettledError(str(swap.id), found)
        raise InvalidStateTransitionError(found, event, "swap changed concurrently")

    def _require_claimed(
        self, swap: SwapRequest, event: str, result: SettlementResult | None
    ) -> SettlementResult:
        if result is None:
            raise InvalidStateTransitionError(swap.status, event, "swap changed concurrently")
        return result

    @staticmethod
    def _require_owner(swap: SwapRequest, actor_id: uuid.UUID, action: str) -> None:
        if actor_id != swap.owner_id:
            raise NotAuthorizedError(str(actor_id), action)

    @staticmethod
    def _require_party(swap: SwapRequest, actor_id: uuid.UUID, action: str) -> None:
        if actor_id not in (swap.owner_id, swap.requester_id):
            raise NotAuthorizedError(str(actor_id), action)
