"""Negotiation Service - haggling over the Valor price of a pending offer.

Either party proposes a price; the other counters, accepts or rejects.
Only the party who did not make the last move may answer it. Accepting
re-balances the requester's escrow to the agreed price through the ledger,
so the amount later settled or refunded is always what sits in escrow.

Negotiation is a sub-state of ``pending``: the swap status never changes
here, but every move counts as activity for the idle sweep.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from barter_settlement.domain.enums import (
    EscrowState,
    NegotiationAction,
    NegotiationStatus,
    NotificationEvent,
    SwapStatus,
)
from barter_settlement.domain.exceptions import (
    InvalidStateTransitionError,
    NotAuthorizedError,
    ValidationFailedError,
)
from barter_settlement.infrastructure.database.orm_models import NegotiationEvent, SwapRequest
from barter_settlement.infrastructure.database.repositories import (
    NegotiationRepository,
    SwapRepository,
    mirror_update,
)
from barter_settlement.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from barter_settlement.services.outbox import Outbox
    from barter_settlement.services.swap_service import SwapService

logger = get_logger(__name__)

_OPENING_STATES = (None, NegotiationStatus.REJECTED.value)


class NegotiationService:
    """Price negotiation on top of a SwapService's unit of work."""

    def __init__(self, swaps: SwapService) -> None:
        self._swaps = swaps
        self._rows = SwapRepository(swaps.session)
        self._history = NegotiationRepository(swaps.session)
        self._max_counters = swaps.settings.max_counter_offers

    @property
    def outbox(self) -> Outbox:
        return self._swaps.outbox

    async def commit(self) -> None:
        await self._swaps.commit()

    async def negotiate(
        self,
        swap_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: NegotiationAction | str,
        proposed_price: int | None = None,
        message: str | None = None,
    ) -> SwapRequest:
        """Apply one negotiation move and return the updated swap."""
        try:
            action = NegotiationAction(action)
        except ValueError as err:
            raise ValidationFailedError(f"Unknown negotiation action: {action}", "action") from err

        swap = await self._swaps.get_swap(swap_id)
        if actor_id not in (swap.owner_id, swap.requester_id):
            raise NotAuthorizedError(str(actor_id), "negotiate on this swap")
        if swap.status != SwapStatus.PENDING.value:
            raise InvalidStateTransitionError(
                swap.status, action.value, "only pending offers can be negotiated"
            )
        if not swap.pending_valor_amount or swap.escrow_state != EscrowState.HELD.value:
            raise ValidationFailedError("This offer has no Valor amount to negotiate", "action")
        if swap.negotiation_status == NegotiationStatus.AGREED.value:
            raise InvalidStateTransitionError(
                NegotiationStatus.AGREED.value, action.value, "price already agreed"
            )

        if action in (NegotiationAction.PROPOSE, NegotiationAction.COUNTER):
            if proposed_price is None or proposed_price <= 0:
                raise ValidationFailedError("A positive price is required", "proposed_price")

        own_field, other_field = self._price_fields(swap, actor_id)
        previous = getattr(swap, other_field) or swap.pending_valor_amount

        if action == NegotiationAction.PROPOSE:
            if swap.negotiation_status not in _OPENING_STATES:
                raise InvalidStateTransitionError(
                    swap.negotiation_status, action.value, "a proposal is already open; counter it"
                )
            values: dict[str, Any] = {
                own_field: proposed_price,
                other_field: None,
                "negotiation_status": NegotiationStatus.PROPOSED.value,
                "counter_offer_count": 0,
            }
            event = NotificationEvent.PRICE_PROPOSED
        else:
            await self._require_turn(swap, actor_id, action)
            if action == NegotiationAction.COUNTER:
                if swap.counter_offer_count >= self._max_counters:
                    raise ValidationFailedError(
                        f"Counter-offer limit of {self._max_counters} reached", "action"
                    )
                values = {
                    own_field: proposed_price,
                    "counter_offer_count": swap.counter_offer_count + 1,
                }
                event = NotificationEvent.PRICE_PROPOSED
            elif action == NegotiationAction.ACCEPT:
                proposed_price = getattr(swap, other_field)
                values = {
                    own_field: proposed_price,
                    "negotiation_status": NegotiationStatus.AGREED.value,
                    "price_agreed_at": self._swaps.now(),
                }
                event = NotificationEvent.PRICE_AGREED
            else:
                proposed_price = None
                values = {"negotiation_status": NegotiationStatus.REJECTED.value}
                event = NotificationEvent.NEGOTIATION_REJECTED

        await self._claim(swap, action, {**values, "updated_at": self._swaps.now()})
        if action == NegotiationAction.ACCEPT:
            await self._swaps.ledger.adjust_escrow(swap, proposed_price)

        await self._history.record(
            NegotiationEvent(
                swap_request_id=swap.id,
                user_id=actor_id,
                action=action.value,
                proposed_price=proposed_price,
                previous_price=previous,
                message=message,
                created_at=self._swaps.now(),
            )
        )
        await self._swaps.record_note(
            swap,
            actor=str(actor_id),
            reason=f"NEGOTIATION|{action.value}",
            metadata={"price": proposed_price, "previous_price": previous},
        )
        self.outbox.notify(
            swap.counterparty_of(actor_id),
            event,
            swap_id=str(swap.id),
            price=proposed_price,
            message=message,
        )
        logger.info(
            "negotiation.move",
            swap_id=str(swap.id),
            actor_id=str(actor_id),
            action=action.value,
            price=proposed_price,
            status=swap.negotiation_status,
        )
        return swap

    async def get_negotiation(self, swap_id: uuid.UUID, actor_id: uuid.UUID) -> dict:
        """Current negotiation state and its history, for either party."""
        swap = await self._swaps.get_swap(swap_id)
        if actor_id not in (swap.owner_id, swap.requester_id):
            raise NotAuthorizedError(str(actor_id), "view this negotiation")
        return {
            "swap_id": str(swap.id),
            "status": swap.negotiation_status,
            "pending_valor_amount": swap.pending_valor_amount,
            "requester_price": swap.requester_price,
            "owner_price": swap.owner_price,
            "counter_offer_count": swap.counter_offer_count,
            "max_counter_offers": self._max_counters,
            "price_agreed_at": swap.price_agreed_at,
            "history": await self._history.get_by_swap(swap.id),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _price_fields(swap: SwapRequest, actor_id: uuid.UUID) -> tuple[str, str]:
        if actor_id == swap.requester_id:
            return "requester_price", "owner_price"
        return "owner_price", "requester_price"

    async def _require_turn(
        self, swap: SwapRequest, actor_id: uuid.UUID, action: NegotiationAction
    ) -> None:
        if swap.negotiation_status != NegotiationStatus.PROPOSED.value:
            raise InvalidStateTransitionError(
                swap.negotiation_status or "none", action.value, "no open proposal"
            )
        history = await self._history.get_by_swap(swap.id)
        if history and history[-1].user_id == actor_id:
            raise InvalidStateTransitionError(
                NegotiationStatus.PROPOSED.value,
                action.value,
                "waiting for the other party to answer",
            )

    async def _claim(
        self, swap: SwapRequest, action: NegotiationAction, values: dict[str, Any]
    ) -> None:
        """Write ``values`` only if nobody moved the negotiation meanwhile."""
        negotiation_guard = (
            SwapRequest.negotiation_status.is_(None)
            if swap.negotiation_status is None
            else SwapRequest.negotiation_status == swap.negotiation_status
        )
        claimed = await self._rows.conditional_update(
            swap.id,
            values,
            SwapRequest.status == SwapStatus.PENDING.value,
            negotiation_guard,
            SwapRequest.counter_offer_count == swap.counter_offer_count,
        )
        if not claimed:
            current = await self._rows.get_by_id(swap.id)
            found = current.status if current else "missing"
            raise InvalidStateTransitionError(found, action.value, "swap changed concurrently")
        mirror_update(swap, values)
