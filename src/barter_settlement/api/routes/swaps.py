"""Swap lifecycle REST API routes.

Thin adapters over the swap, dispute, negotiation and feedback services:
parse, call, commit, render.
The acting user arrives in the ``X-Actor-Id`` header.

Routes:
    POST   /api/v1/swaps                              - Create an offer (escrow held)
    GET    /api/v1/swaps/{id}                         - Swap details
    GET    /api/v1/swaps/{id}/status                  - Status + allowed events
    GET    /api/v1/swaps/{id}/logs                    - Audit trail
    POST   /api/v1/swaps/{id}/accept                  - Owner accepts
    POST   /api/v1/swaps/{id}/reject                  - Owner rejects
    POST   /api/v1/swaps/{id}/delivery                - Owner arranges handover
    POST   /api/v1/swaps/{id}/ship                    - Owner ships (cargo)
    POST   /api/v1/swaps/{id}/redeem                  - Receiver redeems code
    POST   /api/v1/swaps/{id}/confirm                 - Party confirms, escrow settles
    POST   /api/v1/swaps/{id}/cancel                  - Unilateral cancel
    POST   /api/v1/swaps/{id}/mutual-cancel           - Propose mutual cancel
    POST   /api/v1/swaps/{id}/mutual-cancel/respond   - Approve/decline it
    POST   /api/v1/swaps/{id}/dispute                 - Open a dispute
    POST   /api/v1/swaps/{id}/force-complete          - Admin override
    POST   /api/v1/swaps/{id}/negotiate               - Price negotiation move
    GET    /api/v1/swaps/{id}/negotiation             - Negotiation state + history
    POST   /api/v1/swaps/{id}/feedback                - Rate the counterparty
    GET    /api/v1/swaps/{id}/feedback                - Feedback on a swap
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from barter_settlement.api.deps import (
    get_actor_id,
    get_dispute_service,
    get_feedback_service,
    get_negotiation_service,
    get_swap_service,
)
from barter_settlement.logging_config import get_logger
from barter_settlement.schemas.swap import (
    CancelSwapRequest,
    CreateSwapRequest,
    DisputeResponse,
    FeedbackRequest,
    FeedbackResponse,
    ForceCompleteRequest,
    MutualCancelRequest,
    MutualCancelResponseRequest,
    NegotiateRequest,
    NegotiationEventResponse,
    NegotiationResponse,
    OpenDisputeRequest,
    RedeemDeliveryRequest,
    RejectSwapRequest,
    SettlementResponse,
    SetupDeliveryRequest,
    ShipSwapRequest,
    SwapResponse,
    SwapStatusLogResponse,
    SwapStatusResponse,
)
from barter_settlement.services.dispute_service import DisputeService
from barter_settlement.services.feedback_service import FeedbackService
from barter_settlement.services.negotiation_service import NegotiationService
from barter_settlement.services.swap_service import SettlementResult, SwapService

router = APIRouter(prefix="/api/v1/swaps", tags=["Swaps"])
logger = get_logger(__name__)


def _settlement(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        swap=SwapResponse.model_validate(result.swap),
        partial=result.partial,
        waiting_for=result.waiting_for,
        fee=result.fee.to_dict() if result.fee is not None else None,
    )


def _negotiation(state: dict) -> NegotiationResponse:
    history = [NegotiationEventResponse.model_validate(entry) for entry in state["history"]]
    return NegotiationResponse(**{**state, "history": history})


# ---------------------------------------------------------------------------
# Offer
# ---------------------------------------------------------------------------


@router.post("", response_model=SwapResponse, status_code=201, summary="Create a swap offer")
async def create_swap(
    request: CreateSwapRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    """Create a pending swap and hold the offered Valor in escrow."""
    swap = await svc.create_offer(
        requester_id=actor_id,
        product_id=request.product_id,
        valor_amount=request.valor_amount,
        offered_product_id=request.offered_product_id,
        message=request.message,
    )
    await svc.commit()
    return SwapResponse.model_validate(swap)


@router.post("/{swap_id}/accept", response_model=SwapResponse, summary="Owner accepts")
async def accept_swap(
    swap_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    """Transitions pending -> accepted and locks the owner's deposit."""
    swap = await svc.accept_offer(swap_id, actor_id)
    await svc.commit()
    return SwapResponse.model_validate(swap)


@router.post("/{swap_id}/reject", response_model=SettlementResponse, summary="Owner rejects")
async def reject_swap(
    swap_id: uuid.UUID,
    request: RejectSwapRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SettlementResponse:
    result = await svc.reject_offer(swap_id, actor_id, request.reason)
    await svc.commit()
    return _settlement(result)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


@router.post("/{swap_id}/delivery", response_model=SwapResponse, summary="Arrange handover")
async def setup_delivery(
    swap_id: uuid.UUID,
    request: SetupDeliveryRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    """Transitions accepted -> awaiting_delivery and issues handover codes."""
    swap = await svc.setup_delivery(
        swap_id,
        actor_id,
        method=request.method,
        packaging_photos=request.packaging_photos,
        delivery_point_id=request.delivery_point_id,
        custom_location=request.custom_location,
    )
    await svc.commit()
    return SwapResponse.model_validate(swap)


@router.post("/{swap_id}/ship", response_model=SwapResponse, summary="Mark cargo shipped")
async def ship_swap(
    swap_id: uuid.UUID,
    request: ShipSwapRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    swap = await svc.mark_shipped(swap_id, actor_id, request.tracking_number)
    await svc.commit()
    return SwapResponse.model_validate(swap)


@router.post("/{swap_id}/redeem", response_model=SwapResponse, summary="Redeem handover code")
async def redeem_delivery(
    swap_id: uuid.UUID,
    request: RedeemDeliveryRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    """Marks a leg received; the last leg starts the dispute window."""
    swap = await svc.redeem_delivery(
        swap_id,
        request.verification_code,
        actor_id=actor_id,
        receiving_photos=request.receiving_photos,
    )
    await svc.commit()
    return SwapResponse.model_validate(swap)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@router.post("/{swap_id}/confirm", response_model=SettlementResponse, summary="Confirm receipt")
async def confirm_swap(
    swap_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SettlementResponse:
    """Settle the escrow to the owner net of the progressive fee.

    An item-for-item swap still waiting for one handover returns
    ``partial=true`` without changing anything.
    """
    result = await svc.confirm_settlement(swap_id, actor_id)
    await svc.commit()
    return _settlement(result)


@router.post(
    "/{swap_id}/force-complete",
    response_model=SettlementResponse,
    summary="Admin force-complete",
)
async def force_complete(
    swap_id: uuid.UUID,
    request: ForceCompleteRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SettlementResponse:
    result = await svc.force_complete(swap_id, actor_id, request.reason)
    await svc.commit()
    return _settlement(result)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@router.post("/{swap_id}/cancel", response_model=SettlementResponse, summary="Cancel a swap")
async def cancel_swap(
    swap_id: uuid.UUID,
    request: CancelSwapRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SettlementResponse:
    """Refund the escrow; the cancelling party takes the trust penalty."""
    result = await svc.cancel(swap_id, actor_id, request.reason, request.note)
    await svc.commit()
    return _settlement(result)


@router.post(
    "/{swap_id}/mutual-cancel",
    response_model=SwapResponse,
    summary="Propose a mutual cancellation",
)
async def request_mutual_cancel(
    swap_id: uuid.UUID,
    request: MutualCancelRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    swap = await svc.request_mutual_cancel(swap_id, actor_id, request.reason, request.note)
    await svc.commit()
    return SwapResponse.model_validate(swap)


@router.post(
    "/{swap_id}/mutual-cancel/respond",
    response_model=SwapResponse,
    summary="Approve or decline a mutual cancellation",
)
async def respond_mutual_cancel(
    swap_id: uuid.UUID,
    request: MutualCancelResponseRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    swap = await svc.respond_mutual_cancel(swap_id, actor_id, request.accept)
    await svc.commit()
    return SwapResponse.model_validate(swap)


# ---------------------------------------------------------------------------
# Dispute
# ---------------------------------------------------------------------------


@router.post(
    "/{swap_id}/dispute",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute",
)
async def open_dispute(
    swap_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    disputes: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Freeze a delivered swap inside its dispute window."""
    dispute = await disputes.open_dispute(
        swap_id, actor_id, request.type, request.description, request.evidence
    )
    await disputes.commit()
    return DisputeResponse.model_validate(dispute)


# ---------------------------------------------------------------------------
# Negotiation & feedback
# ---------------------------------------------------------------------------


@router.post(
    "/{swap_id}/negotiate",
    response_model=NegotiationResponse,
    summary="Propose, counter, accept or reject a price",
)
async def negotiate_price(
    swap_id: uuid.UUID,
    request: NegotiateRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    negotiations: NegotiationService = Depends(get_negotiation_service),
) -> NegotiationResponse:
    """Accepting re-balances the escrow to the agreed price."""
    await negotiations.negotiate(
        swap_id, actor_id, request.action, request.proposed_price, request.message
    )
    state = await negotiations.get_negotiation(swap_id, actor_id)
    await negotiations.commit()
    return _negotiation(state)


@router.get(
    "/{swap_id}/negotiation",
    response_model=NegotiationResponse,
    summary="Get negotiation state",
)
async def get_negotiation(
    swap_id: uuid.UUID,
    actor_id: uuid.UUID = Depends(get_actor_id),
    negotiations: NegotiationService = Depends(get_negotiation_service),
) -> NegotiationResponse:
    return _negotiation(await negotiations.get_negotiation(swap_id, actor_id))


@router.post(
    "/{swap_id}/feedback",
    response_model=FeedbackResponse,
    status_code=201,
    summary="Rate the counterparty",
)
async def leave_feedback(
    swap_id: uuid.UUID,
    request: FeedbackRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    feedback: FeedbackService = Depends(get_feedback_service),
) -> FeedbackResponse:
    """An unfair rating costs the counterparty trust."""
    entry = await feedback.leave_feedback(
        swap_id,
        actor_id,
        is_fair=request.is_fair,
        fairness_score=request.fairness_score,
        price_accuracy=request.price_accuracy,
        comment=request.comment,
    )
    await feedback.commit()
    return FeedbackResponse.model_validate(entry)


@router.get(
    "/{swap_id}/feedback",
    response_model=list[FeedbackResponse],
    summary="List feedback on a swap",
)
async def list_feedback(
    swap_id: uuid.UUID,
    feedback: FeedbackService = Depends(get_feedback_service),
) -> list[FeedbackResponse]:
    return [FeedbackResponse.model_validate(entry) for entry in await feedback.get_feedback(swap_id)]


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get("/{swap_id}", response_model=SwapResponse, summary="Get swap details")
async def get_swap(
    swap_id: uuid.UUID,
    svc: SwapService = Depends(get_swap_service),
) -> SwapResponse:
    swap = await svc.get_swap(swap_id)
    return SwapResponse.model_validate(swap)


@router.get("/{swap_id}/status", response_model=SwapStatusResponse, summary="Get swap status")
async def get_swap_status(
    swap_id: uuid.UUID,
    svc: SwapService = Depends(get_swap_service),
) -> SwapStatusResponse:
    """Lightweight status check with the allowed state machine events."""
    return SwapStatusResponse(**await svc.get_status(swap_id))


@router.get(
    "/{swap_id}/logs",
    response_model=list[SwapStatusLogResponse],
    summary="Get swap audit trail",
)
async def get_swap_logs(
    swap_id: uuid.UUID,
    svc: SwapService = Depends(get_swap_service),
) -> list[SwapStatusLogResponse]:
    """Every status change for this swap, in chronological order."""
    logs = await svc.get_logs(swap_id)
    return [SwapStatusLogResponse.model_validate(entry) for entry in logs]
