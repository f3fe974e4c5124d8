"""Dispute REST API routes.

Routes:
    GET    /api/v1/disputes                 - Admin listing, optional ?status=
    POST   /api/v1/disputes/{id}/evidence   - Reported party answers
    POST   /api/v1/disputes/{id}/resolve    - Admin adjudicates
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from barter_settlement.api.deps import get_actor_id, get_dispute_service
from barter_settlement.domain.enums import DisputeStatus
from barter_settlement.domain.exceptions import NotAuthorizedError
from barter_settlement.schemas.swap import (
    DisputeEvidenceRequest,
    DisputeResponse,
    ResolveDisputeRequest,
    SettlementResponse,
    SwapResponse,
)
from barter_settlement.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])


@router.get("", response_model=list[DisputeResponse], summary="List disputes")
async def list_disputes(
    status: DisputeStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor_id: uuid.UUID = Depends(get_actor_id),
    disputes: DisputeService = Depends(get_dispute_service),
) -> list[DisputeResponse]:
    if not await disputes.is_admin(actor_id):
        raise NotAuthorizedError(str(actor_id), "list disputes")
    items = await disputes.list_disputes(status, limit)
    return [DisputeResponse.model_validate(d) for d in items]


@router.post(
    "/{dispute_id}/evidence",
    response_model=DisputeResponse,
    summary="Submit counter-evidence",
)
async def submit_evidence(
    dispute_id: uuid.UUID,
    request: DisputeEvidenceRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    disputes: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Accepted after the deadline too, but flagged late."""
    dispute = await disputes.submit_dispute_evidence(
        dispute_id, actor_id, request.photos, request.note
    )
    await disputes.commit()
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=SettlementResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor_id: uuid.UUID = Depends(get_actor_id),
    disputes: DisputeService = Depends(get_dispute_service),
) -> SettlementResponse:
    """Close the dispute and move the swap to ``resolved``."""
    result = await disputes.resolve_dispute(
        dispute_id,
        actor_id,
        status=request.status,
        note=request.resolution_note,
        outcome=request.outcome,
        compensation_amount=request.compensation_amount,
        penalize_reported=request.penalize_reported,
    )
    await disputes.commit()
    return SettlementResponse(
        swap=SwapResponse.model_validate(result.swap),
        fee=result.fee.to_dict() if result.fee is not None else None,
    )
