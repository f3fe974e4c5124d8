"""Pydantic schemas for the swap settlement API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from barter_settlement.domain.enums import (
    CancelReason,
    DeliveryMethod,
    DisputeStatus,
    DisputeType,
    NegotiationAction,
    SettlementOutcome,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateSwapRequest(BaseModel):
    """Request body for a new swap offer."""

    product_id: uuid.UUID = Field(..., description="The product being requested")
    valor_amount: int | None = Field(
        default=None,
        gt=0,
        description="Valor offered. Defaults to the listed price for pure Valor offers",
        examples=[250],
    )
    offered_product_id: uuid.UUID | None = Field(
        default=None,
        description="Requester's product offered in exchange (item-for-item)",
    )
    message: str | None = Field(default=None, max_length=1000)


class RejectSwapRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SetupDeliveryRequest(BaseModel):
    """Owner's handover arrangement."""

    method: DeliveryMethod
    packaging_photos: list[str] = Field(
        ...,
        min_length=1,
        max_length=5,
        description="Photo references of the packed item",
    )
    delivery_point_id: str | None = Field(default=None, max_length=64)
    custom_location: str | None = Field(default=None, max_length=500)


class ShipSwapRequest(BaseModel):
    tracking_number: str | None = Field(default=None, max_length=64)


class RedeemDeliveryRequest(BaseModel):
    """Receiver's proof of handover."""

    verification_code: str = Field(
        ..., min_length=6, max_length=6, pattern=r"^\d{6}$", examples=["042917"]
    )
    receiving_photos: list[str] = Field(default_factory=list, max_length=5)


class CancelSwapRequest(BaseModel):
    reason: CancelReason
    note: str | None = Field(default=None, max_length=1000)


class MutualCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=100)
    note: str | None = Field(default=None, max_length=1000)


class MutualCancelResponseRequest(BaseModel):
    accept: bool


class OpenDisputeRequest(BaseModel):
    """Request body for disputing a delivered swap."""

    type: DisputeType
    description: str = Field(..., min_length=10, max_length=2000)
    evidence: list[str] = Field(..., min_length=1, max_length=5)


class DisputeEvidenceRequest(BaseModel):
    photos: list[str] = Field(..., min_length=1, max_length=5)
    note: str | None = Field(default=None, max_length=2000)


class ResolveDisputeRequest(BaseModel):
    """Admin adjudication. ``outcome`` defaults from ``status`` and the reporter."""

    status: DisputeStatus
    resolution_note: str = Field(..., min_length=1, max_length=2000)
    outcome: SettlementOutcome | None = None
    compensation_amount: int | None = Field(default=None, gt=0)
    penalize_reported: bool = False


class ForceCompleteRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class NegotiateRequest(BaseModel):
    """One negotiation move. ``proposed_price`` is required for propose and counter."""

    action: NegotiationAction
    proposed_price: int | None = Field(default=None, gt=0, examples=[220])
    message: str | None = Field(default=None, max_length=1000)


class FeedbackRequest(BaseModel):
    is_fair: bool = True
    fairness_score: int = Field(default=3, ge=1, le=5)
    price_accuracy: int = Field(default=3, ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class SwapResponse(BaseModel):
    """Response schema for a swap. Verification codes are never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: uuid.UUID
    requester_id: uuid.UUID
    product_id: uuid.UUID
    offered_product_id: uuid.UUID | None
    pending_valor_amount: int | None
    escrow_state: str
    owner_deposit: int
    risk_tier: str | None
    status: str
    delivery_method: str | None
    delivery_code: str | None
    owner_received_product: bool
    negotiation_status: str | None
    requester_received_product: bool
    auto_complete_eligible: bool
    created_at: datetime
    updated_at: datetime
    accepted_at: datetime | None
    delivered_at: datetime | None
    dispute_window_ends_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None


class SettlementResponse(BaseModel):
    swap: SwapResponse
    partial: bool = False
    waiting_for: str | None = None
    fee: dict[str, Any] | None = None


class SwapStatusResponse(BaseModel):
    """Lightweight status check response."""

    swap_id: uuid.UUID
    status: str
    escrow_state: str
    risk_tier: str | None
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
    dispute_window_ends_at: datetime | None
    dispute_window_remaining_hours: float | None
    auto_complete_eligible: bool


class SwapStatusLogResponse(BaseModel):
    """Response schema for an audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    swap_request_id: uuid.UUID
    from_status: str | None
    to_status: str
    changed_by: str
    reason: str | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class NegotiationEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    action: str
    proposed_price: int | None
    previous_price: int | None
    message: str | None
    created_at: datetime


class NegotiationResponse(BaseModel):
    """Current negotiation state on a pending offer."""

    swap_id: uuid.UUID
    status: str | None
    pending_valor_amount: int | None
    requester_price: int | None
    owner_price: int | None
    counter_offer_count: int
    max_counter_offers: int
    price_agreed_at: datetime | None
    history: list[NegotiationEventResponse] = Field(default_factory=list)


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    swap_request_id: uuid.UUID
    user_id: uuid.UUID
    target_user_id: uuid.UUID
    is_fair: bool
    fairness_score: int
    price_accuracy: int
    comment: str | None
    penalized: bool
    created_at: datetime


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    swap_request_id: uuid.UUID
    reporter_id: uuid.UUID
    reported_user_id: uuid.UUID
    type: str
    description: str
    evidence: list[str]
    reported_evidence: list[str]
    reported_evidence_note: str | None
    evidence_submitted_late: bool
    status: str
    evidence_deadline: datetime
    outcome: str | None
    resolution_note: str | None
    compensation_amount: int | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime


class FeePreviewResponse(BaseModel):
    amount: int
    fee: int
    net_amount: int
    effective_rate: str
    components: list[dict[str, Any]]


class ValorBalanceResponse(BaseModel):
    user_id: uuid.UUID
    valor_balance: int
    locked_valor: int
    trust_score: int
    is_suspended: bool


class SweepResponse(BaseModel):
    processed: int
    completed: int
    cancelled: int
    skipped: int
    errors: int
    reminders_sent: int
    total_refunded: int
    details: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
