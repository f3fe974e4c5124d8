"""Pydantic API schemas."""

from barter_settlement.schemas.swap import (
    CancelSwapRequest,
    CreateSwapRequest,
    DisputeEvidenceRequest,
    DisputeResponse,
    FeePreviewResponse,
    ForceCompleteRequest,
    HealthResponse,
    MutualCancelRequest,
    MutualCancelResponseRequest,
    OpenDisputeRequest,
    RedeemDeliveryRequest,
    RejectSwapRequest,
    ResolveDisputeRequest,
    SettlementResponse,
    SetupDeliveryRequest,
    ShipSwapRequest,
    SwapResponse,
    SwapStatusLogResponse,
    SwapStatusResponse,
    SweepResponse,
    ValorBalanceResponse,
)

__all__ = [
    "CancelSwapRequest",
    "CreateSwapRequest",
    "DisputeEvidenceRequest",
    "DisputeResponse",
    "FeePreviewResponse",
    "ForceCompleteRequest",
    "HealthResponse",
    "MutualCancelRequest",
    "MutualCancelResponseRequest",
    "OpenDisputeRequest",
    "RedeemDeliveryRequest",
    "RejectSwapRequest",
    "ResolveDisputeRequest",
    "SettlementResponse",
    "SetupDeliveryRequest",
    "ShipSwapRequest",
    "SwapResponse",
    "SwapStatusLogResponse",
    "SwapStatusResponse",
    "SweepResponse",
    "ValorBalanceResponse",
]
