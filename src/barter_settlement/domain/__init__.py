"""Domain layer - pure business logic with zero framework dependencies."""

from barter_settlement.domain.enums import (
    RiskTier,
    SwapStatus,
    TransactionType,
)
from barter_settlement.domain.exceptions import (
    InvalidStateTransitionError,
    SettlementError,
    SwapNotFoundError,
)
from barter_settlement.domain.fees import FeeBreakdown, calculate_progressive_fee
from barter_settlement.domain.risk import calculate_risk_tier
from barter_settlement.domain.state_machine import (
    SwapStateMachine,
    validate_transition,
)
from barter_settlement.domain.trust import apply_trust_delta

__all__ = [
    "RiskTier",
    "SwapStatus",
    "TransactionType",
    "SettlementError",
    "SwapNotFoundError",
    "InvalidStateTransitionError",
    "FeeBreakdown",
    "calculate_progressive_fee",
    "calculate_risk_tier",
    "SwapStateMachine",
    "validate_transition",
    "apply_trust_delta",
]
