"""Application services - use case orchestration."""

from barter_settlement.services.automation import (
    AutoCancelSweeper,
    AutoCompleteSweeper,
    SweepResult,
)
from barter_settlement.services.dispute_service import DisputeService
from barter_settlement.services.ledger import ValorLedger
from barter_settlement.services.swap_service import (
    SettlementResult,
    SwapCollaborators,
    SwapService,
)

__all__ = [
    "AutoCancelSweeper",
    "AutoCompleteSweeper",
    "DisputeService",
    "SettlementResult",
    "SweepResult",
    "SwapCollaborators",
    "SwapService",
    "ValorLedger",
]
