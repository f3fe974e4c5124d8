"""Static risk tier classification used to gate auto-completion."""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal

from barter_settlement.domain.enums import RiskTier


def calculate_risk_tier(
    amount: int,
    category: str | None = None,
    *,
    multipliers: Mapping[str, Decimal] | None = None,
    low_max: int = 100,
    medium_max: int = 500,
) -> RiskTier:
    """Classify a swap by its category-weighted Valor amount.

    Unknown or missing categories weigh 1.0.
    """
    multiplier = Decimal(1)
    if category and multipliers:
        multiplier = Decimal(str(multipliers.get(category, 1)))

    effective = Decimal(amount) * multiplier
    if effective <= low_max:
        return RiskTier.LOW
    if effective <= medium_max:
        return RiskTier.MEDIUM
    return RiskTier.HIGH
