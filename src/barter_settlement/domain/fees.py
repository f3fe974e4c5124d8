"""Progressive fee engine.

The fee on a Valor amount is computed marginally, like an income tax: each
bracket's rate applies only to the slice of the amount that falls inside it.
All intermediate arithmetic is Decimal; only the final total is rounded to a
whole Valor (half-up), with a floor of ``minimum_fee`` for any positive amount.

    >>> calculate_progressive_fee(300).total
    2
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any


@dataclass(frozen=True)
class FeeBracket:
    """A marginal rate applying up to ``upper`` Valor (None = no upper bound)."""

    upper: int | None
    rate: Decimal


@dataclass(frozen=True)
class FeeComponent:
    lower: int
    upper: int | None
    rate: Decimal
    taxable: Decimal
    fee: Decimal


@dataclass(frozen=True)
class FeeBreakdown:
    amount: int
    components: tuple[FeeComponent, ...]
    raw_total: Decimal
    total: int
    effective_rate: Decimal

    @property
    def net_amount(self) -> int:
        return self.amount - self.total

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe rendering stored on the settlement journal entry."""
        return {
            "amount": self.amount,
            "total": self.total,
            "raw_total": str(self.raw_total),
            "effective_rate": str(self.effective_rate),
            "net_amount": self.net_amount,
            "brackets": [
                {
                    "lower": c.lower,
                    "upper": c.upper,
                    "rate": str(c.rate),
                    "taxable": str(c.taxable),
                    "fee": str(c.fee),
                }
                for c in self.components
            ],
        }


DEFAULT_BRACKETS: tuple[FeeBracket, ...] = (
    FeeBracket(200, Decimal("0.005")),
    FeeBracket(500, Decimal("0.01")),
    FeeBracket(1000, Decimal("0.015")),
    FeeBracket(2500, Decimal("0.02")),
    FeeBracket(5000, Decimal("0.025")),
    FeeBracket(None, Decimal("0.03")),
)

_WHOLE = Decimal("1")
_RATE_PLACES = Decimal("0.0001")


def brackets_from_pairs(pairs: Iterable[tuple[int | None, Decimal]]) -> tuple[FeeBracket, ...]:
    """Build brackets from ``(upper, rate)`` pairs as stored in settings."""
    return tuple(FeeBracket(upper, Decimal(str(rate))) for upper, rate in pairs)


def calculate_progressive_fee(
    amount: int,
    brackets: Sequence[FeeBracket] = DEFAULT_BRACKETS,
    minimum_fee: int = 1,
) -> FeeBreakdown:
    """Compute the marginal fee for ``amount`` Valor.

    The total never exceeds the amount itself, so a settlement can never
    produce a negative net payout.
    """
    if amount < 0:
        raise ValueError(f"amount must be non-negative, got {amount}")

    components: list[FeeComponent] = []
    raw_total = Decimal(0)
    lower = 0
    remaining = Decimal(amount)

    for bracket in brackets:
        if remaining <= 0:
            break
        width = remaining if bracket.upper is None else Decimal(bracket.upper - lower)
        taxable = min(remaining, width)
        fee = taxable * bracket.rate
        components.append(FeeComponent(lower, bracket.upper, bracket.rate, taxable, fee))
        raw_total += fee
        remaining -= taxable
        if bracket.upper is not None:
            lower = bracket.upper

    if amount == 0:
        total = 0
    else:
        total = int(raw_total.quantize(_WHOLE, rounding=ROUND_HALF_UP))
        total = min(max(total, minimum_fee), amount)

    effective_rate = (
        (Decimal(total) / Decimal(amount)).quantize(_RATE_PLACES) if amount else Decimal(0)
    )
    return FeeBreakdown(
        amount=amount,
        components=tuple(components),
        raw_total=raw_total,
        total=total,
        effective_rate=effective_rate,
    )


def community_pool_share(fee: int, share: Decimal = Decimal("0.5")) -> int:
    """Whole-Valor part of a fee routed to the community pool (rounded down)."""
    return int((Decimal(fee) * share).to_integral_value(rounding=ROUND_FLOOR))
