"""Tests for the progressive marginal fee."""

from __future__ import annotations

from decimal import Decimal

import pytest

from barter_settlement.domain.fees import (
    DEFAULT_BRACKETS,
    FeeBracket,
    brackets_from_pairs,
    calculate_progressive_fee,
    community_pool_share,
)


class TestProgressiveFee:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            (0, 0),
            (1, 1),      # raw 0.005, minimum fee
            (10, 1),     # raw 0.05, minimum fee
            (100, 1),    # raw 0.5 rounds half up
            (200, 1),
            (500, 4),    # 1 + 3
            (800, 9),    # 1 + 3 + 4.5 = 8.5 -> 9
            (1000, 12),  # 1 + 3 + 7.5 = 11.5 -> 12
            (10000, 254),
        ],
    )
    def test_totals(self, amount: int, expected: int) -> None:
        assert calculate_progressive_fee(amount).total == expected

    def test_components_cover_amount(self) -> None:
        breakdown = calculate_progressive_fee(1000)
        assert [c.taxable for c in breakdown.components] == [
            Decimal(200),
            Decimal(300),
            Decimal(500),
        ]
        assert breakdown.raw_total == Decimal("11.5")
        assert breakdown.net_amount == 988

    def test_effective_rate(self) -> None:
        assert calculate_progressive_fee(1000).effective_rate == Decimal("0.0120")
        assert calculate_progressive_fee(0).effective_rate == Decimal(0)

    def test_fee_never_exceeds_amount(self) -> None:
        breakdown = calculate_progressive_fee(2, minimum_fee=5)
        assert breakdown.total == 2
        assert breakdown.net_amount == 0

    def test_negative_amount(self) -> None:
        with pytest.raises(ValueError):
            calculate_progressive_fee(-1)

    def test_custom_brackets(self) -> None:
        brackets = brackets_from_pairs([(100, "0.1"), (None, "0.2")])
        assert brackets == (
            FeeBracket(100, Decimal("0.1")),
            FeeBracket(None, Decimal("0.2")),
        )
        assert calculate_progressive_fee(150, brackets).total == 20

    def test_to_dict_is_json_safe(self) -> None:
        data = calculate_progressive_fee(800, DEFAULT_BRACKETS).to_dict()
        assert data["total"] == 9
        assert data["net_amount"] == 791
        assert data["raw_total"] == "8.500"
        assert len(data["brackets"]) == 3
        assert data["brackets"][-1]["upper"] == 1000


class TestCommunityPoolShare:
    def test_rounds_down(self) -> None:
        assert community_pool_share(9) == 4
        assert community_pool_share(12) == 6
        assert community_pool_share(1) == 0

    def test_custom_share(self) -> None:
        assert community_pool_share(10, Decimal("0.25")) == 2
