"""
Unit tests for the Money Ledger (pure invoice arithmetic).

Verifies:
- line total = unit price x quantity
- subtotal sums line totals; empty invoices total zero
- tax = subtotal x rate / 100, zero when no tax applies
- amount due = subtotal + tax
- no rounding beyond Decimal precision
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from billing_kernel.domain.ledger import (
    PricedLine,
    amount_due,
    compute_totals,
    line_total,
    subtotal,
    tax_amount,
)
from billing_kernel.domain.values import Money


def usd(amount: str) -> Money:
    return Money.of(amount, "USD")


class TestLineTotal:

    def test_price_times_quantity(self):
        assert line_total(usd("19.99"), 3) == usd("59.97")

    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
    def test_rejects_invalid_quantity(self, quantity):
        with pytest.raises(ValueError):
            line_total(usd("10"), quantity)

    def test_rejects_negative_price(self):
        with pytest.raises(ValueError):
            line_total(usd("-1"), 1)

    def test_zero_price_is_allowed(self):
        assert line_total(usd("0"), 5).is_zero


class TestSubtotal:

    def test_sums_line_totals(self):
        lines = [PricedLine(usd("100"), 2), PricedLine(usd("12.50"), 4)]
        assert subtotal(lines, "USD") == usd("250")

    def test_empty_is_zero(self):
        assert subtotal([], "USD").is_zero

    def test_mixed_currencies_rejected(self):
        lines = [PricedLine(usd("1"), 1), PricedLine(Money.of("1", "EUR"), 1)]
        with pytest.raises(ValueError):
            subtotal(lines, "USD")


class TestTax:

    def test_percentage_of_subtotal(self):
        assert tax_amount(usd("200"), Decimal("7.5")) == usd("15")

    def test_no_tax_is_zero(self):
        assert tax_amount(usd("200"), None).is_zero

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            tax_amount(usd("200"), Decimal("-1"))

    def test_not_rounded(self):
        assert tax_amount(usd("10.01"), Decimal("10")).amount == Decimal("1.001")


class TestComputeTotals:

    def test_amount_due_is_subtotal_plus_tax(self):
        totals = compute_totals(
            [PricedLine(usd("100"), 3), PricedLine(usd("50"), 1)],
            Decimal("20"),
            "USD",
        )
        assert totals.sub_total == usd("350")
        assert totals.tax_amount == usd("70")
        assert totals.amount_due == usd("420")

    def test_amount_due_helper(self):
        assert amount_due(usd("10"), usd("2.5")) == usd("12.5")

    @given(
        prices=st.lists(
            st.decimals(min_value=0, max_value=10_000, places=2), min_size=0, max_size=8,
        ),
        quantities=st.lists(st.integers(min_value=1, max_value=50), min_size=8, max_size=8),
        rate=st.one_of(st.none(), st.decimals(min_value=0, max_value=100, places=3)),
    )
    def test_amount_due_identity(self, prices, quantities, rate):
        lines = [PricedLine(usd(str(p)), q) for p, q in zip(prices, quantities)]
        totals = compute_totals(lines, rate, "USD")
        assert totals.amount_due == totals.sub_total + totals.tax_amount
        assert totals.sub_total.amount == sum(
            (p * q for p, q in zip(prices, quantities)), Decimal("0"),
        )
