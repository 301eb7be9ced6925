"""
Unit tests for Currency and Money value objects.

Verifies:
- Float constructor prohibition
- Currency normalization and validation
- Same-currency arithmetic and comparison
- Explicit rounding
"""

from decimal import Decimal

import pytest

from billing_kernel.domain.values import Currency, Money


class TestCurrency:

    def test_normalizes_to_uppercase(self):
        assert Currency("usd").code == "USD"

    @pytest.mark.parametrize("code", ["", "US", "USDX", "U$D", "12A"])
    def test_rejects_malformed_codes(self, code):
        with pytest.raises(ValueError):
            Currency(code)


class TestMoneyConstruction:

    def test_float_amount_is_rejected(self):
        with pytest.raises(ValueError, match="float"):
            Money(100.5, Currency("USD"))

    def test_string_currency_is_coerced(self):
        m = Money(Decimal("10"), "eur")
        assert m.currency == Currency("EUR")

    def test_of_accepts_str_and_int(self):
        assert Money.of("10.25", "USD").amount == Decimal("10.25")
        assert Money.of(7, "USD").amount == Decimal("7")

    def test_zero(self):
        z = Money.zero("USD")
        assert z.is_zero
        assert not z.is_positive
        assert not z.is_negative


class TestMoneyArithmetic:

    def test_add_and_subtract(self):
        a = Money.of("100.10", "USD")
        b = Money.of("0.20", "USD")
        assert (a + b).amount == Decimal("100.30")
        assert (a - b).amount == Decimal("99.90")

    def test_decimal_precision_is_exact(self):
        total = Money.zero("USD")
        for _ in range(10):
            total = total + Money.of("0.1", "USD")
        assert total.amount == Decimal("1.0")

    def test_mixed_currency_add_raises(self):
        with pytest.raises(ValueError, match="different currencies"):
            Money.of("1", "USD") + Money.of("1", "EUR")

    def test_mixed_currency_compare_raises(self):
        with pytest.raises(ValueError):
            Money.of("1", "USD") < Money.of("1", "EUR")

    def test_scalar_multiply_both_sides(self):
        m = Money.of("12.50", "USD")
        assert (m * 3).amount == Decimal("37.50")
        assert (3 * m).amount == Decimal("37.50")

    def test_divide(self):
        assert (Money.of("10", "USD") / 4).amount == Decimal("2.5")

    def test_negate(self):
        assert (-Money.of("5", "USD")).is_negative

    def test_comparisons(self):
        small = Money.of("1", "USD")
        big = Money.of("2", "USD")
        assert small < big
        assert small <= small
        assert big > small
        assert big >= big


class TestMoneyRounding:

    def test_no_implicit_rounding(self):
        third = Money.of("1", "USD") / 3
        assert third.amount != third.round().amount

    def test_round_half_up(self):
        assert Money.of("2.345", "USD").round().amount == Decimal("2.35")
        assert Money.of("2.344", "USD").round().amount == Decimal("2.34")

    def test_round_to_whole_units(self):
        assert Money.of("2.5", "USD").round(0).amount == Decimal("3")
