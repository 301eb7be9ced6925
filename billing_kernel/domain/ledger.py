"""
Money Ledger -- pure invoice arithmetic.

Responsibility:
    Line totals, subtotal, tax, and amount due for an invoice.  The one
    place these formulas live; invoice creation, invoice line updates, and
    recurring generation all call here.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - All arithmetic is Decimal inside Money; never float.
    - amount_due == subtotal + tax_amount.
    - No rounding beyond Decimal context precision.

Failure modes:
    - ValueError for non-positive quantities, negative unit prices,
      negative tax rates, or mixed currencies across lines.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from billing_kernel.domain.values import Currency, Money

_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class PricedLine:
    """A quantity of one item at a resolved unit price."""

    unit_price: Money
    quantity: int


@dataclass(frozen=True, slots=True)
class LedgerTotals:
    sub_total: Money
    tax_amount: Money
    amount_due: Money


def line_total(unit_price: Money, quantity: int) -> Money:
    """Return ``unit_price x quantity``."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
    if unit_price.is_negative:
        raise ValueError(f"unit price must be non-negative, got {unit_price}")
    return unit_price * quantity


def subtotal(lines: Iterable[PricedLine], currency: Currency | str) -> Money:
    """Sum of line totals.  An empty invoice has a zero subtotal."""
    total = Money.zero(currency)
    for line in lines:
        total = total + line_total(line.unit_price, line.quantity)
    return total


def tax_amount(sub_total: Money, tax_rate_percent: Decimal | None) -> Money:
    """``subtotal x rate / 100``; zero when there is no tax."""
    if tax_rate_percent is None:
        return Money.zero(sub_total.currency)
    if tax_rate_percent < 0:
        raise ValueError(f"tax rate must be non-negative, got {tax_rate_percent}")
    return sub_total * tax_rate_percent / _HUNDRED


def amount_due(sub_total: Money, tax: Money) -> Money:
    return sub_total + tax


def compute_totals(
    lines: Iterable[PricedLine],
    tax_rate_percent: Decimal | None,
    currency: Currency | str,
) -> LedgerTotals:
    """Compute subtotal, tax, and amount due together."""
    sub = subtotal(lines, currency)
    tax = tax_amount(sub, tax_rate_percent)
    return LedgerTotals(sub_total=sub, tax_amount=tax, amount_due=amount_due(sub, tax))
