"""
Invoice State Machine -- pure payment rules.

Responsibility:
    Given an invoice's balance state and a payment operation, decide whether
    the operation is allowed and what the new balance, payment status, and
    workflow status are.  The payment service applies the result under a
    row lock; this module never touches storage.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - 0 <= amount_paid <= amount_due after every accepted operation.
    - payment_status is always derive_payment_status(paid, due).
    - PAID forces COMPLETED; leaving PAID from COMPLETED reverts to SENT,
      never to DRAFT, VIEWED, or REJECTED.
    - Rejections raise before any new state is produced.

Failure modes:
    - InvalidPaymentAmountError: amount is zero or negative.
    - OverpaymentError: amount exceeds the live remaining balance.
    - NegativePaymentError: an edit would drive amount_paid below zero.
    - InvoiceTotalBelowPaidError: a new total is below amount_paid.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from billing_kernel.domain.types import InvoiceStatus, PaymentStatus
from billing_kernel.exceptions import (
    InvalidPaymentAmountError,
    InvoiceTotalBelowPaidError,
    NegativePaymentError,
    OverpaymentError,
)

_ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class BalanceState:
    """The monetary slice of an invoice the state machine works on."""

    amount_due: Decimal
    amount_paid: Decimal
    payment_status: PaymentStatus
    status: InvoiceStatus

    @property
    def remaining_balance(self) -> Decimal:
        return self.amount_due - self.amount_paid


def derive_payment_status(amount_paid: Decimal, amount_due: Decimal) -> PaymentStatus:
    """UNPAID when nothing is paid, PAID when paid covers due, else PARTIAL.

    A zero-total invoice with nothing paid stays UNPAID.
    """
    if amount_paid == _ZERO:
        return PaymentStatus.UNPAID
    if amount_paid >= amount_due:
        return PaymentStatus.PAID
    return PaymentStatus.PARTIAL


def resolve_workflow_status(
    current: InvoiceStatus, payment_status: PaymentStatus
) -> InvoiceStatus:
    if payment_status == PaymentStatus.PAID:
        return InvoiceStatus.COMPLETED
    if current == InvoiceStatus.COMPLETED:
        return InvoiceStatus.SENT
    return current


def _rederive(state: BalanceState, amount_due: Decimal, amount_paid: Decimal) -> BalanceState:
    payment_status = derive_payment_status(amount_paid, amount_due)
    return replace(
        state,
        amount_due=amount_due,
        amount_paid=amount_paid,
        payment_status=payment_status,
        status=resolve_workflow_status(state.status, payment_status),
    )


def apply_record(state: BalanceState, amount: Decimal, invoice_id: str = "") -> BalanceState:
    """Record a new payment of ``amount``."""
    if amount <= _ZERO:
        raise InvalidPaymentAmountError(amount)
    remaining = state.remaining_balance
    if amount > remaining:
        raise OverpaymentError(invoice_id, amount, remaining)
    return _rederive(state, state.amount_due, state.amount_paid + amount)


def apply_edit(
    state: BalanceState,
    old_amount: Decimal,
    new_amount: Decimal,
    invoice_id: str = "",
) -> BalanceState:
    """Change an existing payment from ``old_amount`` to ``new_amount``."""
    if new_amount <= _ZERO:
        raise InvalidPaymentAmountError(new_amount)
    delta = new_amount - old_amount
    resulting = state.amount_paid + delta
    if resulting > state.amount_due:
        raise OverpaymentError(
            invoice_id, new_amount, state.remaining_balance + old_amount
        )
    if resulting < _ZERO:
        raise NegativePaymentError(invoice_id, resulting)
    return _rederive(state, state.amount_due, resulting)


def apply_delete(state: BalanceState, amount: Decimal) -> BalanceState:
    """Remove a payment of ``amount``; amount_paid floors at zero."""
    return _rederive(state, state.amount_due, max(_ZERO, state.amount_paid - amount))


def apply_total_change(
    state: BalanceState, new_amount_due: Decimal, invoice_id: str = ""
) -> BalanceState:
    """Re-derive after the invoice total changes (line or tax update)."""
    if new_amount_due < state.amount_paid:
        raise InvoiceTotalBelowPaidError(invoice_id, new_amount_due, state.amount_paid)
    return _rederive(state, new_amount_due, state.amount_paid)


def effective_payment_status(
    stored: PaymentStatus, due_date: datetime, as_of: datetime
) -> PaymentStatus:
    """Read-side view: OVERDUE when not PAID and the due date has passed."""
    if stored != PaymentStatus.PAID and due_date < as_of:
        return PaymentStatus.OVERDUE
    return stored
