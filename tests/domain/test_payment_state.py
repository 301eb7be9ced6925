"""
Tests for the pure invoice payment state machine.

Verifies:
- payment_status is a pure function of (amount_paid, amount_due)
- PAID forces COMPLETED; leaving PAID reverts COMPLETED to SENT only
- rejected operations raise without producing a new state
- 0 <= amount_paid <= amount_due across arbitrary operation sequences
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from billing_kernel.domain.payment_state import (
    BalanceState,
    apply_delete,
    apply_edit,
    apply_record,
    apply_total_change,
    derive_payment_status,
    effective_payment_status,
    resolve_workflow_status,
)
from billing_kernel.domain.types import InvoiceStatus, PaymentStatus
from billing_kernel.exceptions import (
    InvalidPaymentAmountError,
    InvoiceTotalBelowPaidError,
    NegativePaymentError,
    OverpaymentError,
)


def state(due: str, paid: str = "0", status: InvoiceStatus = InvoiceStatus.DRAFT) -> BalanceState:
    due_d, paid_d = Decimal(due), Decimal(paid)
    return BalanceState(
        amount_due=due_d,
        amount_paid=paid_d,
        payment_status=derive_payment_status(paid_d, due_d),
        status=status,
    )


# =============================================================================
# Derivation
# =============================================================================


class TestDerivePaymentStatus:

    @pytest.mark.parametrize(
        "paid, due, expected",
        [
            ("0", "100", PaymentStatus.UNPAID),
            ("0.01", "100", PaymentStatus.PARTIAL),
            ("99.99", "100", PaymentStatus.PARTIAL),
            ("100", "100", PaymentStatus.PAID),
            ("0", "0", PaymentStatus.UNPAID),
        ],
    )
    def test_status_table(self, paid, due, expected):
        assert derive_payment_status(Decimal(paid), Decimal(due)) == expected


class TestResolveWorkflowStatus:

    @pytest.mark.parametrize("current", list(InvoiceStatus))
    def test_paid_forces_completed(self, current):
        assert resolve_workflow_status(current, PaymentStatus.PAID) == InvoiceStatus.COMPLETED

    @pytest.mark.parametrize("payment_status", [PaymentStatus.UNPAID, PaymentStatus.PARTIAL])
    def test_completed_reverts_to_sent(self, payment_status):
        assert (
            resolve_workflow_status(InvoiceStatus.COMPLETED, payment_status)
            == InvoiceStatus.SENT
        )

    @pytest.mark.parametrize(
        "current",
        [InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.REJECTED],
    )
    def test_other_statuses_unchanged_when_not_paid(self, current):
        assert resolve_workflow_status(current, PaymentStatus.PARTIAL) == current


# =============================================================================
# Operations
# =============================================================================


class TestApplyRecord:

    def test_partial_leaves_status_unchanged(self):
        after = apply_record(state("1000", status=InvoiceStatus.SENT), Decimal("400"))
        assert after.amount_paid == Decimal("400")
        assert after.payment_status == PaymentStatus.PARTIAL
        assert after.status == InvoiceStatus.SENT

    def test_exact_remaining_completes(self):
        after = apply_record(state("1000", "400"), Decimal("600"))
        assert after.payment_status == PaymentStatus.PAID
        assert after.status == InvoiceStatus.COMPLETED

    def test_overpayment_rejected_with_remaining(self):
        with pytest.raises(OverpaymentError) as exc_info:
            apply_record(state("1000", "400"), Decimal("600.01"), "inv-1")
        assert exc_info.value.remaining_balance == Decimal("600")
        assert exc_info.value.code == "OVERPAYMENT"

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(InvalidPaymentAmountError):
            apply_record(state("100"), Decimal(amount))

    def test_paying_fully_paid_invoice_rejected(self):
        with pytest.raises(OverpaymentError):
            apply_record(state("100", "100", InvoiceStatus.COMPLETED), Decimal("1"))


class TestApplyEdit:

    def test_reducing_a_payment_reverts_completed_to_sent(self):
        paid = state("1000", "1000", InvoiceStatus.COMPLETED)
        after = apply_edit(paid, Decimal("600"), Decimal("500"))
        assert after.amount_paid == Decimal("900")
        assert after.payment_status == PaymentStatus.PARTIAL
        assert after.status == InvoiceStatus.SENT

    def test_raising_a_payment_past_due_rejected(self):
        with pytest.raises(OverpaymentError) as exc_info:
            apply_edit(state("1000", "900"), Decimal("400"), Decimal("501"))
        # Headroom for the edited payment is its old amount plus the remaining balance.
        assert exc_info.value.remaining_balance == Decimal("500")

    def test_edit_below_zero_total_rejected(self):
        # Stored paid already drifted below the payment being edited.
        drifted = state("1000", "100")
        with pytest.raises(NegativePaymentError):
            apply_edit(drifted, Decimal("400"), Decimal("200"))

    def test_zero_amount_rejected(self):
        with pytest.raises(InvalidPaymentAmountError):
            apply_edit(state("100", "50"), Decimal("50"), Decimal("0"))


class TestApplyDelete:

    def test_scenario_pay_complete_then_delete(self):
        s = state("1000")
        s = apply_record(s, Decimal("400"))
        assert (s.payment_status, s.status) == (PaymentStatus.PARTIAL, InvoiceStatus.DRAFT)
        s = apply_record(s, Decimal("600"))
        assert (s.payment_status, s.status) == (PaymentStatus.PAID, InvoiceStatus.COMPLETED)
        s = apply_delete(s, Decimal("600"))
        assert s.amount_paid == Decimal("400")
        assert (s.payment_status, s.status) == (PaymentStatus.PARTIAL, InvoiceStatus.SENT)

    def test_floors_at_zero(self):
        after = apply_delete(state("100", "30"), Decimal("50"))
        assert after.amount_paid == Decimal("0")
        assert after.payment_status == PaymentStatus.UNPAID


class TestApplyTotalChange:

    def test_total_below_paid_rejected(self):
        with pytest.raises(InvoiceTotalBelowPaidError):
            apply_total_change(state("1000", "500"), Decimal("499.99"))

    def test_total_lowered_to_paid_completes(self):
        after = apply_total_change(state("1000", "500", InvoiceStatus.VIEWED), Decimal("500"))
        assert after.payment_status == PaymentStatus.PAID
        assert after.status == InvoiceStatus.COMPLETED

    def test_total_raised_reopens_completed(self):
        paid = state("500", "500", InvoiceStatus.COMPLETED)
        after = apply_total_change(paid, Decimal("800"))
        assert after.payment_status == PaymentStatus.PARTIAL
        assert after.status == InvoiceStatus.SENT


class TestEffectivePaymentStatus:

    NOW = datetime(2026, 3, 1, 12, 0)

    def test_past_due_unpaid_is_overdue(self):
        assert (
            effective_payment_status(PaymentStatus.PARTIAL, self.NOW - timedelta(days=1), self.NOW)
            == PaymentStatus.OVERDUE
        )

    def test_paid_is_never_overdue(self):
        assert (
            effective_payment_status(PaymentStatus.PAID, self.NOW - timedelta(days=30), self.NOW)
            == PaymentStatus.PAID
        )

    def test_not_yet_due(self):
        assert (
            effective_payment_status(PaymentStatus.UNPAID, self.NOW, self.NOW)
            == PaymentStatus.UNPAID
        )


# =============================================================================
# Property: invariants hold across arbitrary operation sequences
# =============================================================================


_amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("2000"), places=2)
_operations = st.lists(
    st.tuples(st.sampled_from(["record", "edit", "delete"]), _amounts, st.integers(0, 20)),
    max_size=30,
)


class TestStateMachineInvariants:

    @settings(max_examples=200, deadline=None)
    @given(due=_amounts, ops=_operations)
    def test_bounds_and_derivation_hold(self, due, ops):
        s = BalanceState(due, Decimal("0"), PaymentStatus.UNPAID, InvoiceStatus.SENT)
        payments: list[Decimal] = []

        for op, amount, pick in ops:
            before = s
            try:
                if op == "record":
                    s = apply_record(s, amount)
                    payments.append(amount)
                elif op == "edit" and payments:
                    i = pick % len(payments)
                    s = apply_edit(s, payments[i], amount)
                    payments[i] = amount
                elif op == "delete" and payments:
                    s = apply_delete(s, payments.pop(pick % len(payments)))
            except (OverpaymentError, NegativePaymentError):
                assert s == before

            assert Decimal("0") <= s.amount_paid <= s.amount_due
            assert s.amount_paid == sum(payments, Decimal("0"))
            assert s.payment_status == derive_payment_status(s.amount_paid, s.amount_due)
            if s.payment_status == PaymentStatus.PAID:
                assert s.status == InvoiceStatus.COMPLETED
            else:
                assert s.status == InvoiceStatus.SENT
