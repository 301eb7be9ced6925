"""
Tests for PaymentService.

Verifies the locked application of the invoice state machine: the
record/complete/delete scenario, overpayment rejection without mutation,
edits, the post-commit fully-paid notification, and the payment summary.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.db.engine import session_scope
from billing_kernel.domain.types import InvoiceStatus, LineRef, PaymentMethod, PaymentStatus
from billing_kernel.exceptions import (
    InvalidPaymentAmountError,
    InvoiceNotFoundError,
    OverpaymentError,
    PaymentNotFoundError,
)
from billing_kernel.services.invoice_service import InvoiceService
from billing_kernel.services.payment_service import PaymentService


@pytest.fixture
def invoices(session, clock, events):
    return InvoiceService(session, clock, events=events)


@pytest.fixture
def payments(session, clock, events):
    return PaymentService(session, clock, events)


@pytest.fixture
def invoice(invoices, make_item, owner_id, customer_id, test_actor_id):
    """A SENT invoice with amount_due = 1000.00."""
    created = invoices.create_invoice(
        owner_id, customer_id, [LineRef(make_item("1000.00"), 1)], test_actor_id,
    )
    return invoices.mark_sent(created.invoice_id)


class TestRecordPayment:

    def test_partial_then_full_then_delete(self, invoices, payments, invoice, test_actor_id):
        payments.record_payment(invoice.invoice_id, Decimal("400.00"), "BANK_TRANSFER", test_actor_id)
        after_first = invoices.get_invoice(invoice.invoice_id)
        assert after_first.payment_status == PaymentStatus.PARTIAL
        assert after_first.status == InvoiceStatus.SENT

        second = payments.record_payment(
            invoice.invoice_id, Decimal("600.00"), PaymentMethod.CASH, test_actor_id,
        )
        after_second = invoices.get_invoice(invoice.invoice_id)
        assert after_second.payment_status == PaymentStatus.PAID
        assert after_second.status == InvoiceStatus.COMPLETED
        assert after_second.remaining_balance == Decimal("0")

        payments.delete_payment(second.payment_id, test_actor_id)
        after_delete = invoices.get_invoice(invoice.invoice_id)
        assert after_delete.amount_paid == Decimal("400.00")
        assert after_delete.payment_status == PaymentStatus.PARTIAL
        assert after_delete.status == InvoiceStatus.SENT

    def test_draft_invoice_status_unchanged_by_partial_payment(
        self, invoices, payments, make_item, owner_id, customer_id, test_actor_id,
    ):
        draft = invoices.create_invoice(
            owner_id, customer_id, [LineRef(make_item("100"), 1)], test_actor_id,
        )
        payments.record_payment(draft.invoice_id, Decimal("10"), "CASH", test_actor_id)
        assert invoices.get_invoice(draft.invoice_id).status == InvoiceStatus.DRAFT

    def test_overpayment_rejected_and_amount_paid_unchanged(
        self, invoices, payments, invoice, test_actor_id,
    ):
        payments.record_payment(invoice.invoice_id, Decimal("400"), "CASH", test_actor_id)

        with pytest.raises(OverpaymentError) as exc_info:
            payments.record_payment(invoice.invoice_id, Decimal("600.01"), "CASH", test_actor_id)

        assert exc_info.value.remaining_balance == Decimal("600")
        assert invoices.get_invoice(invoice.invoice_id).amount_paid == Decimal("400")
        assert len(payments.list_payments(invoice.invoice_id)) == 1

    def test_non_positive_amount_rejected(self, payments, invoice, test_actor_id):
        with pytest.raises(InvalidPaymentAmountError):
            payments.record_payment(invoice.invoice_id, Decimal("0"), "CASH", test_actor_id)

    def test_unknown_method_rejected(self, payments, invoice, test_actor_id):
        with pytest.raises(ValueError):
            payments.record_payment(invoice.invoice_id, Decimal("1"), "BARTER", test_actor_id)

    def test_unknown_invoice(self, payments, test_actor_id):
        with pytest.raises(InvoiceNotFoundError):
            payments.record_payment(uuid4(), Decimal("1"), "CASH", test_actor_id)

    def test_payment_date_defaults_to_clock(self, payments, invoice, test_actor_id, clock):
        payment = payments.record_payment(invoice.invoice_id, Decimal("1"), "CASH", test_actor_id)
        assert payment.payment_date == clock.now()

    def test_logs_payment_recorded(self, payments, invoice, test_actor_id, captured_logs):
        payments.record_payment(invoice.invoice_id, Decimal("250"), "STRIPE", test_actor_id)
        records = [r for r in captured_logs() if r["message"] == "payment_recorded"]
        assert len(records) == 1
        assert records[0]["payment_status"] == "PARTIAL"


class TestEditPayment:

    def test_reducing_paid_in_full_reverts_to_sent(
        self, invoices, payments, invoice, test_actor_id,
    ):
        payment = payments.record_payment(invoice.invoice_id, Decimal("1000"), "CASH", test_actor_id)
        assert invoices.get_invoice(invoice.invoice_id).status == InvoiceStatus.COMPLETED

        edited = payments.edit_payment(payment.payment_id, test_actor_id, amount=Decimal("900"))

        reloaded = invoices.get_invoice(invoice.invoice_id)
        assert edited.amount == Decimal("900")
        assert reloaded.amount_paid == Decimal("900")
        assert reloaded.payment_status == PaymentStatus.PARTIAL
        assert reloaded.status == InvoiceStatus.SENT

    def test_edit_past_due_rejected(self, invoices, payments, invoice, test_actor_id):
        payments.record_payment(invoice.invoice_id, Decimal("600"), "CASH", test_actor_id)
        payment = payments.record_payment(invoice.invoice_id, Decimal("300"), "CASH", test_actor_id)

        with pytest.raises(OverpaymentError) as exc_info:
            payments.edit_payment(payment.payment_id, test_actor_id, amount=Decimal("401"))

        assert exc_info.value.remaining_balance == Decimal("400")
        assert payments.get_payment(payment.payment_id).amount == Decimal("300")
        assert invoices.get_invoice(invoice.invoice_id).amount_paid == Decimal("900")

    def test_non_amount_fields_do_not_touch_balance(
        self, invoices, payments, invoice, test_actor_id,
    ):
        payment = payments.record_payment(
            invoice.invoice_id, Decimal("100"), "CASH", test_actor_id, reference="R-1",
        )
        edited = payments.edit_payment(
            payment.payment_id, test_actor_id, method="CHECK", reference=None, notes="late",
        )
        assert edited.method == PaymentMethod.CHECK
        assert edited.reference is None
        assert edited.notes == "late"
        assert invoices.get_invoice(invoice.invoice_id).amount_paid == Decimal("100")

    def test_other_owner_cannot_edit(self, payments, invoice, test_actor_id):
        payment = payments.record_payment(invoice.invoice_id, Decimal("1"), "CASH", test_actor_id)
        with pytest.raises(PaymentNotFoundError):
            payments.edit_payment(
                payment.payment_id, test_actor_id, amount=Decimal("2"), owner_id=uuid4(),
            )


class TestDeletePayment:

    def test_unknown_payment(self, payments, test_actor_id):
        with pytest.raises(PaymentNotFoundError):
            payments.delete_payment(uuid4(), test_actor_id)

    def test_delete_only_payment_returns_to_unpaid(
        self, invoices, payments, invoice, test_actor_id,
    ):
        payment = payments.record_payment(invoice.invoice_id, Decimal("250"), "CASH", test_actor_id)
        payments.delete_payment(payment.payment_id, test_actor_id)

        reloaded = invoices.get_invoice(invoice.invoice_id)
        assert reloaded.amount_paid == Decimal("0")
        assert reloaded.payment_status == PaymentStatus.UNPAID



class TestEditsFromAnotherSession:
    """Amounts are read under the invoice lock, never from the identity map."""

    @pytest.fixture
    def committed_payment(self, session, payments, invoice, test_actor_id, session_factory, clock):
        payment = payments.record_payment(invoice.invoice_id, Decimal("100"), "CASH", test_actor_id)
        session.commit()
        with session_scope(session_factory) as other:
            PaymentService(other, clock).edit_payment(
                payment.payment_id, test_actor_id, amount=Decimal("300"),
            )
        return payment

    def test_edit_sees_committed_amount(
        self, session, invoices, payments, invoice, committed_payment, test_actor_id,
    ):
        payments.edit_payment(committed_payment.payment_id, test_actor_id, amount=Decimal("50"))
        session.commit()

        assert invoices.get_invoice(invoice.invoice_id).amount_paid == Decimal("50")
        assert sum(p.amount for p in payments.list_payments(invoice.invoice_id)) == Decimal("50")

    def test_delete_sees_committed_amount(
        self, session, invoices, payments, invoice, committed_payment, test_actor_id,
    ):
        payments.delete_payment(committed_payment.payment_id, test_actor_id)
        session.commit()

        reloaded = invoices.get_invoice(invoice.invoice_id)
        assert reloaded.amount_paid == Decimal("0")
        assert reloaded.payment_status == PaymentStatus.UNPAID

class TestFullyPaidNotification:

    def test_fires_once_after_commit(self, payments, invoice, test_actor_id, session, events):
        fired = []
        events.on_invoice_fully_paid(fired.append)

        payments.record_payment(invoice.invoice_id, Decimal("400"), "CASH", test_actor_id)
        payments.record_payment(invoice.invoice_id, Decimal("600"), "CASH", test_actor_id)
        assert fired == []

        session.commit()
        assert fired == [invoice.invoice_id]

    def test_discarded_on_rollback(self, payments, invoice, test_actor_id, session, events):
        fired = []
        events.on_invoice_fully_paid(fired.append)
        session.commit()

        payments.record_payment(invoice.invoice_id, Decimal("1000"), "CASH", test_actor_id)
        session.rollback()
        session.commit()

        assert fired == []

    def test_failing_subscriber_is_isolated(
        self, payments, invoice, test_actor_id, session, events, captured_logs,
    ):
        fired = []

        def boom(invoice_id):
            raise RuntimeError("subscriber down")

        events.on_invoice_fully_paid(boom)
        events.on_invoice_fully_paid(fired.append)

        payments.record_payment(invoice.invoice_id, Decimal("1000"), "CASH", test_actor_id)
        session.commit()

        assert fired == [invoice.invoice_id]
        assert any(
            r["message"] == "billing_event_subscriber_failed" for r in captured_logs()
        )


class TestPaymentSummary:

    def test_totals_by_method(self, payments, invoice, owner_id, test_actor_id):
        payments.record_payment(invoice.invoice_id, Decimal("100"), "CASH", test_actor_id)
        payments.record_payment(invoice.invoice_id, Decimal("50"), "CASH", test_actor_id)
        payments.record_payment(invoice.invoice_id, Decimal("25"), "PAYPAL", test_actor_id)

        summary = payments.payment_summary(owner_id)

        assert summary.payment_count == 3
        assert summary.total_received == Decimal("175")
        assert summary.by_method == {
            PaymentMethod.CASH: Decimal("150"),
            PaymentMethod.PAYPAL: Decimal("25"),
        }

    def test_empty_summary(self, payments):
        summary = payments.payment_summary(uuid4())
        assert summary.payment_count == 0
        assert summary.total_received == Decimal("0")
