"""
PaymentService -- applies the invoice state machine under a row lock.

Responsibility:
    Record, edit, and delete payments.  Each operation locks the invoice
    row, asks domain/payment_state.py for the new balance state, and only
    then writes the payment and the invoice.  Also serves payment reads and
    the per-owner payment summary.

Architecture position:
    Kernel > Services -- imperative shell around the pure state machine.

Invariants enforced:
    - Per-invoice serialization: SELECT ... FOR UPDATE on the invoice row
      before reading amount_paid.
    - Payment rows are re-read under that lock before their amount is used.
    - No mutation on rejection: the pure rule raises before any write.
    - invoice_fully_paid is published only on a transition into PAID, and
      only delivered after commit.

Failure modes:
    - InvoiceNotFoundError / PaymentNotFoundError.
    - OverpaymentError, NegativePaymentError, InvalidPaymentAmountError.
    - ValueError for an unknown payment method string.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.payment_state import (
    BalanceState,
    apply_delete,
    apply_edit,
    apply_record,
)
from billing_kernel.domain.types import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentSummary,
)
from billing_kernel.exceptions import InvoiceNotFoundError, PaymentNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import InvoiceModel, PaymentModel
from billing_kernel.services.notifications import INVOICE_FULLY_PAID, BillingEvents

logger = get_logger("services.payment")

_UNSET = object()


class PaymentService:
    """
    Locked application of payment operations.

    Usage:
        with session_scope() as session:
            payments = PaymentService(session, clock, events)
            payment = payments.record_payment(invoice_id, Decimal("400"), "CASH", actor_id)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        events: BillingEvents | None = None,
    ):
        self._session = session
        self._clock = clock
        self._events = events

    # ------------------------------------------------------------------
    # Locking helpers
    # ------------------------------------------------------------------

    def _lock_invoice(self, invoice_id: UUID, owner_id: UUID | None = None) -> InvoiceModel:
        invoice = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if invoice is None or (owner_id is not None and invoice.owner_id != owner_id):
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _load_payment(self, payment_id: UUID, owner_id: UUID | None = None) -> PaymentModel:
        payment = self._session.get(PaymentModel, payment_id)
        if payment is None or (owner_id is not None and payment.owner_id != owner_id):
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def _lock_payment(
        self, payment_id: UUID, owner_id: UUID | None = None,
    ) -> tuple[PaymentModel, InvoiceModel]:
        """Lock the parent invoice, then re-read the payment under that lock.

        A payment never moves between invoices, so the unlocked lookup of
        ``invoice_id`` is safe; its amount is only trusted once re-read.
        """
        invoice_id = self._session.execute(
            select(PaymentModel.invoice_id).where(PaymentModel.id == payment_id)
        ).scalar_one_or_none()
        if invoice_id is None:
            raise PaymentNotFoundError(str(payment_id))

        invoice = self._lock_invoice(invoice_id)
        payment = self._session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None or (owner_id is not None and payment.owner_id != owner_id):
            raise PaymentNotFoundError(str(payment_id))
        return payment, invoice

    def _apply(self, invoice: InvoiceModel, before: BalanceState, after: BalanceState) -> None:
        invoice.apply_balance_state(after)
        if (
            self._events is not None
            and after.payment_status == PaymentStatus.PAID
            and before.payment_status != PaymentStatus.PAID
        ):
            self._events.publish_after_commit(self._session, INVOICE_FULLY_PAID, invoice.id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def record_payment(
        self,
        invoice_id: UUID,
        amount: Decimal,
        method: PaymentMethod | str,
        actor_id: UUID,
        payment_date: datetime | None = None,
        reference: str | None = None,
        notes: str | None = None,
        owner_id: UUID | None = None,
    ) -> Payment:
        """
        Record a payment against an invoice.

        Rejects amounts above the live remaining balance (read under the
        row lock) with OverpaymentError.
        """
        method = PaymentMethod(method)
        invoice = self._lock_invoice(invoice_id, owner_id)
        before = invoice.balance_state()
        after = apply_record(before, amount, str(invoice_id))

        payment = PaymentModel(
            invoice_id=invoice.id,
            owner_id=invoice.owner_id,
            amount=amount,
            method=method.value,
            payment_date=payment_date or self._clock.now(),
            reference=reference,
            notes=notes,
            created_by_id=actor_id,
        )
        self._session.add(payment)
        self._apply(invoice, before, after)
        invoice.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "amount": str(amount),
                "amount_paid": str(after.amount_paid),
                "payment_status": after.payment_status.value,
            },
        )
        return payment.to_dto()

    def edit_payment(
        self,
        payment_id: UUID,
        actor_id: UUID,
        amount: Decimal | None = None,
        method: PaymentMethod | str | None = None,
        payment_date: datetime | None = None,
        reference: str | None | object = _UNSET,
        notes: str | None | object = _UNSET,
        owner_id: UUID | None = None,
    ) -> Payment:
        """
        Edit a payment.  Only an amount change touches the invoice balance.

        ``reference`` and ``notes`` may be cleared by passing None.
        """
        if method is not None:
            method = PaymentMethod(method)
        payment, invoice = self._lock_payment(payment_id, owner_id)

        if amount is not None and amount != payment.amount:
            before = invoice.balance_state()
            after = apply_edit(before, payment.amount, amount, str(invoice.id))
            old_amount = payment.amount
            payment.amount = amount
            self._apply(invoice, before, after)
            invoice.updated_by_id = actor_id
            logger.info(
                "payment_amount_edited",
                extra={
                    "invoice_id": str(invoice.id),
                    "payment_id": str(payment_id),
                    "old_amount": str(old_amount),
                    "new_amount": str(amount),
                    "payment_status": after.payment_status.value,
                },
            )

        if method is not None:
            payment.method = method.value
        if payment_date is not None:
            payment.payment_date = payment_date
        if reference is not _UNSET:
            payment.reference = reference
        if notes is not _UNSET:
            payment.notes = notes
        payment.updated_by_id = actor_id
        self._session.flush()
        return payment.to_dto()

    def delete_payment(
        self, payment_id: UUID, actor_id: UUID, owner_id: UUID | None = None,
    ) -> None:
        """Delete a payment; amount_paid is reduced, flooring at zero."""
        payment, invoice = self._lock_payment(payment_id, owner_id)
        before = invoice.balance_state()
        after = apply_delete(before, payment.amount)

        self._apply(invoice, before, after)
        invoice.updated_by_id = actor_id
        self._session.delete(payment)
        self._session.flush()

        logger.info(
            "payment_deleted",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment_id),
                "amount": str(payment.amount),
                "amount_paid": str(after.amount_paid),
                "payment_status": after.payment_status.value,
                "status": after.status.value,
            },
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: UUID, owner_id: UUID | None = None) -> Payment:
        return self._load_payment(payment_id, owner_id).to_dto()

    def list_payments(self, invoice_id: UUID) -> list[Payment]:
        rows = self._session.execute(
            select(PaymentModel)
            .where(PaymentModel.invoice_id == invoice_id)
            .order_by(PaymentModel.payment_date, PaymentModel.created_at)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def payment_summary(self, owner_id: UUID) -> PaymentSummary:
        """Total received, payment count, and totals per method."""
        rows = self._session.execute(
            select(
                PaymentModel.method,
                func.count(PaymentModel.id),
                func.sum(PaymentModel.amount),
            )
            .where(PaymentModel.owner_id == owner_id)
            .group_by(PaymentModel.method)
        ).all()

        by_method: dict[PaymentMethod, Decimal] = {}
        count = 0
        total = Decimal("0")
        for method, method_count, method_total in rows:
            amount = Decimal(str(method_total or 0))
            by_method[PaymentMethod(method)] = amount
            count += method_count
            total += amount

        return PaymentSummary(
            owner_id=owner_id,
            total_received=total,
            payment_count=count,
            by_method=by_method,
        )
