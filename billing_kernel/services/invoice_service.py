"""
InvoiceService -- invoice repository and workflow transitions.

Responsibility:
    Creates invoices with catalog prices frozen onto their lines, reads
    them back as DTOs, replaces lines (re-running the ledger), moves the
    workflow status (send / view / reject), builds the outstanding-balance
    view, and deletes invoices after reversing their payments.

Architecture position:
    Kernel > Services -- imperative shell.  Pure rules come from
    domain/ledger.py and domain/payment_state.py.

Invariants enforced:
    - Totals are always computed by the Money Ledger.
    - Every monetary mutation locks the invoice row (SELECT ... FOR UPDATE).
    - Line unit prices are copied at creation/update time and never
      re-read from the catalog afterwards.
    - Stored payment_status is never OVERDUE.

Failure modes:
    - InvoiceNotFoundError: unknown id, or owned by someone else.
    - InvoiceTotalBelowPaidError: line update would leave total < paid.
    - InvalidInvoiceTransitionError: reject from DRAFT/COMPLETED/REJECTED.
    - ItemNotFoundError / TaxNotFoundError from the lookups.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.ledger import PricedLine, compute_totals, line_total
from billing_kernel.domain.payment_state import (
    apply_delete,
    apply_total_change,
    derive_payment_status,
    effective_payment_status,
)
from billing_kernel.domain.types import (
    OUTSTANDING_PAYMENT_STATUSES,
    Invoice,
    InvoiceStatus,
    LineRef,
    OutstandingInvoice,
    OutstandingSummary,
    PaymentStatus,
)
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import (
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel, PaymentModel
from billing_kernel.services.notifications import INVOICE_FULLY_PAID, BillingEvents
from billing_kernel.services.pricing import (
    CatalogPricing,
    CatalogTaxes,
    PricingLookup,
    TaxLookup,
)
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.invoice")


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED = _Unchanged()

_REJECTABLE = frozenset({InvoiceStatus.SENT, InvoiceStatus.VIEWED})


class InvoiceService:
    """
    Invoice repository plus workflow transitions.

    Usage:
        with session_scope() as session:
            invoices = InvoiceService(session, clock)
            invoice = invoices.create_invoice(owner_id, customer_id, lines, actor_id)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        pricing: PricingLookup | None = None,
        taxes: TaxLookup | None = None,
        events: BillingEvents | None = None,
        currency: str = "USD",
        number_prefix: str = "INV-",
        number_width: int = 6,
        default_due_after_days: int = 30,
    ):
        self._session = session
        self._clock = clock
        self._pricing = pricing or CatalogPricing(session)
        self._taxes = taxes or CatalogTaxes(session)
        self._events = events
        self._currency = currency
        self._number_prefix = number_prefix
        self._number_width = number_width
        self._default_due_after_days = default_due_after_days

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        owner_id: UUID,
        customer_id: UUID,
        lines: Sequence[LineRef],
        actor_id: UUID,
        due_date: datetime | None = None,
        tax_id: UUID | None = None,
        notes: str | None = None,
        idempotency_key: str | None = None,
        recurring_definition_id: UUID | None = None,
    ) -> Invoice:
        """
        Create a DRAFT/UNPAID invoice at current catalog prices.

        The resolved unit prices are frozen onto the invoice lines; later
        catalog changes never alter this invoice.
        """
        now = self._clock.now()
        priced, models = self._price_lines(lines, actor_id)
        totals = compute_totals(priced, self._taxes.get_tax_rate(tax_id), self._currency)

        number = SequenceService(self._session).next_invoice_number(
            self._number_prefix, self._number_width,
        )

        invoice = InvoiceModel(
            owner_id=owner_id,
            customer_id=customer_id,
            number=number,
            currency=self._currency,
            due_date=due_date or now + timedelta(days=self._default_due_after_days),
            status=InvoiceStatus.DRAFT.value,
            payment_status=derive_payment_status(
                Decimal("0"), totals.amount_due.amount
            ).value,
            sub_total=totals.sub_total.amount,
            tax_amount=totals.tax_amount.amount,
            amount_due=totals.amount_due.amount,
            amount_paid=Decimal("0"),
            tax_id=tax_id,
            notes=notes,
            idempotency_key=idempotency_key,
            recurring_definition_id=recurring_definition_id,
            created_by_id=actor_id,
        )
        invoice.lines = models
        self._session.add(invoice)
        self._session.flush()

        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "number": number,
                "amount_due": str(invoice.amount_due),
                "line_count": len(models),
                "idempotency_key": idempotency_key,
            },
        )
        return invoice.to_dto()

    def _price_lines(
        self, lines: Sequence[LineRef], actor_id: UUID,
    ) -> tuple[list[PricedLine], list[InvoiceLineModel]]:
        prices = self._pricing.get_prices([line.item_id for line in lines])
        priced: list[PricedLine] = []
        models: list[InvoiceLineModel] = []
        for position, line in enumerate(lines):
            unit_price: Money = prices[line.item_id]
            priced.append(PricedLine(unit_price=unit_price, quantity=line.quantity))
            models.append(
                InvoiceLineModel(
                    item_id=line.item_id,
                    quantity=line.quantity,
                    unit_price=unit_price.amount,
                    line_total=line_total(unit_price, line.quantity).amount,
                    position=position,
                    created_by_id=actor_id,
                )
            )
        return priced, models

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(
        self, invoice_id: UUID, owner_id: UUID | None = None, lock: bool = False,
    ) -> InvoiceModel:
        stmt = select(InvoiceModel).where(InvoiceModel.id == invoice_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        invoice = self._session.execute(stmt).scalar_one_or_none()
        if invoice is None or (owner_id is not None and invoice.owner_id != owner_id):
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def lock_invoice(self, invoice_id: UUID, owner_id: UUID | None = None) -> InvoiceModel:
        """Load the invoice row under ``SELECT ... FOR UPDATE``."""
        return self._load(invoice_id, owner_id, lock=True)

    def get_invoice(self, invoice_id: UUID, owner_id: UUID | None = None) -> Invoice:
        return self._load(invoice_id, owner_id).to_dto()

    def find_by_idempotency_key(self, idempotency_key: str) -> Invoice | None:
        invoice = self._session.execute(
            select(InvoiceModel).where(InvoiceModel.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        return invoice.to_dto() if invoice else None

    def effective_status(self, invoice: Invoice, as_of: datetime | None = None) -> PaymentStatus:
        """Payment status with OVERDUE applied as of ``as_of`` (default now)."""
        return effective_payment_status(
            invoice.payment_status, invoice.due_date, as_of or self._clock.now(),
        )

    def outstanding_summary(
        self, owner_id: UUID, as_of: datetime | None = None,
    ) -> OutstandingSummary:
        """Invoices whose effective status is UNPAID, PARTIAL, or OVERDUE."""
        as_of = as_of or self._clock.now()
        rows = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.owner_id == owner_id)
            .where(InvoiceModel.payment_status != PaymentStatus.PAID.value)
            .where(InvoiceModel.status != InvoiceStatus.REJECTED.value)
            .order_by(InvoiceModel.due_date)
        ).scalars().all()

        outstanding: list[OutstandingInvoice] = []
        total = Decimal("0")
        for row in rows:
            status = effective_payment_status(
                PaymentStatus(row.payment_status), row.due_date, as_of,
            )
            if status not in OUTSTANDING_PAYMENT_STATUSES:
                continue
            balance = row.amount_due - row.amount_paid
            total += balance
            outstanding.append(
                OutstandingInvoice(
                    invoice_id=row.id,
                    number=row.number,
                    customer_id=row.customer_id,
                    due_date=row.due_date,
                    amount_due=row.amount_due,
                    amount_paid=row.amount_paid,
                    balance=balance,
                    effective_status=status,
                )
            )

        return OutstandingSummary(
            owner_id=owner_id,
            as_of=as_of,
            invoices=tuple(outstanding),
            total_outstanding=total,
        )

    # ------------------------------------------------------------------
    # Line updates
    # ------------------------------------------------------------------

    def update_lines(
        self,
        invoice_id: UUID,
        lines: Sequence[LineRef],
        actor_id: UUID,
        tax_id: UUID | None | _Unchanged = UNCHANGED,
        owner_id: UUID | None = None,
    ) -> Invoice:
        """
        Replace the invoice's lines (and optionally its tax) and recompute.

        Raises InvoiceTotalBelowPaidError, leaving the invoice untouched, if
        the new amount due is below what has already been paid.
        """
        invoice = self.lock_invoice(invoice_id, owner_id)
        new_tax_id = invoice.tax_id if isinstance(tax_id, _Unchanged) else tax_id

        priced, models = self._price_lines(lines, actor_id)
        totals = compute_totals(
            priced, self._taxes.get_tax_rate(new_tax_id), invoice.currency,
        )
        before = invoice.balance_state()
        state = apply_total_change(before, totals.amount_due.amount, str(invoice_id))

        invoice.lines = models
        invoice.tax_id = new_tax_id
        invoice.sub_total = totals.sub_total.amount
        invoice.tax_amount = totals.tax_amount.amount
        invoice.apply_balance_state(state)
        invoice.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "invoice_lines_updated",
            extra={
                "invoice_id": str(invoice_id),
                "amount_due": str(state.amount_due),
                "payment_status": state.payment_status.value,
                "status": state.status.value,
            },
        )
        if (
            self._events is not None
            and state.payment_status == PaymentStatus.PAID
            and before.payment_status != PaymentStatus.PAID
        ):
            self._events.publish_after_commit(
                self._session, INVOICE_FULLY_PAID, invoice.id,
            )
        return invoice.to_dto()

    # ------------------------------------------------------------------
    # Workflow transitions
    # ------------------------------------------------------------------

    def mark_sent(self, invoice_id: UUID, actor_id: UUID | None = None) -> Invoice:
        """DRAFT -> SENT.  Any other status is left as it is."""
        invoice = self.lock_invoice(invoice_id)
        if invoice.status == InvoiceStatus.DRAFT.value:
            invoice.status = InvoiceStatus.SENT.value
            invoice.updated_by_id = actor_id
            self._session.flush()
            logger.info("invoice_marked_sent", extra={"invoice_id": str(invoice_id)})
        return invoice.to_dto()

    def mark_viewed(self, invoice_id: UUID, actor_id: UUID | None = None) -> Invoice:
        """SENT -> VIEWED.  Any other status is left as it is."""
        invoice = self.lock_invoice(invoice_id)
        if invoice.status == InvoiceStatus.SENT.value:
            invoice.status = InvoiceStatus.VIEWED.value
            invoice.updated_by_id = actor_id
            self._session.flush()
            logger.info("invoice_marked_viewed", extra={"invoice_id": str(invoice_id)})
        return invoice.to_dto()

    def reject(
        self, invoice_id: UUID, actor_id: UUID, owner_id: UUID | None = None,
    ) -> Invoice:
        """SENT or VIEWED -> REJECTED."""
        invoice = self.lock_invoice(invoice_id, owner_id)
        current = InvoiceStatus(invoice.status)
        if current not in _REJECTABLE:
            raise InvalidInvoiceTransitionError(
                str(invoice_id), current.value, InvoiceStatus.REJECTED.value,
            )
        invoice.status = InvoiceStatus.REJECTED.value
        invoice.updated_by_id = actor_id
        self._session.flush()
        logger.info("invoice_rejected", extra={"invoice_id": str(invoice_id)})
        return invoice.to_dto()

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_invoice(
        self, invoice_id: UUID, actor_id: UUID, owner_id: UUID | None = None,
    ) -> None:
        """Reverse every payment on the invoice, then delete it with its lines."""
        invoice = self.lock_invoice(invoice_id, owner_id)
        payments = self._session.execute(
            select(PaymentModel).where(PaymentModel.invoice_id == invoice.id)
        ).scalars().all()

        for payment in payments:
            invoice.apply_balance_state(
                apply_delete(invoice.balance_state(), payment.amount)
            )
            self._session.delete(payment)
        self._session.flush()
        self._session.expire(invoice, ["payments"])

        self._session.delete(invoice)
        self._session.flush()
        logger.info(
            "invoice_deleted",
            extra={
                "invoice_id": str(invoice_id),
                "reversed_payments": len(payments),
                "actor_id": str(actor_id),
            },
        )
