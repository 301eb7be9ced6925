"""
ORM models for invoices, invoice lines, and payments.

Contract:
    InvoiceModel, InvoiceLineModel, and PaymentModel persist the monetary
    state of an invoice.  ``to_dto()`` returns the frozen DTOs from
    billing_kernel.domain.types.

Invariants enforced:
    - ``idempotency_key`` is UNIQUE (nullable; set only by generation).
    - ``number`` is UNIQUE.
    - CHECK 0 <= amount_paid <= amount_due at the storage level.
    - Line unit prices are frozen copies, never joined to the catalog.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from billing_kernel.domain.payment_state import BalanceState
    from billing_kernel.domain.types import Invoice, InvoiceLine, Payment


class InvoiceModel(TrackedBase):
    """Persistent invoice header with its stored monetary totals."""

    __tablename__ = "invoices"

    __table_args__ = (
        Index("ix_invoices_owner_status", "owner_id", "payment_status"),
        Index("ix_invoices_recurring_definition", "recurring_definition_id"),
        CheckConstraint(
            "amount_paid >= 0 AND amount_paid <= amount_due",
            name="ck_invoices_amount_paid_range",
        ),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    sub_total: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tax_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(200), nullable=True, unique=True,
    )
    recurring_definition_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )

    lines: Mapped[list["InvoiceLineModel"]] = relationship(
        "InvoiceLineModel",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineModel.position",
    )

    payments: Mapped[list["PaymentModel"]] = relationship(
        "PaymentModel",
        back_populates="invoice",
        order_by="PaymentModel.payment_date",
    )

    def balance_state(self) -> BalanceState:
        from billing_kernel.domain.payment_state import BalanceState
        from billing_kernel.domain.types import InvoiceStatus, PaymentStatus

        return BalanceState(
            amount_due=self.amount_due,
            amount_paid=self.amount_paid,
            payment_status=PaymentStatus(self.payment_status),
            status=InvoiceStatus(self.status),
        )

    def apply_balance_state(self, state: BalanceState) -> None:
        self.amount_due = state.amount_due
        self.amount_paid = state.amount_paid
        self.payment_status = state.payment_status.value
        self.status = state.status.value

    def to_dto(self) -> Invoice:
        from billing_kernel.domain.types import Invoice, InvoiceStatus, PaymentStatus

        return Invoice(
            invoice_id=self.id,
            owner_id=self.owner_id,
            customer_id=self.customer_id,
            number=self.number,
            currency=self.currency,
            due_date=self.due_date,
            status=InvoiceStatus(self.status),
            payment_status=PaymentStatus(self.payment_status),
            sub_total=self.sub_total,
            tax_amount=self.tax_amount,
            amount_due=self.amount_due,
            amount_paid=self.amount_paid,
            lines=tuple(line.to_dto() for line in self.lines),
            tax_id=self.tax_id,
            notes=self.notes,
            idempotency_key=self.idempotency_key,
            recurring_definition_id=self.recurring_definition_id,
            created_at=self.created_at,
        )


class InvoiceLineModel(TrackedBase):
    """Invoice line with a frozen unit price."""

    __tablename__ = "invoice_lines"

    __table_args__ = (
        Index("ix_invoice_lines_invoice", "invoice_id"),
        CheckConstraint("quantity >= 1", name="ck_invoice_lines_quantity"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped["InvoiceModel"] = relationship(
        "InvoiceModel", back_populates="lines", foreign_keys=[invoice_id],
    )

    def to_dto(self) -> InvoiceLine:
        from billing_kernel.domain.types import InvoiceLine

        return InvoiceLine(
            item_id=self.item_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
            line_total=self.line_total,
            position=self.position,
        )


class PaymentModel(TrackedBase):
    """Money received against one invoice."""

    __tablename__ = "payments"

    __table_args__ = (
        Index("ix_payments_invoice", "invoice_id"),
        Index("ix_payments_owner", "owner_id"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False,
    )
    reference: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice: Mapped["InvoiceModel"] = relationship(
        "InvoiceModel", back_populates="payments", foreign_keys=[invoice_id],
    )

    def to_dto(self) -> Payment:
        from billing_kernel.domain.types import Payment, PaymentMethod

        return Payment(
            payment_id=self.id,
            invoice_id=self.invoice_id,
            owner_id=self.owner_id,
            amount=self.amount,
            method=PaymentMethod(self.method),
            payment_date=self.payment_date,
            reference=self.reference,
            notes=self.notes,
        )
