"""
billing_kernel.domain.types -- Pure frozen dataclasses and closed enums.

ZERO I/O.  Services return these DTOs, never live ORM rows.

Invariants enforced:
    - Every status-like field is a closed ``str`` enum; constructing one
      from an unknown string raises ValueError at the boundary.
    - All DTOs are frozen dataclasses with tuples for collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class InvoiceStatus(str, Enum):
    """Workflow status of an invoice."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    COMPLETED = "COMPLETED"  # Forced when fully paid
    REJECTED = "REJECTED"


class PaymentStatus(str, Enum):
    """Monetary status of an invoice.

    OVERDUE is a read-side view only and is never persisted.
    """

    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class RecurringFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class RecurringStatus(str, Enum):
    """Lifecycle of a recurring definition.  COMPLETED is terminal."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    CHECK = "CHECK"
    OTHER = "OTHER"


# Statuses counted as money still owed.
OUTSTANDING_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.UNPAID, PaymentStatus.PARTIAL, PaymentStatus.OVERDUE}
)


# =============================================================================
# Invoice DTOs
# =============================================================================


@dataclass(frozen=True)
class LineRef:
    """Reference to a catalog item with a quantity; price resolved later."""

    item_id: UUID
    quantity: int

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"quantity must be an integer, got {self.quantity!r}")
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")


@dataclass(frozen=True)
class InvoiceLine:
    """Invoice line with the unit price frozen at creation."""

    item_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    position: int = 0


@dataclass(frozen=True)
class Invoice:
    """Immutable snapshot of an invoice and its lines."""

    invoice_id: UUID
    owner_id: UUID
    customer_id: UUID
    number: str
    currency: str
    due_date: datetime
    status: InvoiceStatus
    payment_status: PaymentStatus
    sub_total: Decimal
    tax_amount: Decimal
    amount_due: Decimal
    amount_paid: Decimal
    lines: tuple[InvoiceLine, ...] = ()
    tax_id: UUID | None = None
    notes: str | None = None
    idempotency_key: str | None = None
    recurring_definition_id: UUID | None = None
    created_at: datetime | None = None

    @property
    def remaining_balance(self) -> Decimal:
        return self.amount_due - self.amount_paid


@dataclass(frozen=True)
class Payment:
    """Immutable snapshot of a payment against one invoice."""

    payment_id: UUID
    invoice_id: UUID
    owner_id: UUID
    amount: Decimal
    method: PaymentMethod
    payment_date: datetime
    reference: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class PaymentSummary:
    """Per-owner totals of payments received."""

    owner_id: UUID
    total_received: Decimal
    payment_count: int
    by_method: dict[PaymentMethod, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class OutstandingInvoice:
    invoice_id: UUID
    number: str
    customer_id: UUID
    due_date: datetime
    amount_due: Decimal
    amount_paid: Decimal
    balance: Decimal
    effective_status: PaymentStatus


@dataclass(frozen=True)
class OutstandingSummary:
    """Invoices still owed money for one owner, with the total balance."""

    owner_id: UUID
    as_of: datetime
    invoices: tuple[OutstandingInvoice, ...]
    total_outstanding: Decimal


# =============================================================================
# Recurring DTOs
# =============================================================================


@dataclass(frozen=True)
class RecurringDefinition:
    """Immutable snapshot of a recurring billing definition.

    ``end_date`` is inclusive.  ``next_occurrence`` is the timestamp at
    which the next invoice becomes due for generation.
    """

    definition_id: UUID
    owner_id: UUID
    customer_id: UUID
    name: str
    frequency: RecurringFrequency
    start_date: datetime
    next_occurrence: datetime
    status: RecurringStatus
    lines: tuple[LineRef, ...]
    due_after_days: int = 30
    end_date: date | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    tax_id: UUID | None = None
    notes: str | None = None
    last_generated_at: datetime | None = None
    generated_count: int = 0
