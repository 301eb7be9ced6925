"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers must be able to react to a rejected payment or a missing invoice
without parsing message strings.  Every error therefore:
  1. Has its own class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (invoice_id, amounts, ...)

Example:
    try:
        payments.record_payment(invoice_id, amount, method, actor_id)
    except OverpaymentError as e:
        api_response(code=e.code, remaining=str(e.remaining_balance))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- PaymentNotFoundError
    |   +-- RecurringDefinitionNotFoundError
    |   +-- ItemNotFoundError
    |   +-- TaxNotFoundError
    |
    +-- PaymentError
    |   +-- OverpaymentError
    |   +-- NegativePaymentError
    |   +-- InvalidPaymentAmountError
    |
    +-- InvoiceError
    |   +-- InvoiceTotalBelowPaidError
    |   +-- InvalidInvoiceTransitionError
    |
    +-- ScheduleError
    |   +-- ScheduleComputationError
    |   +-- InvalidRecurringDefinitionError
    |   +-- RecurringDefinitionCompletedError
    |
    +-- DeliveryError
        +-- DeliveryFailure

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                              | When Raised
-----------|-----------------------------------|-------------------------------------
Not found  | INVOICE_NOT_FOUND                 | Invoice ID doesn't exist for owner
           | PAYMENT_NOT_FOUND                 | Payment ID doesn't exist for owner
           | RECURRING_DEFINITION_NOT_FOUND    | Definition ID doesn't exist
           | ITEM_NOT_FOUND                    | Catalog item can't be priced
           | TAX_NOT_FOUND                     | Tax ID doesn't exist
-----------|-----------------------------------|-------------------------------------
Payment    | OVERPAYMENT                       | Amount exceeds remaining balance
           | NEGATIVE_PAYMENT                  | Edit would drive amount paid < 0
           | INVALID_PAYMENT_AMOUNT            | Amount is zero or negative
-----------|-----------------------------------|-------------------------------------
Invoice    | INVOICE_TOTAL_BELOW_PAID          | New total smaller than amount paid
           | INVALID_INVOICE_TRANSITION        | Workflow move not permitted
-----------|-----------------------------------|-------------------------------------
Schedule   | SCHEDULE_COMPUTATION_ERROR        | Malformed frequency/anchor
           | INVALID_RECURRING_DEFINITION      | Bad dates, lines, due days
           | RECURRING_DEFINITION_COMPLETED    | Resuming a terminal definition
-----------|-----------------------------------|-------------------------------------
Delivery   | DELIVERY_FAILURE                  | Send attempts exhausted

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Validation errors (PaymentError, InvoiceError) are raised BEFORE any
   mutation.  The caller's transaction is left clean.
2. ScheduleComputationError inside a generation run is caught per
   definition; the run continues with the next definition.
3. DeliveryFailure never propagates into billing state.  It is logged as an
   operational alert and handed to the queue's alert hook.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Not-found exceptions


class NotFoundError(BillingKernelError):
    """Base exception for unknown entities."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class PaymentNotFoundError(NotFoundError):
    """Payment with given ID was not found."""

    code: str = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class RecurringDefinitionNotFoundError(NotFoundError):
    """Recurring definition with given ID was not found."""

    code: str = "RECURRING_DEFINITION_NOT_FOUND"

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Recurring definition not found: {definition_id}")


class ItemNotFoundError(NotFoundError):
    """Catalog item referenced by a line could not be priced."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class TaxNotFoundError(NotFoundError):
    """Tax with given ID was not found."""

    code: str = "TAX_NOT_FOUND"

    def __init__(self, tax_id: str):
        self.tax_id = tax_id
        super().__init__(f"Tax not found: {tax_id}")


# Payment exceptions


class PaymentError(BillingKernelError):
    """Base exception for rejected payment operations."""

    code: str = "PAYMENT_ERROR"


class OverpaymentError(PaymentError):
    """
    Payment would push amount paid above the invoice's amount due.

    For a new payment ``remaining_balance`` is the live remaining balance.
    For an edit it is the headroom left for the delta.
    """

    code: str = "OVERPAYMENT"

    def __init__(
        self,
        invoice_id: str,
        amount: Decimal,
        remaining_balance: Decimal,
    ):
        self.invoice_id = invoice_id
        self.amount = amount
        self.remaining_balance = remaining_balance
        super().__init__(
            f"Payment amount {amount} exceeds remaining balance of "
            f"{remaining_balance} on invoice {invoice_id}"
        )


class NegativePaymentError(PaymentError):
    """Payment edit would leave the invoice with a negative amount paid."""

    code: str = "NEGATIVE_PAYMENT"

    def __init__(self, invoice_id: str, resulting_amount_paid: Decimal):
        self.invoice_id = invoice_id
        self.resulting_amount_paid = resulting_amount_paid
        super().__init__(
            f"Payment edit would make amount paid negative "
            f"({resulting_amount_paid}) on invoice {invoice_id}"
        )


class InvalidPaymentAmountError(PaymentError):
    """Payment amounts must be strictly positive."""

    code: str = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, amount: Decimal):
        self.amount = amount
        super().__init__(f"Payment amount must be positive, got {amount}")


# Invoice exceptions


class InvoiceError(BillingKernelError):
    """Base exception for invoice workflow errors."""

    code: str = "INVOICE_ERROR"


class InvoiceTotalBelowPaidError(InvoiceError):
    """Recomputed invoice total would fall below what was already paid."""

    code: str = "INVOICE_TOTAL_BELOW_PAID"

    def __init__(self, invoice_id: str, amount_due: Decimal, amount_paid: Decimal):
        self.invoice_id = invoice_id
        self.amount_due = amount_due
        self.amount_paid = amount_paid
        super().__init__(
            f"Invoice {invoice_id} total {amount_due} is below "
            f"amount already paid {amount_paid}"
        )


class InvalidInvoiceTransitionError(InvoiceError):
    """Workflow status change not permitted from the current status."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: str, from_status: str, to_status: str):
        self.invoice_id = invoice_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invoice {invoice_id} cannot move from {from_status} to {to_status}"
        )


# Schedule exceptions


class ScheduleError(BillingKernelError):
    """Base exception for recurring schedule errors."""

    code: str = "SCHEDULE_ERROR"


class ScheduleComputationError(ScheduleError):
    """Frequency or anchor combination cannot produce a next occurrence."""

    code: str = "SCHEDULE_COMPUTATION_ERROR"

    def __init__(self, frequency: str, reason: str):
        self.frequency = frequency
        self.reason = reason
        super().__init__(f"Cannot compute {frequency} occurrence: {reason}")


class InvalidRecurringDefinitionError(ScheduleError):
    """Recurring definition input is structurally invalid."""

    code: str = "INVALID_RECURRING_DEFINITION"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid recurring definition: {reason}")


class RecurringDefinitionCompletedError(ScheduleError):
    """COMPLETED is terminal: the definition can no longer be resumed or edited."""

    code: str = "RECURRING_DEFINITION_COMPLETED"

    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Recurring definition {definition_id} is completed")


# Delivery exceptions


class DeliveryError(BillingKernelError):
    """Base exception for invoice delivery errors."""

    code: str = "DELIVERY_ERROR"


class DeliveryFailure(DeliveryError):
    """All delivery attempts for an invoice were exhausted."""

    code: str = "DELIVERY_FAILURE"

    def __init__(self, invoice_id: str, attempts: int, last_error: str):
        self.invoice_id = invoice_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Delivery of invoice {invoice_id} failed after "
            f"{attempts} attempt(s): {last_error}"
        )
