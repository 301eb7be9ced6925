"""Services for the billing kernel (write side)."""

from billing_kernel.services.invoice_service import InvoiceService
from billing_kernel.services.notifications import BillingEvents
from billing_kernel.services.payment_service import PaymentService
from billing_kernel.services.pricing import (
    CatalogPricing,
    CatalogTaxes,
    PricingLookup,
    TaxLookup,
)
from billing_kernel.services.recurring_service import RecurringDefinitionService
from billing_kernel.services.sequence_service import SequenceService

__all__ = [
    "BillingEvents",
    "CatalogPricing",
    "CatalogTaxes",
    "InvoiceService",
    "PaymentService",
    "PricingLookup",
    "RecurringDefinitionService",
    "SequenceService",
    "TaxLookup",
]
