"""ORM models for the billing kernel."""

from billing_kernel.models.catalog import ItemModel, TaxModel
from billing_kernel.models.invoice import InvoiceLineModel, InvoiceModel, PaymentModel
from billing_kernel.models.recurring import RecurringDefinitionModel, RecurringLineModel

__all__ = [
    "ItemModel",
    "TaxModel",
    "InvoiceModel",
    "InvoiceLineModel",
    "PaymentModel",
    "RecurringDefinitionModel",
    "RecurringLineModel",
]
