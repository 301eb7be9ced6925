"""
Catalog ORM models: items and taxes.

Both tables are owned by external CRUD; the billing core only reads them
through the PricingLookup and TaxLookup protocols.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString


class ItemModel(TrackedBase):
    """Catalog item with its current unit price."""

    __tablename__ = "items"

    __table_args__ = (Index("ix_items_owner", "owner_id"),)

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")


class TaxModel(TrackedBase):
    """Named tax rate, expressed in percent."""

    __tablename__ = "taxes"

    __table_args__ = (Index("ix_taxes_owner", "owner_id"),)

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rate_percent: Mapped[Decimal] = mapped_column(nullable=False)
