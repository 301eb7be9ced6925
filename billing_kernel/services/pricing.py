"""
Pricing and tax lookups -- the narrow catalog boundary.

Responsibility:
    Resolve current catalog unit prices and tax rates for the ledger.
    The protocols are what invoice creation and recurring generation
    depend on; the Catalog* classes are the default SQLAlchemy-backed
    implementations over the ``items`` and ``taxes`` tables.

Failure modes:
    - ItemNotFoundError when any requested item is missing.
    - TaxNotFoundError when a non-None tax id is missing.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.domain.values import Money
from billing_kernel.exceptions import ItemNotFoundError, TaxNotFoundError
from billing_kernel.models.catalog import ItemModel, TaxModel


@runtime_checkable
class PricingLookup(Protocol):
    """Resolves the current unit price of catalog items."""

    def get_price(self, item_id: UUID) -> Money: ...

    def get_prices(self, item_ids: Sequence[UUID]) -> dict[UUID, Money]: ...


@runtime_checkable
class TaxLookup(Protocol):
    """Resolves a tax rate in percent; a None tax id means zero."""

    def get_tax_rate(self, tax_id: UUID | None) -> Decimal: ...


class CatalogPricing:
    """PricingLookup over the ``items`` table."""

    def __init__(self, session: Session):
        self._session = session

    def get_price(self, item_id: UUID) -> Money:
        return self.get_prices([item_id])[item_id]

    def get_prices(self, item_ids: Sequence[UUID]) -> dict[UUID, Money]:
        wanted = set(item_ids)
        if not wanted:
            return {}
        rows = self._session.execute(
            select(ItemModel).where(ItemModel.id.in_(wanted))
        ).scalars().all()
        prices = {row.id: Money.of(row.unit_price, row.currency) for row in rows}
        for item_id in item_ids:
            if item_id not in prices:
                raise ItemNotFoundError(str(item_id))
        return prices


class CatalogTaxes:
    """TaxLookup over the ``taxes`` table."""

    def __init__(self, session: Session):
        self._session = session

    def get_tax_rate(self, tax_id: UUID | None) -> Decimal:
        if tax_id is None:
            return Decimal("0")
        tax = self._session.get(TaxModel, tax_id)
        if tax is None:
            raise TaxNotFoundError(str(tax_id))
        return tax.rate_percent
