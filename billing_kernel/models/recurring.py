"""
ORM models for recurring billing definitions and their line references.

Contract:
    RecurringDefinitionModel stores the schedule, lifecycle status, and
    generation claim of one definition.  Lines reference catalog items by
    id and quantity only; prices are resolved at generation time.

Invariants enforced:
    - ``claim_token`` / ``claimed_at`` are set only by the conditional
      claim UPDATE and cleared on release.
    - ``end_date`` is an inclusive calendar date.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from billing_kernel.domain.types import LineRef, RecurringDefinition


class RecurringDefinitionModel(TrackedBase):
    """Persistent recurring billing definition."""

    __tablename__ = "recurring_definitions"

    __table_args__ = (
        Index("ix_recurring_definitions_due", "status", "next_occurrence"),
        Index("ix_recurring_definitions_owner", "owner_id"),
        CheckConstraint("due_after_days >= 1", name="ck_recurring_due_after_days"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    due_after_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    tax_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_occurrence: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False,
    )
    last_generated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    generated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )

    lines: Mapped[list["RecurringLineModel"]] = relationship(
        "RecurringLineModel",
        back_populates="definition",
        cascade="all, delete-orphan",
        order_by="RecurringLineModel.position",
    )

    def to_dto(self) -> RecurringDefinition:
        from billing_kernel.domain.types import (
            RecurringDefinition,
            RecurringFrequency,
            RecurringStatus,
        )

        return RecurringDefinition(
            definition_id=self.id,
            owner_id=self.owner_id,
            customer_id=self.customer_id,
            name=self.name,
            frequency=RecurringFrequency(self.frequency),
            start_date=self.start_date,
            next_occurrence=self.next_occurrence,
            status=RecurringStatus(self.status),
            lines=tuple(line.to_dto() for line in self.lines),
            due_after_days=self.due_after_days,
            end_date=self.end_date,
            day_of_month=self.day_of_month,
            day_of_week=self.day_of_week,
            tax_id=self.tax_id,
            notes=self.notes,
            last_generated_at=self.last_generated_at,
            generated_count=self.generated_count,
        )


class RecurringLineModel(TrackedBase):
    """Item reference (item id + quantity) on a recurring definition."""

    __tablename__ = "recurring_definition_lines"

    __table_args__ = (
        Index("ix_recurring_lines_definition", "definition_id"),
        CheckConstraint("quantity >= 1", name="ck_recurring_lines_quantity"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_definitions.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    definition: Mapped["RecurringDefinitionModel"] = relationship(
        "RecurringDefinitionModel", back_populates="lines", foreign_keys=[definition_id],
    )

    def to_dto(self) -> LineRef:
        from billing_kernel.domain.types import LineRef

        return LineRef(item_id=self.item_id, quantity=self.quantity)
