"""
SequenceService -- gap-tolerant, never-duplicated invoice numbers.

A named counter row is locked (``SELECT ... FOR UPDATE``), incremented, and
flushed inside the caller's transaction.  Two concurrent invoice creations
serialize on that row, so numbers are unique without scanning the invoice
table.  A rolled-back transaction gives its number back.

The first use of a name inserts the row under a SAVEPOINT; losing that
insert race to another transaction falls back to locking the winner's row.
"""

from sqlalchemy import String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), unique=True)
    current_value: Mapped[int] = mapped_column(default=0)


class SequenceService:
    """Caller owns the transaction; nothing here commits."""

    INVOICE_NUMBER = "invoice_number"

    def __init__(self, session: Session):
        self._session = session

    def next_invoice_number(self, prefix: str, width: int) -> str:
        """``next_invoice_number("INV-", 6)`` -> ``"INV-000042"``."""
        return f"{prefix}{self.next_value(self.INVOICE_NUMBER):0{width}d}"

    def next_value(self, name: str) -> int:
        counter = self._lock(name) or self._create(name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value

    def _lock(self, name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, name: str) -> SequenceCounter:
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=name, current_value=0)
            self._session.add(counter)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": name})
            counter = self._lock(name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return counter
