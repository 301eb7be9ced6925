"""
BillingEvents -- post-commit notification hub.

Responsibility:
    Lets callers subscribe to ``invoice_fully_paid`` and
    ``invoice_generated``.  Services queue events on the SQLAlchemy session;
    they are dispatched only after that session's transaction commits and
    discarded if it rolls back.

Invariants enforced:
    - Subscribers never see an event for state that was not committed.
    - A failing subscriber is logged and does not affect other subscribers
      or the caller.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from uuid import UUID

from sqlalchemy import event
from sqlalchemy.orm import Session

from billing_kernel.logging_config import get_logger

logger = get_logger("services.notifications")

InvoiceCallback = Callable[[UUID], None]

INVOICE_FULLY_PAID = "invoice_fully_paid"
INVOICE_GENERATED = "invoice_generated"

_PENDING_KEY = "billing_pending_events"
_HOOKED_KEY = "billing_events_hooked"


class BillingEvents:
    """Subscription hub.  Share one instance across services."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[InvoiceCallback]] = {
            INVOICE_FULLY_PAID: [],
            INVOICE_GENERATED: [],
        }

    def on_invoice_fully_paid(self, callback: InvoiceCallback) -> InvoiceCallback:
        return self._subscribe(INVOICE_FULLY_PAID, callback)

    def on_invoice_generated(self, callback: InvoiceCallback) -> InvoiceCallback:
        return self._subscribe(INVOICE_GENERATED, callback)

    def _subscribe(self, event_name: str, callback: InvoiceCallback) -> InvoiceCallback:
        with self._lock:
            self._subscribers[event_name].append(callback)
        return callback

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_after_commit(
        self, session: Session, event_name: str, invoice_id: UUID,
    ) -> None:
        """Queue an event to fire once ``session`` commits."""
        if event_name not in self._subscribers:
            raise KeyError(f"Unknown billing event: {event_name}")
        self._hook(session)
        session.info.setdefault(_PENDING_KEY, []).append((self, event_name, invoice_id))

    def dispatch(self, event_name: str, invoice_id: UUID) -> None:
        """Invoke subscribers now.  Exceptions are logged and swallowed."""
        with self._lock:
            callbacks = list(self._subscribers[event_name])
        for callback in callbacks:
            try:
                callback(invoice_id)
            except Exception:
                logger.exception(
                    "billing_event_subscriber_failed",
                    extra={"event_name": event_name, "invoice_id": str(invoice_id)},
                )

    @staticmethod
    def _hook(session: Session) -> None:
        if session.info.get(_HOOKED_KEY):
            return
        event.listen(session, "after_commit", _flush_pending)
        event.listen(session, "after_rollback", _discard_pending)
        session.info[_HOOKED_KEY] = True


def _flush_pending(session: Session) -> None:
    # SAVEPOINT commits also fire after_commit; wait for the outer transaction
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, [])
    for hub, event_name, invoice_id in pending:
        hub.dispatch(event_name, invoice_id)


def _discard_pending(session: Session) -> None:
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, [])
    if pending:
        logger.debug("billing_events_discarded", extra={"count": len(pending)})
