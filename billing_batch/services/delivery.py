"""
DeliveryQueue -- asynchronous, retryable invoice email delivery.

Contract:
    ``enqueue_delivery(task)`` accepts a DeliveryTask without blocking and
    returns a DeliveryHandle.  A thread pool runs the delivery handler with
    tenacity retries: up to ``task.max_attempts`` attempts, exponential
    backoff starting at ``task.backoff_seconds`` and doubling.

Architecture: billing_batch/services.  The generation engine depends only
    on the DeliveryTransport protocol; this module is the in-process
    implementation.

Invariants enforced:
    - Exhausted retries never touch invoice billing state.  They produce a
      DeliveryFailure that is logged as an operational alert, recorded,
      and handed to the optional alert hook.
    - Every successful send moves the invoice DRAFT -> SENT and nothing
      else.  The status update is retried separately and never re-sends.

Non-goals:
    - No cancellation of accepted tasks.
    - No persistence of the queue across process restarts.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Protocol, runtime_checkable
from uuid import uuid4

from sqlalchemy.orm import Session
from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from billing_batch.domain.types import (
    DeliveryHandle,
    DeliveryOutcome,
    DeliveryStatus,
    DeliveryTask,
)
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import Invoice
from billing_kernel.exceptions import DeliveryFailure
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.invoice_service import InvoiceService

logger = get_logger("batch.delivery")


# =============================================================================
# Boundaries
# =============================================================================


@runtime_checkable
class DeliveryTransport(Protocol):
    """Accepts delivery tasks.  Synchronous accept/fail; delivery is async."""

    def enqueue_delivery(self, task: DeliveryTask) -> DeliveryHandle: ...


@runtime_checkable
class InvoiceMailer(Protocol):
    """External render + send boundary."""

    def send_invoice(
        self, invoice: Invoice, subject: str | None, message: str | None,
    ) -> None: ...


class InvoiceDeliveryHandler:
    """Loads the invoice and sends it; ``mark_sent`` then moves DRAFT -> SENT.

    Every successful send, automatic or user-initiated, ends in
    ``mark_sent``.  The queue retries the two steps separately so a failed
    status update never re-sends the email.  Each step opens its own short
    transaction so no database connection is held while the mailer talks
    to the outside world.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        mailer: InvoiceMailer,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._mailer = mailer
        self._clock = clock or SystemClock()

    def send(self, task: DeliveryTask) -> None:
        with session_scope(self._session_factory) as session:
            invoice = InvoiceService(session, self._clock).get_invoice(task.invoice_id)
        self._mailer.send_invoice(invoice, task.subject, task.message)

    def mark_sent(self, task: DeliveryTask) -> None:
        with session_scope(self._session_factory) as session:
            InvoiceService(session, self._clock).mark_sent(task.invoice_id)

    def __call__(self, task: DeliveryTask) -> None:
        self.send(task)
        self.mark_sent(task)


# =============================================================================
# Queue
# =============================================================================


class DeliveryQueue:
    """In-process DeliveryTransport backed by a thread pool.

    Contract:
        - ``enqueue_delivery()`` never blocks on delivery.
        - ``handler`` performs the send; ``on_delivered`` (if given) runs
          once after a successful send and is retried on its own.
        - ``join()`` waits for all accepted tasks to finish.
        - ``shutdown()`` stops accepting tasks and stops the pool.
        - ``failures`` / ``outcomes`` expose the most recent
          ``history_size`` results, for operators and tests.
    """

    def __init__(
        self,
        handler: Callable[[DeliveryTask], None],
        clock: Clock | None = None,
        max_workers: int = 4,
        on_failure: Callable[[DeliveryFailure], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_delivered: Callable[[DeliveryTask], None] | None = None,
        history_size: int = 1000,
    ):
        self._handler = handler
        self._on_delivered = on_delivered
        self._clock = clock or SystemClock()
        self._on_failure = on_failure
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="invoice-delivery",
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._outcomes: deque[DeliveryOutcome] = deque(maxlen=history_size)
        self._failures: deque[DeliveryFailure] = deque(maxlen=history_size)
        self._closed = False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue_delivery(self, task: DeliveryTask) -> DeliveryHandle:
        """Accept a task for background delivery.

        Raises:
            RuntimeError: If the queue has been shut down.
        """
        handle = DeliveryHandle(
            task_id=uuid4(),
            invoice_id=task.invoice_id,
            enqueued_at=self._clock.now(),
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("Delivery queue is shut down")
            future = self._executor.submit(self._deliver, handle, task)
            self._pending.add(future)
        future.add_done_callback(self._forget)

        logger.info(
            "invoice_delivery_enqueued",
            extra={
                "task_id": str(handle.task_id),
                "invoice_id": str(task.invoice_id),
                "auto_send": task.auto_send,
                "max_attempts": task.max_attempts,
            },
        )
        return handle

    def join(self, timeout: float | None = None) -> bool:
        """Wait for accepted tasks.  Returns False if ``timeout`` elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait(pending, timeout=remaining)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_tasks)
        logger.info("delivery_queue_shutdown")

    @property
    def outcomes(self) -> list[DeliveryOutcome]:
        with self._lock:
            return list(self._outcomes)

    @property
    def failures(self) -> list[DeliveryFailure]:
        with self._lock:
            return list(self._failures)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "invoice_delivery_retrying",
            extra={
                "step": getattr(retry_state.fn, "__name__", None),
                "attempt": retry_state.attempt_number,
                "next_wait_seconds": retry_state.next_action.sleep
                if retry_state.next_action
                else None,
                "error": str(exc) if exc else None,
            },
        )

    def _retrying(self, task: DeliveryTask) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(task.max_attempts),
            wait=wait_exponential(multiplier=task.backoff_seconds, exp_base=2),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _deliver(self, handle: DeliveryHandle, task: DeliveryTask) -> DeliveryOutcome:
        attempts = 0

        def send() -> None:
            nonlocal attempts
            attempts += 1
            self._handler(task)

        with LogContext.bind(invoice_id=task.invoice_id):
            try:
                self._retrying(task)(send)
            except Exception as exc:
                return self._record_failure(handle, task, attempts, exc)

            if self._on_delivered is not None:
                self._after_send(handle, task)

            outcome = DeliveryOutcome(
                task_id=handle.task_id,
                invoice_id=task.invoice_id,
                status=DeliveryStatus.DELIVERED,
                attempts=attempts,
                completed_at=self._clock.now(),
            )
            with self._lock:
                self._outcomes.append(outcome)
            logger.info(
                "invoice_delivered",
                extra={"task_id": str(handle.task_id), "attempts": attempts},
            )
            return outcome

    def _after_send(self, handle: DeliveryHandle, task: DeliveryTask) -> None:
        # The email is already out: an exhausted status update is alerted
        # on, never turned into a delivery failure or a re-send.
        try:
            self._retrying(task)(self._on_delivered, task)
        except Exception as exc:
            logger.error(
                "invoice_status_update_failed",
                extra={
                    "task_id": str(handle.task_id),
                    "alert": True,
                    "error": str(exc),
                },
            )

    def _record_failure(
        self,
        handle: DeliveryHandle,
        task: DeliveryTask,
        attempts: int,
        exc: Exception,
    ) -> DeliveryOutcome:
        failure = DeliveryFailure(str(task.invoice_id), attempts, str(exc))
        logger.error(
            "invoice_delivery_failed",
            extra={
                "task_id": str(handle.task_id),
                "alert": True,
                "attempts": attempts,
                "error_code": failure.code,
                "last_error": failure.last_error,
            },
        )
        outcome = DeliveryOutcome(
            task_id=handle.task_id,
            invoice_id=task.invoice_id,
            status=DeliveryStatus.FAILED,
            attempts=attempts,
            error_message=str(exc),
            completed_at=self._clock.now(),
        )
        with self._lock:
            self._failures.append(failure)
            self._outcomes.append(outcome)

        if self._on_failure is not None:
            try:
                self._on_failure(failure)
            except Exception:
                logger.exception("delivery_alert_hook_failed")
        return outcome
