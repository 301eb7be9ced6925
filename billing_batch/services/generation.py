"""
GenerationEngine -- materializes recurring invoices exactly once per occurrence.

Contract:
    ``run()`` scans for due recurring definitions and processes each one
    independently.  ``generate_for_definition()`` runs the same step for one
    ACTIVE definition regardless of its due time.

Architecture: billing_batch/services.  Composes the kernel's
    RecurringDefinitionService and InvoiceService; delivery goes through the
    injected DeliveryTransport.

Per definition:
    1. Claim (own transaction): conditional UPDATE on
       (id, ACTIVE, next_occurrence = expected, claim free or stale).
    2. Work (one transaction): lock the row and re-check the claim; skip if
       the occurrence is already invoiced; create the DRAFT invoice at
       current catalog prices with idempotency key
       ``recurring:<definition id>:<occurrence>``; advance the schedule and
       clear the claim; enqueue the auto-send delivery task; commit.
    3. On any failure: rollback, release the claim (own transaction), log,
       record a FAILED item.  The definition is otherwise untouched and is
       retried on the next scan.

Invariants enforced:
    - One failure never aborts the batch.
    - Invoice creation and schedule advance commit atomically.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_batch.domain.types import (
    DeliveryTask,
    GenerationItemResult,
    GenerationItemStatus,
    GenerationRunResult,
    GenerationRunStatus,
)
from billing_batch.services.delivery import DeliveryTransport
from billing_config.schema import BillingSettings
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import RecurringStatus
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.invoice_service import InvoiceService
from billing_kernel.services.notifications import INVOICE_GENERATED, BillingEvents
from billing_kernel.services.pricing import (
    CatalogPricing,
    CatalogTaxes,
    PricingLookup,
    TaxLookup,
)
from billing_kernel.services.recurring_service import RecurringDefinitionService

logger = get_logger("batch.generation")


def idempotency_key_for(definition_id: UUID, occurrence: datetime) -> str:
    """Invoice idempotency key for one occurrence of one definition."""
    return f"recurring:{definition_id}:{occurrence.isoformat()}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class _ClaimSuperseded(Exception):
    """Another worker owns the definition now; nothing was written."""


class GenerationEngine:
    """Recurring invoice generation.

    Contract:
        - ``run()`` returns a GenerationRunResult; it never raises for a
          per-definition failure.
        - Sessions are opened per step from ``session_factory``.

    Non-goals:
        - Does NOT schedule itself (see RecurringScanScheduler).
        - Does NOT wait for delivery.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: DeliveryTransport,
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
        events: BillingEvents | None = None,
        pricing_factory: Callable[[Session], PricingLookup] = CatalogPricing,
        tax_factory: Callable[[Session], TaxLookup] = CatalogTaxes,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._clock = clock or SystemClock()
        self._settings = settings or BillingSettings()
        self._events = events
        self._pricing_factory = pricing_factory
        self._tax_factory = tax_factory

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run(self, limit: int | None = None) -> GenerationRunResult:
        """Generate invoices for every due definition."""
        run_id = uuid4()
        started_at = self._clock.now()
        t0 = time.monotonic()

        with LogContext.bind(run_id=run_id):
            with session_scope(self._session_factory) as session:
                due = RecurringDefinitionService(session, self._clock).find_due(
                    started_at, limit,
                )

            logger.info("recurring_generation_started", extra={"due_count": len(due)})

            results = [
                self._process(definition.definition_id, definition.next_occurrence)
                for definition in due
            ]

            result = self._summarize(run_id, results, started_at, t0)
            logger.info(
                "recurring_generation_completed",
                extra={
                    "status": result.status.value,
                    "total_items": result.total_items,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    def generate_for_definition(self, definition_id: UUID) -> GenerationItemResult:
        """On-demand generation for one definition, due or not.

        Raises:
            RecurringDefinitionNotFoundError: Unknown definition.
        """
        with session_scope(self._session_factory) as session:
            definition = RecurringDefinitionService(session, self._clock).get_definition(
                definition_id,
            )

        if definition.status != RecurringStatus.ACTIVE:
            logger.info(
                "recurring_generation_not_active",
                extra={"definition_id": str(definition_id), "status": definition.status.value},
            )
            return GenerationItemResult(
                definition_id=definition_id,
                status=GenerationItemStatus.SKIPPED,
                error_message=f"definition is {definition.status.value}",
            )
        return self._process(definition_id, definition.next_occurrence)

    # -------------------------------------------------------------------------
    # Per-definition step
    # -------------------------------------------------------------------------

    def _process(self, definition_id: UUID, occurrence: datetime) -> GenerationItemResult:
        t0 = time.monotonic()
        with LogContext.bind(definition_id=definition_id):
            now = self._clock.now()
            try:
                with session_scope(self._session_factory) as session:
                    token = RecurringDefinitionService(session, self._clock).claim(
                        definition_id, occurrence, now, self._settings.claim_ttl_seconds,
                    )
            except Exception as exc:
                logger.exception("recurring_claim_failed")
                return self._failed(definition_id, occurrence, exc, t0)

            if token is None:
                return GenerationItemResult(
                    definition_id=definition_id,
                    status=GenerationItemStatus.SKIPPED,
                    occurrence=occurrence,
                    error_message="claimed elsewhere",
                    duration_ms=_elapsed_ms(t0),
                )

            try:
                return self._generate(definition_id, occurrence, token, now, t0)
            except _ClaimSuperseded:
                return GenerationItemResult(
                    definition_id=definition_id,
                    status=GenerationItemStatus.SKIPPED,
                    occurrence=occurrence,
                    error_message="claim superseded",
                    duration_ms=_elapsed_ms(t0),
                )
            except IntegrityError as exc:
                if "idempotency_key" not in str(exc.orig):
                    logger.exception(
                        "recurring_generation_failed",
                        extra={"occurrence": occurrence},
                    )
                    self._release(definition_id, token)
                    return self._failed(definition_id, occurrence, exc, t0)
                # Lost a race on the idempotency key: the occurrence is billed.
                logger.warning(
                    "recurring_duplicate_occurrence",
                    extra={"occurrence": occurrence, "error": str(exc.orig)},
                )
                self._release(definition_id, token)
                return GenerationItemResult(
                    definition_id=definition_id,
                    status=GenerationItemStatus.SKIPPED,
                    occurrence=occurrence,
                    error_message="occurrence already invoiced",
                    duration_ms=_elapsed_ms(t0),
                )
            except Exception as exc:
                logger.exception(
                    "recurring_generation_failed",
                    extra={"occurrence": occurrence},
                )
                self._release(definition_id, token)
                return self._failed(definition_id, occurrence, exc, t0)

    def _generate(
        self,
        definition_id: UUID,
        occurrence: datetime,
        token: str,
        now: datetime,
        t0: float,
    ) -> GenerationItemResult:
        settings = self._settings
        key = idempotency_key_for(definition_id, occurrence)

        with session_scope(self._session_factory) as session:
            recurring = RecurringDefinitionService(session, self._clock)
            definition = recurring.lock_definition(definition_id)
            if (
                definition.claim_token != token
                or definition.next_occurrence != occurrence
                or definition.status != RecurringStatus.ACTIVE.value
            ):
                logger.warning("recurring_claim_superseded")
                raise _ClaimSuperseded()

            invoices = InvoiceService(
                session,
                self._clock,
                pricing=self._pricing_factory(session),
                taxes=self._tax_factory(session),
                events=self._events,
                currency=settings.currency,
                number_prefix=settings.invoice_number_prefix,
                number_width=settings.invoice_number_width,
            )

            existing = invoices.find_by_idempotency_key(key)
            if existing is not None:
                recurring.mark_generated(definition, now)
                logger.warning(
                    "recurring_occurrence_already_invoiced",
                    extra={"invoice_id": str(existing.invoice_id)},
                )
                return GenerationItemResult(
                    definition_id=definition_id,
                    status=GenerationItemStatus.SKIPPED,
                    occurrence=occurrence,
                    invoice_id=existing.invoice_id,
                    invoice_number=existing.number,
                    error_message="occurrence already invoiced",
                    duration_ms=_elapsed_ms(t0),
                )

            invoice = invoices.create_invoice(
                owner_id=definition.owner_id,
                customer_id=definition.customer_id,
                lines=[line.to_dto() for line in definition.lines],
                actor_id=definition.owner_id,
                due_date=now + timedelta(days=definition.due_after_days),
                tax_id=definition.tax_id,
                notes=definition.notes,
                idempotency_key=key,
                recurring_definition_id=definition.id,
            )
            advanced = recurring.mark_generated(definition, now)

            if self._events is not None:
                self._events.publish_after_commit(
                    session, INVOICE_GENERATED, invoice.invoice_id,
                )

            # Last step before commit: a refused enqueue rolls everything back.
            self._transport.enqueue_delivery(
                DeliveryTask(
                    invoice_id=invoice.invoice_id,
                    auto_send=True,
                    max_attempts=settings.delivery_max_attempts,
                    backoff_seconds=settings.delivery_backoff_seconds,
                )
            )

        logger.info(
            "recurring_invoice_generated",
            extra={
                "invoice_id": str(invoice.invoice_id),
                "invoice_number": invoice.number,
                "amount_due": str(invoice.amount_due),
                "next_occurrence": advanced.next_occurrence,
                "definition_status": advanced.status.value,
            },
        )
        return GenerationItemResult(
            definition_id=definition_id,
            status=GenerationItemStatus.SUCCEEDED,
            occurrence=occurrence,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.number,
            duration_ms=_elapsed_ms(t0),
        )

    def _release(self, definition_id: UUID, token: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                RecurringDefinitionService(session, self._clock).release_claim(
                    definition_id, token,
                )
        except Exception:
            # The claim expires after claim_ttl_seconds.
            logger.exception("recurring_claim_release_failed")

    def _failed(
        self, definition_id: UUID, occurrence: datetime, exc: Exception, t0: float,
    ) -> GenerationItemResult:
        return GenerationItemResult(
            definition_id=definition_id,
            status=GenerationItemStatus.FAILED,
            occurrence=occurrence,
            error_code=getattr(exc, "code", type(exc).__name__),
            error_message=str(exc),
            duration_ms=_elapsed_ms(t0),
        )

    @staticmethod
    def _summarize(
        run_id: UUID,
        results: list[GenerationItemResult],
        started_at: datetime,
        t0: float,
    ) -> GenerationRunResult:
        succeeded = sum(1 for r in results if r.status == GenerationItemStatus.SUCCEEDED)
        failed = sum(1 for r in results if r.status == GenerationItemStatus.FAILED)
        skipped = sum(1 for r in results if r.status == GenerationItemStatus.SKIPPED)

        if failed == 0:
            status = GenerationRunStatus.COMPLETED
        elif succeeded == 0:
            status = GenerationRunStatus.FAILED
        else:
            status = GenerationRunStatus.PARTIALLY_COMPLETED

        duration_ms = _elapsed_ms(t0)
        return GenerationRunResult(
            run_id=run_id,
            status=status,
            total_items=len(results),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(results),
            started_at=started_at,
            completed_at=started_at + timedelta(milliseconds=duration_ms),
            duration_ms=duration_ms,
        )
