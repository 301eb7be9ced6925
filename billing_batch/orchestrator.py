"""
BillingOrchestrator -- DI container for the billing system.

Contract:
    Wires the clock, settings, notification hub, delivery queue, generation
    engine, and scan scheduler.  Hands out kernel services bound to a
    caller-owned session.  Single place where billing dependencies are
    composed.

Architecture: billing_batch (top-level).  The canonical entry point for
    running recurring billing in a process.  The kernel never imports this
    module.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Configuration comes only from ``billing_config.get_active_config()``.
"""

from __future__ import annotations

from collections.abc import Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from billing_batch.domain.types import DeliveryHandle, DeliveryTask
from billing_batch.services.delivery import (
    DeliveryQueue,
    DeliveryTransport,
    InvoiceDeliveryHandler,
    InvoiceMailer,
)
from billing_batch.services.generation import GenerationEngine
from billing_batch.services.scheduler import RecurringScanScheduler
from billing_config import get_active_config
from billing_config.schema import BillingSettings
from billing_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import DeliveryFailure
from billing_kernel.logging_config import configure_logging, get_logger
from billing_kernel.services.invoice_service import InvoiceService
from billing_kernel.services.notifications import BillingEvents
from billing_kernel.services.payment_service import PaymentService
from billing_kernel.services.recurring_service import RecurringDefinitionService

logger = get_logger("batch.orchestrator")


class BillingOrchestrator:
    """DI container for the billing system.

    Contract:
        - ``from_config()`` builds a fully wired orchestrator from
          ``get_active_config()`` and initializes the database engine.
        - ``invoice_service()`` / ``payment_service()`` /
          ``recurring_service()`` bind kernel services to a session.
        - ``send_invoice()`` queues a manual send through the same transport
          generation uses.
        - ``start()`` / ``stop()`` manage the scan thread and worker pool.

    Non-goals:
        - Does NOT manage session lifecycle for kernel services -- caller
          controls commits via ``session_scope()``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        mailer: InvoiceMailer | None = None,
        settings: BillingSettings | None = None,
        clock: Clock | None = None,
        events: BillingEvents | None = None,
        transport: DeliveryTransport | None = None,
        on_delivery_failure: Callable[[DeliveryFailure], None] | None = None,
        actor_id: UUID | None = None,
    ) -> None:
        if transport is None and mailer is None:
            raise ValueError("Either a mailer or a delivery transport is required")

        self._session_factory = session_factory
        self._settings = settings or BillingSettings()
        self._clock = clock or SystemClock()
        self._events = events or BillingEvents()
        self._actor_id = actor_id or uuid4()

        self._queue: DeliveryQueue | None = None
        if transport is None:
            handler = InvoiceDeliveryHandler(session_factory, mailer, self._clock)
            self._queue = DeliveryQueue(
                handler=handler.send,
                on_delivered=handler.mark_sent,
                clock=self._clock,
                max_workers=self._settings.delivery_workers,
                on_failure=on_delivery_failure,
            )
            transport = self._queue
        self._transport = transport

        self._engine = GenerationEngine(
            session_factory=session_factory,
            transport=transport,
            clock=self._clock,
            settings=self._settings,
            events=self._events,
        )
        self._scheduler = RecurringScanScheduler(
            session_factory=session_factory,
            engine=self._engine,
            clock=self._clock,
            schedule_key=self._settings.scan_schedule_key,
            cron_expression=self._settings.scan_cron,
            tick_interval_seconds=self._settings.scheduler_tick_seconds,
            actor_id=self._actor_id,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        mailer: InvoiceMailer,
        config_path: str | None = None,
        clock: Clock | None = None,
        on_delivery_failure: Callable[[DeliveryFailure], None] | None = None,
    ) -> BillingOrchestrator:
        """Create an orchestrator from the active configuration."""
        configure_logging()
        settings = get_active_config(config_path)
        init_engine_from_url(settings.database_url)
        create_tables()
        return cls(
            session_factory=get_session_factory(),
            mailer=mailer,
            settings=settings,
            clock=clock,
            on_delivery_failure=on_delivery_failure,
        )

    # -------------------------------------------------------------------------
    # Kernel services
    # -------------------------------------------------------------------------

    def invoice_service(self, session: Session) -> InvoiceService:
        return InvoiceService(
            session,
            self._clock,
            events=self._events,
            currency=self._settings.currency,
            number_prefix=self._settings.invoice_number_prefix,
            number_width=self._settings.invoice_number_width,
            default_due_after_days=self._settings.default_due_after_days,
        )

    def payment_service(self, session: Session) -> PaymentService:
        return PaymentService(session, self._clock, self._events)

    def recurring_service(self, session: Session) -> RecurringDefinitionService:
        return RecurringDefinitionService(
            session,
            self._clock,
            default_due_after_days=self._settings.default_due_after_days,
        )

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def send_invoice(
        self,
        invoice_id: UUID,
        subject: str | None = None,
        message: str | None = None,
        owner_id: UUID | None = None,
    ) -> DeliveryHandle:
        """Queue a user-initiated send with optional subject and message overrides.

        Raises:
            InvoiceNotFoundError: Before anything is queued.
        """
        with session_scope(self._session_factory) as session:
            self.invoice_service(session).get_invoice(invoice_id, owner_id)

        handle = self._transport.enqueue_delivery(
            DeliveryTask(
                invoice_id=invoice_id,
                subject=subject,
                message=message,
                auto_send=False,
                max_attempts=self._settings.delivery_max_attempts,
                backoff_seconds=self._settings.delivery_backoff_seconds,
            )
        )
        logger.info(
            "invoice_send_requested",
            extra={"invoice_id": str(invoice_id), "task_id": str(handle.task_id)},
        )
        return handle

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        self._scheduler.start()
        logger.info("billing_orchestrator_started")

    def stop(self, timeout: float = 30.0) -> None:
        self._scheduler.stop(timeout=timeout)
        if self._queue is not None:
            self._queue.join(timeout=timeout)
            self._queue.shutdown()
        logger.info("billing_orchestrator_stopped")

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def events(self) -> BillingEvents:
        return self._events

    @property
    def engine(self) -> GenerationEngine:
        return self._engine

    @property
    def scheduler(self) -> RecurringScanScheduler:
        return self._scheduler

    @property
    def delivery_queue(self) -> DeliveryQueue | None:
        return self._queue

    @property
    def settings(self) -> BillingSettings:
        return self._settings
