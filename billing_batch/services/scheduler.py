"""
RecurringScanScheduler -- in-process periodic trigger for invoice generation.

Contract:
    ``ensure_schedule_registered()`` upserts the single scan schedule row by
    its key.  ``tick()`` fires the generation engine when the schedule is
    due and records the run.  ``start()`` / ``stop()`` run ticks on a
    background thread.

Architecture: billing_batch/services.  Uses billing_batch.domain.schedule
    for pure cron evaluation and GenerationEngine for the work.

Invariants enforced:
    - Registration is idempotent: an existing row is updated in place,
      never removed and re-added.
    - Overlapping ticks in one process are skipped (non-blocking run lock).
      Overlapping processes are handled by per-definition claims.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_batch.domain.schedule import next_cron_run, should_fire
from billing_batch.domain.types import GenerationRunResult, GenerationRunStatus
from billing_batch.models.schedule import JobScheduleModel
from billing_batch.services.generation import GenerationEngine
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")

DEFAULT_SCHEDULE_KEY = "recurring-invoices.generate"
DEFAULT_SCAN_CRON = "0 * * * *"


class RecurringScanScheduler:
    """Polling scheduler for the recurring invoice scan.

    Non-goals:
        - NOT a distributed scheduler (no leader election).
        - Does NOT handle timezone conversions (expects UTC).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        engine: GenerationEngine,
        clock: Clock | None = None,
        schedule_key: str = DEFAULT_SCHEDULE_KEY,
        cron_expression: str = DEFAULT_SCAN_CRON,
        tick_interval_seconds: int = 60,
        actor_id: UUID | None = None,
    ):
        self._session_factory = session_factory
        self._engine = engine
        self._clock = clock or SystemClock()
        self._schedule_key = schedule_key
        self._cron = cron_expression
        self._tick_interval = tick_interval_seconds
        self._actor_id = actor_id or uuid4()
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def ensure_schedule_registered(self) -> None:
        """Insert or update the scan schedule row keyed by ``schedule_key``."""
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            schedule = self._load(session, lock=True)
            if schedule is None:
                savepoint = session.begin_nested()
                try:
                    session.add(
                        JobScheduleModel(
                            schedule_key=self._schedule_key,
                            cron_expression=self._cron,
                            next_run_at=next_cron_run(self._cron, now),
                            is_active=True,
                            created_by_id=self._actor_id,
                        )
                    )
                    session.flush()
                    savepoint.commit()
                    logger.info(
                        "scan_schedule_registered",
                        extra={"schedule_key": self._schedule_key, "cron": self._cron},
                    )
                    return
                except IntegrityError:
                    savepoint.rollback()
                    schedule = self._load(session, lock=True)
                    if schedule is None:
                        raise

            if schedule.cron_expression != self._cron or not schedule.is_active:
                schedule.cron_expression = self._cron
                schedule.is_active = True
                schedule.next_run_at = next_cron_run(self._cron, now)
                schedule.updated_by_id = self._actor_id
                logger.info(
                    "scan_schedule_updated",
                    extra={"schedule_key": self._schedule_key, "cron": self._cron},
                )

    def _load(self, session: Session, lock: bool = False) -> JobScheduleModel | None:
        stmt = select(JobScheduleModel).where(
            JobScheduleModel.schedule_key == self._schedule_key
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def tick(self) -> GenerationRunResult | None:
        """Run the scan if due (public for testing).

        Returns the run result, or None when not due or a run is already
        in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("scan_tick_overlap_skipped")
            return None
        try:
            now = self._clock.now()
            with session_scope(self._session_factory) as session:
                schedule = self._load(session)
                due = schedule is not None and should_fire(
                    schedule.is_active, schedule.next_run_at, now,
                )
            if not due:
                return None
            return self._run_and_record(now)
        except Exception:
            logger.exception("scan_tick_failed")
            return None
        finally:
            self._run_lock.release()

    def trigger_now(self) -> GenerationRunResult | None:
        """Run the scan immediately, ignoring ``next_run_at``.

        Returns None if a run is already in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("scan_trigger_overlap_skipped")
            return None
        try:
            return self._run_and_record(self._clock.now())
        finally:
            self._run_lock.release()

    def _run_and_record(self, now: datetime) -> GenerationRunResult:
        try:
            result = self._engine.run()
            status = result.status.value
        except Exception:
            logger.exception("scan_run_failed")
            result = None
            status = GenerationRunStatus.FAILED.value

        with session_scope(self._session_factory) as session:
            schedule = self._load(session, lock=True)
            if schedule is not None:
                schedule.last_run_at = now
                schedule.last_run_status = status
                schedule.next_run_at = next_cron_run(schedule.cron_expression, now)
                logger.info(
                    "scan_schedule_fired",
                    extra={
                        "schedule_key": self._schedule_key,
                        "status": status,
                        "next_run_at": schedule.next_run_at,
                    },
                )

        if result is None:
            raise RuntimeError("Recurring generation run failed")
        return result

    # -------------------------------------------------------------------------
    # Background thread
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Register the schedule and start ticking in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self.ensure_schedule_registered()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="recurring-scan-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
