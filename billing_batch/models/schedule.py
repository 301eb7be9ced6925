"""
ORM model for the periodic scan schedule.

Contract:
    JobScheduleModel persists the one well-known recurring scan schedule,
    keyed by ``schedule_key`` (UNIQUE) so process start can upsert it
    instead of removing and re-adding.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UTCDateTime


class JobScheduleModel(TrackedBase):
    """Periodic job schedule (cron expression plus run bookkeeping)."""

    __tablename__ = "job_schedules"

    __table_args__ = (Index("ix_job_schedules_next_run", "next_run_at"),)

    schedule_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    last_run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    last_run_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
