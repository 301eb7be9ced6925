"""
billing_batch.domain.types -- Pure frozen dataclasses for the batch layer.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class GenerationRunStatus(str, Enum):
    """Run-level outcome of one generation scan."""

    COMPLETED = "completed"  # Every item succeeded or was skipped
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # Items were attempted and none succeeded


class GenerationItemStatus(str, Enum):
    """Per-definition outcome within a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Claim lost, or occurrence already invoiced


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


# =============================================================================
# Generation DTOs
# =============================================================================


@dataclass(frozen=True)
class GenerationItemResult:
    """Result of processing one recurring definition."""

    definition_id: UUID
    status: GenerationItemStatus
    occurrence: datetime | None = None
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class GenerationRunResult:
    """Immutable result of a generation run.

    Returned by ``GenerationEngine.run()``.
    """

    run_id: UUID
    status: GenerationRunStatus
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[GenerationItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0


# =============================================================================
# Delivery DTOs
# =============================================================================


@dataclass(frozen=True)
class DeliveryTask:
    """A request to email one invoice.  Lives only inside the delivery queue."""

    invoice_id: UUID
    subject: str | None = None
    message: str | None = None
    auto_send: bool = True  # False for user-initiated sends
    max_attempts: int = 3
    backoff_seconds: float = 5.0


@dataclass(frozen=True)
class DeliveryHandle:
    """Returned by ``enqueue``; identifies the accepted task."""

    task_id: UUID
    invoice_id: UUID
    enqueued_at: datetime


@dataclass(frozen=True)
class DeliveryOutcome:
    """Final result of one delivery task after all attempts."""

    task_id: UUID
    invoice_id: UUID
    status: DeliveryStatus
    attempts: int
    error_message: str | None = None
    completed_at: datetime | None = None
