"""
RecurringDefinitionService -- repository for recurring billing definitions.

Responsibility:
    Create, update, pause/resume, and delete recurring definitions; find
    those due for generation; and manage the per-definition generation
    claim and post-generation schedule advance used by the generation
    engine.

Architecture position:
    Kernel > Services.  Uses the pure schedule calculator in
    billing_batch.domain.schedule for occurrence placement.

Invariants enforced:
    - next_occurrence is placed by initial_occurrence() on create and on any
      schedule-field update, and advanced only by mark_generated().
    - COMPLETED is terminal: no resume, no update.
    - claim() is a single conditional UPDATE; at most one caller wins a
      given (definition, next_occurrence) until the claim is released or
      its TTL expires.
    - A failed generation never touches the definition (release_claim only
      clears the claim columns).

Failure modes:
    - RecurringDefinitionNotFoundError.
    - InvalidRecurringDefinitionError for empty lines, bad due days,
      or an end date before the start date.
    - RecurringDefinitionCompletedError on resume/update of COMPLETED.
    - ScheduleComputationError for bad anchors or frequency.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from billing_batch.domain.schedule import initial_occurrence, next_occurrence
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.types import (
    LineRef,
    RecurringDefinition,
    RecurringFrequency,
    RecurringStatus,
)
from billing_kernel.exceptions import (
    InvalidRecurringDefinitionError,
    RecurringDefinitionCompletedError,
    RecurringDefinitionNotFoundError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.recurring import RecurringDefinitionModel, RecurringLineModel

logger = get_logger("services.recurring")

_UNSET = object()

_SCHEDULE_FIELDS = ("frequency", "start_date", "day_of_month", "day_of_week")
_UPDATABLE_FIELDS = _SCHEDULE_FIELDS + (
    "name",
    "customer_id",
    "end_date",
    "due_after_days",
    "tax_id",
    "notes",
)


def _validate(
    lines: Sequence[LineRef],
    due_after_days: int,
    start_date: datetime,
    end_date: date | None,
) -> None:
    if not lines:
        raise InvalidRecurringDefinitionError("at least one line is required")
    if due_after_days < 1:
        raise InvalidRecurringDefinitionError(
            f"due_after_days must be >= 1, got {due_after_days}"
        )
    if end_date is not None and end_date < start_date.date():
        raise InvalidRecurringDefinitionError(
            f"end_date {end_date} is before start_date {start_date.date()}"
        )


def _line_models(lines: Sequence[LineRef], actor_id: UUID) -> list[RecurringLineModel]:
    return [
        RecurringLineModel(
            item_id=line.item_id,
            quantity=line.quantity,
            position=position,
            created_by_id=actor_id,
        )
        for position, line in enumerate(lines)
    ]


def is_past_end(occurrence: datetime, end_date: date | None) -> bool:
    """True when ``occurrence`` falls after the inclusive ``end_date``."""
    return end_date is not None and occurrence.date() > end_date


class RecurringDefinitionService:
    """Recurring definition repository plus generation claim management."""

    def __init__(self, session: Session, clock: Clock, default_due_after_days: int = 30):
        self._session = session
        self._clock = clock
        self._default_due_after_days = default_due_after_days

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_definition(
        self,
        owner_id: UUID,
        customer_id: UUID,
        name: str,
        frequency: RecurringFrequency | str,
        start_date: datetime,
        lines: Sequence[LineRef],
        actor_id: UUID,
        end_date: date | None = None,
        day_of_month: int | None = None,
        day_of_week: int | None = None,
        due_after_days: int | None = None,
        tax_id: UUID | None = None,
        notes: str | None = None,
    ) -> RecurringDefinition:
        """Create an ACTIVE definition with its first occurrence placed."""
        frequency = RecurringFrequency(frequency)
        due_days = self._default_due_after_days if due_after_days is None else due_after_days
        _validate(lines, due_days, start_date, end_date)

        first = initial_occurrence(
            frequency, start_date, self._clock.now(), day_of_month, day_of_week,
        )
        if is_past_end(first, end_date):
            raise InvalidRecurringDefinitionError(
                f"first occurrence {first.date()} is after end_date {end_date}"
            )

        definition = RecurringDefinitionModel(
            owner_id=owner_id,
            customer_id=customer_id,
            name=name,
            frequency=frequency.value,
            start_date=start_date,
            end_date=end_date,
            day_of_month=day_of_month,
            day_of_week=day_of_week,
            due_after_days=due_days,
            tax_id=tax_id,
            notes=notes,
            next_occurrence=first,
            generated_count=0,
            status=RecurringStatus.ACTIVE.value,
            created_by_id=actor_id,
        )
        definition.lines = _line_models(lines, actor_id)
        self._session.add(definition)
        self._session.flush()

        logger.info(
            "recurring_definition_created",
            extra={
                "definition_id": str(definition.id),
                "frequency": frequency.value,
                "next_occurrence": first,
            },
        )
        return definition.to_dto()

    def _load(
        self, definition_id: UUID, owner_id: UUID | None = None, lock: bool = False,
    ) -> RecurringDefinitionModel:
        stmt = select(RecurringDefinitionModel).where(
            RecurringDefinitionModel.id == definition_id
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        definition = self._session.execute(stmt).scalar_one_or_none()
        if definition is None or (owner_id is not None and definition.owner_id != owner_id):
            raise RecurringDefinitionNotFoundError(str(definition_id))
        return definition

    def lock_definition(self, definition_id: UUID) -> RecurringDefinitionModel:
        return self._load(definition_id, lock=True)

    def get_definition(
        self, definition_id: UUID, owner_id: UUID | None = None,
    ) -> RecurringDefinition:
        return self._load(definition_id, owner_id).to_dto()

    def list_definitions(
        self, owner_id: UUID, status: RecurringStatus | str | None = None,
    ) -> list[RecurringDefinition]:
        stmt = select(RecurringDefinitionModel).where(
            RecurringDefinitionModel.owner_id == owner_id
        )
        if status is not None:
            stmt = stmt.where(
                RecurringDefinitionModel.status == RecurringStatus(status).value
            )
        rows = self._session.execute(
            stmt.order_by(RecurringDefinitionModel.next_occurrence)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def update_definition(
        self,
        definition_id: UUID,
        actor_id: UUID,
        owner_id: UUID | None = None,
        lines: Sequence[LineRef] | None = None,
        **changes,
    ) -> RecurringDefinition:
        """
        Apply field changes; a change to any schedule field re-places
        next_occurrence from the (possibly new) start date.

        Accepted fields: frequency, start_date, day_of_month, day_of_week,
        name, customer_id, end_date, due_after_days, tax_id, notes.
        """
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise InvalidRecurringDefinitionError(
                f"unknown fields: {', '.join(sorted(unknown))}"
            )

        definition = self._load(definition_id, owner_id, lock=True)
        if definition.status == RecurringStatus.COMPLETED.value:
            raise RecurringDefinitionCompletedError(str(definition_id))

        if "frequency" in changes:
            changes["frequency"] = RecurringFrequency(changes["frequency"]).value
        merged = {name: getattr(definition, name) for name in _UPDATABLE_FIELDS}
        merged.update(changes)
        new_lines = list(lines) if lines is not None else [
            line.to_dto() for line in definition.lines
        ]
        _validate(new_lines, merged["due_after_days"], merged["start_date"], merged["end_date"])

        next_at = definition.next_occurrence
        if any(
            name in changes and changes[name] != getattr(definition, name)
            for name in _SCHEDULE_FIELDS
        ):
            next_at = initial_occurrence(
                merged["frequency"],
                merged["start_date"],
                self._clock.now(),
                merged["day_of_month"],
                merged["day_of_week"],
            )
        if is_past_end(next_at, merged["end_date"]):
            raise InvalidRecurringDefinitionError(
                f"next occurrence {next_at.date()} is after end_date {merged['end_date']}"
            )

        for name, value in changes.items():
            setattr(definition, name, value)
        if lines is not None:
            definition.lines = _line_models(new_lines, actor_id)
        definition.next_occurrence = next_at
        definition.updated_by_id = actor_id
        self._session.flush()

        logger.info(
            "recurring_definition_updated",
            extra={
                "definition_id": str(definition_id),
                "changed_fields": sorted(changes) + (["lines"] if lines is not None else []),
                "next_occurrence": next_at,
            },
        )
        return definition.to_dto()

    def pause(self, definition_id: UUID, actor_id: UUID) -> RecurringDefinition:
        """ACTIVE -> PAUSED.  Only affects future scans."""
        definition = self._load(definition_id, lock=True)
        if definition.status == RecurringStatus.COMPLETED.value:
            raise RecurringDefinitionCompletedError(str(definition_id))
        definition.status = RecurringStatus.PAUSED.value
        definition.updated_by_id = actor_id
        self._session.flush()
        logger.info("recurring_definition_paused", extra={"definition_id": str(definition_id)})
        return definition.to_dto()

    def resume(self, definition_id: UUID, actor_id: UUID) -> RecurringDefinition:
        """
        PAUSED -> ACTIVE.

        If next_occurrence fell behind while paused it is re-placed one
        period after now, so the missed periods are not back-billed.
        An ACTIVE definition is returned unchanged; only generation moves
        its next_occurrence.
        """
        definition = self._load(definition_id, lock=True)
        if definition.status == RecurringStatus.COMPLETED.value:
            raise RecurringDefinitionCompletedError(str(definition_id))
        if definition.status == RecurringStatus.ACTIVE.value:
            logger.debug(
                "recurring_definition_already_active",
                extra={"definition_id": str(definition_id)},
            )
            return definition.to_dto()

        now = self._clock.now()
        if definition.next_occurrence < now:
            definition.next_occurrence = initial_occurrence(
                definition.frequency,
                definition.next_occurrence,
                now,
                definition.day_of_month,
                definition.day_of_week,
            )
        if is_past_end(definition.next_occurrence, definition.end_date):
            definition.status = RecurringStatus.COMPLETED.value
        else:
            definition.status = RecurringStatus.ACTIVE.value
        definition.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "recurring_definition_resumed",
            extra={
                "definition_id": str(definition_id),
                "status": definition.status,
                "next_occurrence": definition.next_occurrence,
            },
        )
        return definition.to_dto()

    def delete_definition(
        self, definition_id: UUID, actor_id: UUID, owner_id: UUID | None = None,
    ) -> None:
        """Delete a definition.  Invoices already generated are kept."""
        definition = self._load(definition_id, owner_id, lock=True)
        self._session.delete(definition)
        self._session.flush()
        logger.info(
            "recurring_definition_deleted",
            extra={"definition_id": str(definition_id), "actor_id": str(actor_id)},
        )

    # ------------------------------------------------------------------
    # Generation support
    # ------------------------------------------------------------------

    def find_due(self, now: datetime, limit: int | None = None) -> list[RecurringDefinition]:
        """ACTIVE definitions with next_occurrence <= now and end date not passed."""
        stmt = (
            select(RecurringDefinitionModel)
            .where(RecurringDefinitionModel.status == RecurringStatus.ACTIVE.value)
            .where(RecurringDefinitionModel.next_occurrence <= now)
            .where(
                or_(
                    RecurringDefinitionModel.end_date.is_(None),
                    RecurringDefinitionModel.end_date >= now.date(),
                )
            )
            .order_by(RecurringDefinitionModel.next_occurrence, RecurringDefinitionModel.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [row.to_dto() for row in self._session.execute(stmt).scalars().all()]

    def claim(
        self,
        definition_id: UUID,
        expected_next_occurrence: datetime,
        now: datetime,
        ttl_seconds: int,
    ) -> str | None:
        """
        Atomically claim a definition for generation.

        Succeeds only if the definition is still ACTIVE, still at
        ``expected_next_occurrence``, and holds no live claim.  Returns the
        claim token, or None if another worker got there first.
        """
        token = str(uuid4())
        stale_before = now - timedelta(seconds=ttl_seconds)
        result = self._session.execute(
            update(RecurringDefinitionModel)
            .where(
                and_(
                    RecurringDefinitionModel.id == definition_id,
                    RecurringDefinitionModel.status == RecurringStatus.ACTIVE.value,
                    RecurringDefinitionModel.next_occurrence == expected_next_occurrence,
                    or_(
                        RecurringDefinitionModel.claim_token.is_(None),
                        RecurringDefinitionModel.claimed_at < stale_before,
                    ),
                )
            )
            .values(claim_token=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "recurring_claim_lost",
                extra={"definition_id": str(definition_id)},
            )
            return None
        logger.debug(
            "recurring_claimed",
            extra={"definition_id": str(definition_id), "claim_token": token},
        )
        return token

    def release_claim(self, definition_id: UUID, token: str) -> bool:
        """Clear our claim.  Returns False if it was no longer ours."""
        result = self._session.execute(
            update(RecurringDefinitionModel)
            .where(
                and_(
                    RecurringDefinitionModel.id == definition_id,
                    RecurringDefinitionModel.claim_token == token,
                )
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_generated(
        self, definition: RecurringDefinitionModel, generated_at: datetime,
    ) -> RecurringDefinition:
        """
        Advance a locked definition after a successful generation.

        Steps one period from the current next_occurrence, bumps
        generated_count, stamps last_generated_at, clears the claim, and
        moves to COMPLETED once the advanced occurrence passes end_date.
        """
        advanced = next_occurrence(
            definition.frequency,
            definition.next_occurrence,
            definition.day_of_month,
            definition.day_of_week,
        )
        definition.next_occurrence = advanced
        definition.generated_count = definition.generated_count + 1
        definition.last_generated_at = generated_at
        definition.claim_token = None
        definition.claimed_at = None
        if is_past_end(advanced, definition.end_date):
            definition.status = RecurringStatus.COMPLETED.value
        self._session.flush()

        logger.info(
            "recurring_schedule_advanced",
            extra={
                "definition_id": str(definition.id),
                "next_occurrence": advanced,
                "generated_count": definition.generated_count,
                "status": definition.status,
            },
        )
        return definition.to_dto()
