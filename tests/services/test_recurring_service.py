"""
Tests for RecurringDefinitionService.

Covers first-occurrence placement, validation, updates that re-place the
schedule, pause/resume without back-billing, the due scan, generation
claims, and the post-generation schedule advance.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest

from billing_kernel.domain.types import LineRef, RecurringFrequency, RecurringStatus
from billing_kernel.exceptions import (
    InvalidRecurringDefinitionError,
    RecurringDefinitionCompletedError,
    RecurringDefinitionNotFoundError,
    ScheduleComputationError,
)
from billing_kernel.services.recurring_service import RecurringDefinitionService, is_past_end


@pytest.fixture
def recurring(session, clock):
    return RecurringDefinitionService(session, clock)


@pytest.fixture
def lines(make_item):
    return [LineRef(make_item("49.00"), 1)]


@pytest.fixture
def define(recurring, lines, owner_id, customer_id, test_actor_id):
    def _define(frequency="MONTHLY", start_date=datetime(2026, 2, 1, 9, 0, tzinfo=UTC), **kwargs):
        return recurring.create_definition(
            owner_id=owner_id,
            customer_id=customer_id,
            name=kwargs.pop("name", "Hosting"),
            frequency=frequency,
            start_date=start_date,
            lines=kwargs.pop("lines", lines),
            actor_id=test_actor_id,
            **kwargs,
        )

    return _define


# =============================================================================
# Creation
# =============================================================================


class TestCreateDefinition:

    def test_future_start_is_first_occurrence(self, define):
        definition = define()
        assert definition.status == RecurringStatus.ACTIVE
        assert definition.frequency == RecurringFrequency.MONTHLY
        assert definition.next_occurrence == datetime(2026, 2, 1, 9, 0, tzinfo=UTC)
        assert definition.generated_count == 0
        assert definition.due_after_days == 30
        assert len(definition.lines) == 1

    def test_past_start_is_one_period_after_now(self, define):
        definition = define(start_date=datetime(2025, 3, 1, tzinfo=UTC))
        assert definition.next_occurrence == datetime(2026, 2, 15, 9, 0, tzinfo=UTC)

    def test_weekly_anchor_aligns_start(self, define):
        # 2026-02-05 is a Thursday; 3 = Wednesday
        definition = define("WEEKLY", datetime(2026, 2, 5, 9, 0, tzinfo=UTC), day_of_week=3)
        assert definition.next_occurrence == datetime(2026, 2, 11, 9, 0, tzinfo=UTC)

    def test_requires_lines(self, define):
        with pytest.raises(InvalidRecurringDefinitionError):
            define(lines=[])

    def test_due_after_days_must_be_positive(self, define):
        with pytest.raises(InvalidRecurringDefinitionError):
            define(due_after_days=0)

    def test_end_before_start_rejected(self, define):
        with pytest.raises(InvalidRecurringDefinitionError):
            define(end_date=date(2026, 1, 31))

    def test_first_occurrence_after_end_rejected(self, define):
        # Past start: first occurrence is 2026-02-15, after the end date.
        with pytest.raises(InvalidRecurringDefinitionError):
            define(start_date=datetime(2025, 3, 1, tzinfo=UTC), end_date=date(2026, 2, 1))

    def test_bad_anchor_rejected(self, define):
        with pytest.raises(ScheduleComputationError):
            define("WEEKLY", day_of_week=7)

    def test_unknown_frequency_rejected(self, define):
        with pytest.raises(ValueError):
            define("FORTNIGHTLY")


# =============================================================================
# Reads and updates
# =============================================================================


class TestReadsAndUpdates:

    def test_get_with_wrong_owner(self, recurring, define):
        definition = define()
        with pytest.raises(RecurringDefinitionNotFoundError):
            recurring.get_definition(definition.definition_id, owner_id=uuid4())

    def test_list_by_status(self, recurring, define, owner_id, test_actor_id):
        active = define(name="A")
        paused = define(name="B")
        recurring.pause(paused.definition_id, test_actor_id)

        listed = recurring.list_definitions(owner_id, status="PAUSED")
        assert [d.definition_id for d in listed] == [paused.definition_id]
        assert len(recurring.list_definitions(owner_id)) == 2
        assert active.definition_id in {d.definition_id for d in recurring.list_definitions(owner_id)}

    def test_non_schedule_update_keeps_next_occurrence(self, recurring, define, test_actor_id):
        definition = define()
        updated = recurring.update_definition(
            definition.definition_id, test_actor_id, name="Premium hosting", notes="annual",
        )
        assert updated.name == "Premium hosting"
        assert updated.notes == "annual"
        assert updated.next_occurrence == definition.next_occurrence

    def test_schedule_update_replaces_next_occurrence(self, recurring, define, test_actor_id):
        definition = define()
        updated = recurring.update_definition(
            definition.definition_id, test_actor_id, day_of_month=20,
        )
        assert updated.next_occurrence == datetime(2026, 2, 20, 9, 0, tzinfo=UTC)

    def test_update_lines(self, recurring, define, make_item, test_actor_id):
        definition = define()
        new_lines = [LineRef(make_item("10"), 2), LineRef(make_item("5"), 1)]
        updated = recurring.update_definition(
            definition.definition_id, test_actor_id, lines=new_lines,
        )
        assert updated.lines == tuple(new_lines)

    def test_unknown_field_rejected(self, recurring, define, test_actor_id):
        definition = define()
        with pytest.raises(InvalidRecurringDefinitionError):
            recurring.update_definition(definition.definition_id, test_actor_id, status="PAUSED")

    def test_delete(self, recurring, define, test_actor_id):
        definition = define()
        recurring.delete_definition(definition.definition_id, test_actor_id)
        with pytest.raises(RecurringDefinitionNotFoundError):
            recurring.get_definition(definition.definition_id)


# =============================================================================
# Pause / resume
# =============================================================================


class TestPauseResume:

    def test_resume_does_not_back_bill(self, recurring, define, clock, test_actor_id):
        definition = define()
        recurring.pause(definition.definition_id, test_actor_id)

        clock.advance_days(60)  # 2026-03-16 09:00
        resumed = recurring.resume(definition.definition_id, test_actor_id)

        assert resumed.status == RecurringStatus.ACTIVE
        assert resumed.next_occurrence == datetime(2026, 4, 16, 9, 0, tzinfo=UTC)

    def test_resume_before_next_occurrence_keeps_it(self, recurring, define, test_actor_id):
        definition = define()
        recurring.pause(definition.definition_id, test_actor_id)
        resumed = recurring.resume(definition.definition_id, test_actor_id)
        assert resumed.next_occurrence == definition.next_occurrence

    def test_resume_of_active_definition_keeps_due_occurrence(
        self, recurring, define, clock, test_actor_id,
    ):
        definition = define()
        clock.advance_days(26)  # 2026-02-10 09:00, Feb 1 still unbilled

        resumed = recurring.resume(definition.definition_id, test_actor_id)

        assert resumed.status == RecurringStatus.ACTIVE
        assert resumed.next_occurrence == datetime(2026, 2, 1, 9, 0, tzinfo=UTC)

    def test_resume_past_end_completes(self, recurring, define, clock, test_actor_id):
        definition = define("DAILY", datetime(2026, 1, 20, 9, 0, tzinfo=UTC), end_date=date(2026, 1, 25))
        recurring.pause(definition.definition_id, test_actor_id)

        clock.advance_days(30)
        resumed = recurring.resume(definition.definition_id, test_actor_id)

        assert resumed.status == RecurringStatus.COMPLETED

    def test_completed_is_terminal(self, recurring, define, clock, test_actor_id):
        definition = define("DAILY", datetime(2026, 1, 20, 9, 0, tzinfo=UTC), end_date=date(2026, 1, 25))
        recurring.pause(definition.definition_id, test_actor_id)
        clock.advance_days(30)
        recurring.resume(definition.definition_id, test_actor_id)

        with pytest.raises(RecurringDefinitionCompletedError):
            recurring.resume(definition.definition_id, test_actor_id)
        with pytest.raises(RecurringDefinitionCompletedError):
            recurring.pause(definition.definition_id, test_actor_id)
        with pytest.raises(RecurringDefinitionCompletedError):
            recurring.update_definition(definition.definition_id, test_actor_id, name="x")


# =============================================================================
# Generation support
# =============================================================================


class TestFindDue:

    def test_only_active_and_due(self, recurring, define, test_actor_id):
        first = define("DAILY", datetime(2026, 1, 16, 9, 0, tzinfo=UTC), name="first")
        second = define("DAILY", datetime(2026, 1, 17, 9, 0, tzinfo=UTC), name="second")
        paused = define("DAILY", datetime(2026, 1, 16, 9, 0, tzinfo=UTC), name="paused")
        recurring.pause(paused.definition_id, test_actor_id)

        due_16 = recurring.find_due(datetime(2026, 1, 16, 9, 0, tzinfo=UTC))
        due_17 = recurring.find_due(datetime(2026, 1, 17, 9, 0, tzinfo=UTC))

        assert [d.definition_id for d in due_16] == [first.definition_id]
        assert [d.definition_id for d in due_17] == [first.definition_id, second.definition_id]
        assert len(recurring.find_due(datetime(2026, 1, 17, 9, 0, tzinfo=UTC), limit=1)) == 1

    def test_not_due_before_next_occurrence(self, recurring, define):
        define("DAILY", datetime(2026, 1, 16, 9, 0, tzinfo=UTC))
        assert recurring.find_due(datetime(2026, 1, 16, 8, 59, tzinfo=UTC)) == []


class TestClaims:

    def test_second_claim_loses(self, recurring, define, clock):
        definition = define()
        at = definition.next_occurrence

        token = recurring.claim(definition.definition_id, at, clock.now(), ttl_seconds=900)
        assert token is not None
        assert recurring.claim(definition.definition_id, at, clock.now(), ttl_seconds=900) is None

    def test_release_allows_reclaim(self, recurring, define, clock):
        definition = define()
        at = definition.next_occurrence

        token = recurring.claim(definition.definition_id, at, clock.now(), 900)
        assert recurring.release_claim(definition.definition_id, token)
        assert not recurring.release_claim(definition.definition_id, token)
        assert recurring.claim(definition.definition_id, at, clock.now(), 900) is not None

    def test_stale_claim_can_be_taken_over(self, recurring, define, clock):
        definition = define()
        at = definition.next_occurrence

        recurring.claim(definition.definition_id, at, clock.now(), 900)
        later = clock.now() + timedelta(seconds=901)
        assert recurring.claim(definition.definition_id, at, later, 900) is not None

    def test_claim_requires_expected_occurrence(self, recurring, define, clock):
        definition = define()
        moved = definition.next_occurrence + timedelta(days=1)
        assert recurring.claim(definition.definition_id, moved, clock.now(), 900) is None


class TestMarkGenerated:

    def test_day_31_advances_to_end_of_february(self, recurring, define, clock):
        definition = define(start_date=datetime(2026, 1, 31, 9, 0, tzinfo=UTC), day_of_month=31)
        assert definition.next_occurrence == datetime(2026, 1, 31, 9, 0, tzinfo=UTC)

        model = recurring.lock_definition(definition.definition_id)
        advanced = recurring.mark_generated(model, clock.now())

        assert advanced.next_occurrence == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)
        assert advanced.generated_count == 1
        assert advanced.last_generated_at == clock.now()

    def test_advancing_past_end_completes(self, recurring, define, clock):
        definition = define(start_date=datetime(2026, 3, 1, tzinfo=UTC), end_date=date(2026, 3, 1))

        model = recurring.lock_definition(definition.definition_id)
        advanced = recurring.mark_generated(model, clock.now())

        assert advanced.next_occurrence == datetime(2026, 4, 1, tzinfo=UTC)
        assert advanced.status == RecurringStatus.COMPLETED
        assert recurring.find_due(datetime(2027, 1, 1, tzinfo=UTC)) == []


class TestIsPastEnd:

    def test_end_date_is_inclusive(self):
        assert not is_past_end(datetime(2026, 3, 1, 23, 59, tzinfo=UTC), date(2026, 3, 1))
        assert is_past_end(datetime(2026, 3, 2, tzinfo=UTC), date(2026, 3, 1))
        assert not is_past_end(datetime(2099, 1, 1, tzinfo=UTC), None)
