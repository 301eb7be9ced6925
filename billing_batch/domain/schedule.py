"""
Pure schedule evaluation functions.

Contract:
    ``next_occurrence`` / ``initial_occurrence`` compute when a recurring
    billing definition is next due.  ``parse_cron`` / ``next_cron_run`` /
    ``should_fire`` drive the periodic scan schedule.  All are PURE -- no
    I/O, no side effects, and every timestamp comes from the caller.

Architecture: billing_batch/domain.  ZERO I/O.  Imported by the kernel's
    recurring definition service for placement on create/update.

Invariants enforced:
    - next_occurrence(...) is strictly after its anchor and never None.
    - Time of day is preserved across every step.
    - MONTHLY day-of-month anchors clamp to the last day of short months.
    - Day-of-week follows the 0=Sunday convention.

Failure modes:
    - ScheduleComputationError for an unknown frequency or an out-of-range
      day_of_month (1-31) / day_of_week (0-6).
    - ValueError for a malformed cron expression.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from billing_kernel.domain.types import RecurringFrequency
from billing_kernel.exceptions import ScheduleComputationError

DEFAULT_DAY_OF_WEEK = 1  # Monday


# =============================================================================
# Recurring occurrence calculator
# =============================================================================


def sunday_based_weekday(dt: datetime) -> int:
    """Weekday with 0=Sunday ... 6=Saturday (Python uses 0=Monday)."""
    return (dt.weekday() + 1) % 7


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _coerce_frequency(frequency: RecurringFrequency | str) -> RecurringFrequency:
    try:
        return RecurringFrequency(frequency)
    except ValueError:
        raise ScheduleComputationError(str(frequency), "unknown frequency") from None


def _validate_anchors(
    frequency: RecurringFrequency,
    day_of_month: int | None,
    day_of_week: int | None,
) -> None:
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise ScheduleComputationError(
            frequency.value, f"day_of_month {day_of_month} outside 1-31",
        )
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise ScheduleComputationError(
            frequency.value, f"day_of_week {day_of_week} outside 0-6",
        )


def _clamp_day(dt: datetime, day_of_month: int) -> datetime:
    return dt.replace(day=min(day_of_month, _days_in_month(dt.year, dt.month)))


def next_occurrence(
    frequency: RecurringFrequency | str,
    anchor: datetime,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> datetime:
    """Step exactly one period forward from ``anchor``.

    - DAILY: +1 day.
    - WEEKLY: next date whose weekday is ``day_of_week`` (default Monday),
      strictly after the anchor; the same weekday means +7 days.
    - MONTHLY: +1 calendar month, day clamped to
      ``min(day_of_month, days_in_month)`` when an anchor is set.
    - YEARLY: +1 calendar year (Feb 29 lands on Feb 28).
    """
    freq = _coerce_frequency(frequency)
    _validate_anchors(freq, day_of_month, day_of_week)

    if freq == RecurringFrequency.DAILY:
        return anchor + timedelta(days=1)

    if freq == RecurringFrequency.WEEKLY:
        target = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        days = (target - sunday_based_weekday(anchor) + 7) % 7 or 7
        return anchor + timedelta(days=days)

    if freq == RecurringFrequency.MONTHLY:
        stepped = anchor + relativedelta(months=1)
        if day_of_month is not None:
            return _clamp_day(stepped, day_of_month)
        return stepped

    return anchor + relativedelta(years=1)


def _align_forward(
    freq: RecurringFrequency,
    start: datetime,
    day_of_month: int | None,
    day_of_week: int | None,
) -> datetime:
    """Nearest date on or after ``start`` that satisfies the anchor."""
    if freq == RecurringFrequency.WEEKLY:
        target = DEFAULT_DAY_OF_WEEK if day_of_week is None else day_of_week
        return start + timedelta(days=(target - sunday_based_weekday(start) + 7) % 7)

    if freq == RecurringFrequency.MONTHLY and day_of_month is not None:
        candidate = _clamp_day(start, day_of_month)
        if candidate >= start:
            return candidate
        return _clamp_day(start + relativedelta(months=1, day=1), day_of_month)

    return start


def initial_occurrence(
    frequency: RecurringFrequency | str,
    start: datetime,
    now: datetime,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> datetime:
    """Place the first occurrence of a new or rescheduled definition.

    A future ``start`` is moved forward to the nearest date satisfying the
    anchor (never backward past ``start``).  Otherwise the first occurrence
    is one period after ``now``.
    """
    freq = _coerce_frequency(frequency)
    _validate_anchors(freq, day_of_month, day_of_week)

    if start > now:
        return _align_forward(freq, start, day_of_month, day_of_week)
    return next_occurrence(freq, now, day_of_month, day_of_week)


# =============================================================================
# CronSpec (lightweight cron parser for the scan schedule)
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression (minute hour day_of_month month day_of_week).

    Each field is a frozenset of valid integer values.
    Supports: *, values, ranges (1-5), steps (*/5, 1-10/2).
    """

    minutes: frozenset[int] = field(default_factory=lambda: frozenset(range(60)))
    hours: frozenset[int] = field(default_factory=lambda: frozenset(range(24)))
    days_of_month: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 32)))
    months: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 13)))
    days_of_week: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))


def _parse_range(text: str, min_val: int, max_val: int) -> tuple[int, int]:
    if text == "*":
        return min_val, max_val
    if "-" in text:
        s, e = text.split("-", 1)
        start, end = int(s), int(e)
        if start > end:
            raise ValueError(f"Range start > end: {start}-{end}")
    else:
        start = end = int(text)
    if start < min_val or end > max_val:
        raise ValueError(f"Value outside range [{min_val}, {max_val}]: {text}")
    return start, end


def _parse_cron_field(field_str: str, min_val: int, max_val: int) -> frozenset[int]:
    """Parse a single cron field into a frozenset of valid values.

    Raises:
        ValueError: If the field is syntactically invalid or values out of range.
    """
    values: set[int] = set()

    for part in field_str.split(","):
        part = part.strip()
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = int(step_str)
            if step <= 0:
                raise ValueError(f"Step must be positive: {step}")
            if part != "*" and "-" not in part:
                start, _ = _parse_range(part, min_val, max_val)
                values.update(range(start, max_val + 1, step))
                continue
        start, end = _parse_range(part, min_val, max_val)
        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a 5-field cron expression into a CronSpec.

    Format: ``minute hour day_of_month month day_of_week``

    Raises:
        ValueError: If expression is malformed.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'"
        )

    return CronSpec(
        minutes=_parse_cron_field(parts[0], 0, 59),
        hours=_parse_cron_field(parts[1], 0, 23),
        days_of_month=_parse_cron_field(parts[2], 1, 31),
        months=_parse_cron_field(parts[3], 1, 12),
        days_of_week=_parse_cron_field(parts[4], 0, 6),
    )


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """Check if a datetime matches a cron spec (0=Sunday weekdays)."""
    return (
        dt.minute in spec.minutes
        and dt.hour in spec.hours
        and dt.day in spec.days_of_month
        and dt.month in spec.months
        and sunday_based_weekday(dt) in spec.days_of_week
    )


def next_cron_run(expression: str, after: datetime) -> datetime:
    """Next minute strictly after ``after`` matching ``expression``.

    Scans minute-by-minute up to 366 days.

    Raises:
        ValueError: If the expression is malformed or never matches.
    """
    spec = parse_cron(expression)
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    max_iterations = 366 * 24 * 60

    for _ in range(max_iterations):
        if matches_cron(spec, candidate):
            return candidate
        candidate += timedelta(minutes=1)

    raise ValueError(f"No cron match found within 366 days after {after}")


def should_fire(is_active: bool, next_run_at: datetime | None, as_of: datetime) -> bool:
    """A schedule fires when active and ``as_of`` has reached ``next_run_at``.

    A schedule with no ``next_run_at`` yet fires immediately.
    """
    if not is_active:
        return False
    return next_run_at is None or as_of >= next_run_at
