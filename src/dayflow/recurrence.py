"""Recurring-task expansion.

Turns a template task into the concrete occurrences that fall inside a date
window. Expansion is a pure function of its arguments: the caller supplies
the window and the timezone, nothing here reads the clock.

Each pattern jumps straight to the first period that can intersect the
window, so the cost depends on the window and ``max_instances``, never on how
far in the past the template's anchor lies.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterator
from datetime import MAXYEAR, UTC, date, datetime, timedelta, tzinfo

from dayflow.errors import RecurrenceConfigError
from dayflow.models import RecurrencePattern, RecurringConfig, Task, TaskOccurrence, TaskStatus
from dayflow.timeutil import js_weekday, local_date, to_local

logger = logging.getLogger(__name__)

_WEEKDAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
_MONTH_NAMES = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)  # fmt: skip


def instance_id(template_id: int, instance_date: date) -> str:
    """Stable identifier of one occurrence, e.g. ``"42-2026-03-01"``."""
    return f"{template_id}-{instance_date.isoformat()}"


def validate_config(config: RecurringConfig) -> None:
    """Raise :class:`RecurrenceConfigError` when *config* cannot be expanded."""
    interval = config.interval
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        raise RecurrenceConfigError(f"interval must be a positive integer, got {interval!r}")
    _check_range("days_of_week", config.days_of_week, 0, 6)
    _check_range("days_of_month", config.days_of_month, 1, 31)
    _check_range("months_of_year", config.months_of_year, 1, 12)


def _check_range(name: str, values: list[int] | None, low: int, high: int) -> None:
    if not values:
        return
    bad = sorted({v for v in values if not low <= v <= high})
    if bad:
        raise RecurrenceConfigError(f"{name} values out of range {low}..{high}: {bad}")


def expand(
    template: Task,
    window_start: date,
    window_end: date,
    max_instances: int,
    *,
    zone: tzinfo = UTC,
) -> list[TaskOccurrence]:
    """Expand *template* into occurrences within ``[window_start, window_end]``.

    Expansion stops at the recurrence ``end_date``, at ``window_end`` or after
    ``max_instances`` occurrences, whichever comes first. Occurrences never
    precede the template's anchor date (the local date of ``scheduled_date``,
    or ``start_date`` when unscheduled). The time of day of the anchor is
    kept on every occurrence.

    Raises
    ------
    RecurrenceConfigError
        If the task is not a template, has no anchor date, or its
        configuration is malformed.
    """
    config = template.recurring
    if config is None:
        raise RecurrenceConfigError(f"Task {template.id} has no recurring configuration")
    validate_config(config)

    anchor_at = template.schedulable_start
    if anchor_at is None:
        raise RecurrenceConfigError(f"Recurring task {template.id} has no anchor date")
    anchor_local = to_local(anchor_at, zone)
    anchor = anchor_local.date()

    if max_instances < 1 or window_start > window_end:
        return []

    stop = window_end
    if config.end_date is not None and config.end_date < stop:
        stop = config.end_date
    start = max(window_start, anchor)
    if start > stop:
        return []

    occurrences: list[TaskOccurrence] = []
    for day in _iter_dates(config, anchor, start, stop):
        occurrences.append(_make_occurrence(template, day, anchor, zone))
        if len(occurrences) >= max_instances:
            break
    return occurrences


def expand_or_single(
    template: Task,
    window_start: date,
    window_end: date,
    max_instances: int,
    *,
    zone: tzinfo = UTC,
) -> list[TaskOccurrence]:
    """Like :func:`expand`, but never drops a task.

    Non-recurring tasks and templates whose configuration cannot be expanded
    come back as a single occurrence of the task itself.
    """
    if template.recurring is None:
        return [single_occurrence(template, zone=zone)]
    try:
        return expand(template, window_start, window_end, max_instances, zone=zone)
    except RecurrenceConfigError as exc:
        logger.warning(
            "Recurring task %s cannot be expanded (%s); showing it as a single task",
            template.id,
            exc,
        )
        return [single_occurrence(template, zone=zone)]


def single_occurrence(task: Task, *, zone: tzinfo = UTC) -> TaskOccurrence:
    start = task.schedulable_start
    return TaskOccurrence.model_validate(
        {
            **task.model_dump(),
            "instance_date": local_date(start, zone) if start is not None else None,
            "recurring_instance_id": None,
            "completed": task.status == TaskStatus.done,
        }
    )


def next_occurrence(template: Task, on_or_after: date, *, zone: tzinfo = UTC) -> date | None:
    """Return the first occurrence date on or after *on_or_after*, if any."""
    config = template.recurring
    if config is None:
        return None
    interval = max(config.interval, 1) if isinstance(config.interval, int) else 1
    # Four years per interval covers a Feb 29 anchor on a yearly pattern.
    try:
        horizon = on_or_after + timedelta(days=366 * (4 * interval + 1))
    except OverflowError:
        horizon = date.max
    occurrences = expand(template, on_or_after, horizon, 1, zone=zone)
    return occurrences[0].instance_date if occurrences else None


def describe_recurrence(config: RecurringConfig) -> str:
    """Human-readable summary, e.g. ``"Every 2 weeks on Mon, Wed"``."""
    interval = config.interval
    match config.pattern:
        case RecurrencePattern.daily:
            text = "Daily" if interval == 1 else f"Every {interval} days"
        case RecurrencePattern.weekly:
            text = "Weekly" if interval == 1 else f"Every {interval} weeks"
            if config.days_of_week:
                names = ", ".join(_WEEKDAY_NAMES[d] for d in config.days_of_week if 0 <= d <= 6)
                text += f" on {names}"
        case RecurrencePattern.monthly:
            text = "Monthly" if interval == 1 else f"Every {interval} months"
            if config.days_of_month:
                text += " on the " + ", ".join(_ordinal(d) for d in config.days_of_month)
        case RecurrencePattern.yearly:
            text = "Yearly" if interval == 1 else f"Every {interval} years"
            if config.months_of_year:
                names = ", ".join(
                    _MONTH_NAMES[m - 1] for m in config.months_of_year if 1 <= m <= 12
                )
                text += f" in {names}"
    if config.end_date is not None:
        text += f" until {config.end_date.isoformat()}"
    return text


def _ordinal(day: int) -> str:
    if 10 <= day % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


# ---------------------------------------------------------------------------
# Date generators. Each yields ascending dates in [start, stop], start >= anchor.
# ---------------------------------------------------------------------------


def _iter_dates(config: RecurringConfig, anchor: date, start: date, stop: date) -> Iterator[date]:
    match config.pattern:
        case RecurrencePattern.daily:
            return _iter_daily(config.interval, anchor, start, stop)
        case RecurrencePattern.weekly:
            weekdays = sorted(set(config.days_of_week or [js_weekday(anchor)]))
            return _iter_weekly(config.interval, weekdays, anchor, start, stop)
        case RecurrencePattern.monthly:
            days = sorted(set(config.days_of_month or [anchor.day]))
            return _iter_monthly(config.interval, days, anchor, start, stop)
        case RecurrencePattern.yearly:
            months = sorted(set(config.months_of_year or [anchor.month]))
            return _iter_yearly(config.interval, months, anchor, start, stop)
    raise RecurrenceConfigError(f"Unsupported recurrence pattern: {config.pattern!r}")


def _periods_to_skip(offset: int, period: int) -> int:
    """Whole periods to jump so that ``offset`` units are covered (ceil division)."""
    if offset <= 0:
        return 0
    return -(-offset // period)


def _iter_daily(interval: int, anchor: date, start: date, stop: date) -> Iterator[date]:
    skip = _periods_to_skip((start - anchor).days, interval)
    day = anchor + timedelta(days=skip * interval)
    step = timedelta(days=interval)
    while day <= stop:
        yield day
        if stop - day < step:
            return
        day += step


def _iter_weekly(
    interval: int, weekdays: list[int], anchor: date, start: date, stop: date
) -> Iterator[date]:
    first_week = anchor - timedelta(days=js_weekday(anchor))
    span = 7 * interval
    # A week starting at ``week`` can still contain ``start`` up to 6 days later.
    skip = _periods_to_skip((start - first_week).days - 6, span)
    week = first_week + timedelta(days=skip * span)
    while week <= stop:
        for weekday in weekdays:
            day = week + timedelta(days=weekday)
            if day < start:
                continue
            if day > stop:
                return
            yield day
        if (stop - week).days < span:
            return
        week += timedelta(days=span)


def _iter_monthly(
    interval: int, days: list[int], anchor: date, start: date, stop: date
) -> Iterator[date]:
    anchor_index = anchor.year * 12 + anchor.month - 1
    start_index = start.year * 12 + start.month - 1
    index = anchor_index + _periods_to_skip(start_index - anchor_index, interval) * interval
    while True:
        year, month0 = divmod(index, 12)
        if year > MAXYEAR or date(year, month0 + 1, 1) > stop:
            return
        last_day = calendar.monthrange(year, month0 + 1)[1]
        for day_of_month in days:
            if day_of_month > last_day:
                continue
            day = date(year, month0 + 1, day_of_month)
            if day < start:
                continue
            if day > stop:
                return
            yield day
        index += interval


def _iter_yearly(
    interval: int, months: list[int], anchor: date, start: date, stop: date
) -> Iterator[date]:
    year = anchor.year + _periods_to_skip(start.year - anchor.year, interval) * interval
    while year <= MAXYEAR and date(year, 1, 1) <= stop:
        for month in months:
            if anchor.day > calendar.monthrange(year, month)[1]:
                continue
            day = date(year, month, anchor.day)
            if day < start:
                continue
            if day > stop:
                return
            yield day
        year += interval


# ---------------------------------------------------------------------------
# Occurrence construction
# ---------------------------------------------------------------------------


def _make_occurrence(template: Task, day: date, anchor: date, zone: tzinfo) -> TaskOccurrence:
    shift = timedelta(days=(day - anchor).days)
    data = template.model_dump()
    # Shift every date by whole local days so the wall-clock time survives DST changes.
    for field_name in ("scheduled_date", "start_date", "due_date"):
        value = getattr(template, field_name)
        if value is not None:
            data[field_name] = _shift_local(value, shift, zone)
    data.update(
        instance_date=day,
        recurring_instance_id=instance_id(template.id, day),
        completed=False,
        completed_at=None,
        progress_percentage=0,
        time_spent=0,
    )
    return TaskOccurrence.model_validate(data)


def _shift_local(value: datetime, shift: timedelta, zone: tzinfo) -> datetime:
    local = to_local(value, zone)
    naive = local.replace(tzinfo=None) + shift
    return naive.replace(tzinfo=zone)
