"""Pure mapping between DayFlow tasks and provider calendar items.

:func:`to_remote_event` is the only place an :class:`EventPayload` is built.
The reverse direction (:func:`from_remote_event`, :func:`from_remote_task`)
is best-effort and feeds the import flow; it never invents a schedule, so an
item whose start cannot be parsed raises :class:`MappingError`.

Event descriptions are structured, one field per line, in this order::

    Board: Work
    <free-text description>
    Time Estimate: 45 minutes
    Priority: High
    Category: focus
    Status: This Week
    Tags: a, b
    Progress: 40%
    Time Spent: 15 minutes

    Created in DayFlow

Empty or zero fields are left out. The order is part of the contract.
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Mapping
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from dayflow.errors import MappingError
from dayflow.models import (
    Board,
    EventDateTime,
    EventPayload,
    EventSource,
    Task,
    TaskDraft,
    TaskStatus,
)
from dayflow.timeutil import combine_local, js_weekday, parse_rfc3339, to_local, zone_name

logger = logging.getLogger(__name__)

DESCRIPTION_FOOTER = "Created in DayFlow"
DEFAULT_IMPORT_ESTIMATE_MINUTES = 60
UNTITLED = "Untitled event"

PRIORITY_LABELS: dict[int, str] = {1: "Low", 2: "Medium", 3: "High", 4: "Critical"}
STATUS_LABELS: dict[TaskStatus, str] = {
    TaskStatus.backlog: "Backlog",
    TaskStatus.this_week: "This Week",
    TaskStatus.today: "Today",
    TaskStatus.done: "Done",
}

# Board colours (lower-case hex) to Google Calendar event colour ids.
COLOR_IDS: dict[str, str] = {
    "#1f2937": "8",
    "#dc2626": "11",
    "#ea580c": "6",
    "#ca8a04": "5",
    "#16a34a": "10",
    "#0ea5e9": "9",
    "#7c3aed": "3",
    "#db2777": "4",
    # Tailwind 500 shades
    "#ef4444": "11",
    "#f97316": "6",
    "#eab308": "5",
    "#22c55e": "10",
    "#3b82f6": "9",
    "#8b5cf6": "3",
    "#ec4899": "4",
    "#6b7280": "8",
}

_PRIORITY_BY_LABEL = {label.lower(): value for value, label in PRIORITY_LABELS.items()}
_STATUS_BY_LABEL = {label.lower(): status for status, label in STATUS_LABELS.items()}
_BOARD_PREFIX = re.compile(r"^\[[^\]]+\]\s*")
_LABELLED_LINE = re.compile(
    r"^(Board|Time Estimate|Priority|Category|Status|Tags|Progress|Time Spent):\s*(.*)$"
)
_MINUTES = re.compile(r"^(\d+)\s*minutes?$")
_PERCENT = re.compile(r"^(\d+)\s*%$")
_HTML_BREAK = re.compile(r"<br\s*/?>", re.IGNORECASE)
_HTML_TAG = re.compile(r"<[^>]+>")


def color_id_for(color: str | None) -> str | None:
    """Return the provider colour id for a board colour, or ``None``."""
    if not color:
        return None
    return COLOR_IDS.get(color.strip().lower())


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "Medium")


def derive_status(scheduled: datetime | None, today: date, zone: tzinfo) -> TaskStatus:
    """Board column for an imported item scheduled at *scheduled*.

    Dates up to and including *today* land in ``today``; later dates in the
    same Sunday-based week land in ``this-week``; everything else, including
    unscheduled items, in ``backlog``.
    """
    if scheduled is None:
        return TaskStatus.backlog
    day = to_local(scheduled, zone).date()
    if day <= today:
        return TaskStatus.today
    week_end = today + timedelta(days=6 - js_weekday(today))
    if day <= week_end:
        return TaskStatus.this_week
    return TaskStatus.backlog


# ---------------------------------------------------------------------------
# Task -> event
# ---------------------------------------------------------------------------


def build_description(task: Task, board: Board | None = None) -> str:
    lines: list[str] = []
    if board is not None and board.name:
        lines.append(f"Board: {board.name}")
    if task.description.strip():
        lines.append(task.description.strip())
    if task.time_estimate > 0:
        lines.append(f"Time Estimate: {task.time_estimate} minutes")
    if task.priority:
        lines.append(f"Priority: {priority_label(task.priority)}")
    if task.category:
        lines.append(f"Category: {task.category}")
    lines.append(f"Status: {STATUS_LABELS[task.status]}")
    if task.tags:
        lines.append(f"Tags: {', '.join(task.tags)}")
    if task.progress_percentage > 0:
        lines.append(f"Progress: {task.progress_percentage}%")
    if task.time_spent > 0:
        lines.append(f"Time Spent: {task.time_spent} minutes")
    lines.extend(["", DESCRIPTION_FOOTER])
    return "\n".join(lines)


def to_remote_event(
    task: Task,
    board: Board | None = None,
    *,
    zone: tzinfo = UTC,
    source: EventSource | None = None,
) -> EventPayload:
    """Build the calendar event body for *task*.

    The event starts at ``scheduled_date`` (or ``start_date``) and lasts
    ``time_estimate`` minutes, unless the task carries both ``start_date``
    and ``due_date``: that explicit range is used as-is.

    Raises
    ------
    MappingError
        If the task has no schedulable date.
    """
    anchor = task.schedulable_start
    if anchor is None:
        raise MappingError(f"Task {task.id} has neither scheduled_date nor start_date")

    start = to_local(anchor, zone)
    end = start + timedelta(minutes=max(task.time_estimate, 0))
    if task.start_date is not None and task.due_date is not None:
        explicit_start = to_local(task.start_date, zone)
        explicit_end = to_local(task.due_date, zone)
        if explicit_end >= explicit_start:
            start, end = explicit_start, explicit_end
        else:
            logger.debug(
                "Task %s due_date precedes start_date; using the time estimate instead", task.id
            )

    title = task.title
    if board is not None and board.name:
        title = f"[{board.name}] {title}"

    tz = zone_name(zone)
    return EventPayload(
        summary=title,
        description=build_description(task, board),
        start=EventDateTime(date_time=start, time_zone=tz),
        end=EventDateTime(date_time=end, time_zone=tz),
        color_id=color_id_for(board.color) if board is not None else None,
        source=source,
    )


# ---------------------------------------------------------------------------
# Event / Google Task -> draft
# ---------------------------------------------------------------------------


def _plain_text(description: str) -> str:
    text = _HTML_BREAK.sub("\n", description)
    text = _HTML_TAG.sub("", text)
    return html.unescape(text)


def parse_description(description: str | None) -> dict[str, Any]:
    """Recover task fields from a structured event description.

    Unlabelled lines become the free-text ``description``; the footer is
    dropped. Labels that do not parse are kept as free text.
    """
    fields: dict[str, Any] = {}
    free_text: list[str] = []
    for raw_line in _plain_text(description or "").splitlines():
        line = raw_line.strip()
        if line == DESCRIPTION_FOOTER:
            continue
        match = _LABELLED_LINE.match(line)
        if match is None:
            free_text.append(raw_line.rstrip())
            continue
        label, value = match.group(1), match.group(2).strip()
        if not _apply_labelled_field(fields, label, value):
            free_text.append(raw_line.rstrip())
    fields["description"] = "\n".join(free_text).strip()
    return fields


def _apply_labelled_field(fields: dict[str, Any], label: str, value: str) -> bool:
    match label:
        case "Board":
            fields["board_name"] = value
        case "Time Estimate" | "Time Spent":
            minutes = _MINUTES.match(value)
            if minutes is None:
                return False
            key = "time_estimate" if label == "Time Estimate" else "time_spent"
            fields[key] = int(minutes.group(1))
        case "Priority":
            if value.lower() not in _PRIORITY_BY_LABEL:
                return False
            fields["priority"] = _PRIORITY_BY_LABEL[value.lower()]
        case "Status":
            if value.lower() not in _STATUS_BY_LABEL:
                return False
            fields["status"] = _STATUS_BY_LABEL[value.lower()]
        case "Category":
            fields["category"] = value or None
        case "Tags":
            fields["tags"] = [tag.strip() for tag in value.split(",") if tag.strip()]
        case "Progress":
            percent = _PERCENT.match(value)
            if percent is None:
                return False
            fields["progress_percentage"] = min(int(percent.group(1)), 100)
    return True


def _event_time(
    value: Any, zone: tzinfo, *, field_name: str, event_id: str
) -> tuple[datetime, bool]:
    """Return ``(local datetime, all_day)`` for an event ``start``/``end`` object."""
    if not isinstance(value, Mapping):
        raise MappingError(f"Event {event_id} has no {field_name}")
    date_time = value.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        try:
            return to_local(parse_rfc3339(date_time), zone), False
        except ValueError as exc:
            raise MappingError(
                f"Event {event_id} has an unparseable {field_name}: {date_time!r}"
            ) from exc
    day = value.get("date")
    if isinstance(day, str) and day.strip():
        try:
            return combine_local(date.fromisoformat(day.strip()), time.min, zone), True
        except ValueError as exc:
            raise MappingError(
                f"Event {event_id} has an unparseable {field_name} date: {day!r}"
            ) from exc
    raise MappingError(f"Event {event_id} has no {field_name} time")


def from_remote_event(
    event: Mapping[str, Any],
    *,
    zone: tzinfo = UTC,
    today: date | None = None,
) -> TaskDraft:
    """Build a task draft from a provider event JSON object.

    Timed events take their estimate from the event duration, zero included.
    All-day events and events without a parseable end fall back to the
    description estimate or the default import estimate; all-day events are
    scheduled at local midnight. When the description carries no status and
    *today* is given, the status is derived from the start date.

    Raises
    ------
    MappingError
        If the event has no id or its start cannot be parsed.
    """
    event_id = event.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise MappingError("Event has no id")

    start, all_day = _event_time(event.get("start"), zone, field_name="start", event_id=event_id)

    fields = parse_description(event.get("description"))
    fields.pop("board_name", None)

    estimate = fields.pop("time_estimate", DEFAULT_IMPORT_ESTIMATE_MINUTES)
    if not all_day and event.get("end") is not None:
        try:
            end, _ = _event_time(event.get("end"), zone, field_name="end", event_id=event_id)
        except MappingError:
            logger.debug("Event %s has an unparseable end; keeping the default estimate", event_id)
        else:
            estimate = max(int((end - start).total_seconds() // 60), 0)

    if "status" not in fields:
        fields["status"] = (
            derive_status(start, today, zone) if today is not None else TaskStatus.backlog
        )
    if fields["status"] == TaskStatus.done:
        fields["progress_percentage"] = 100

    summary = str(event.get("summary") or "").strip()
    title = _BOARD_PREFIX.sub("", summary).strip() or UNTITLED

    return TaskDraft(
        title=title,
        time_estimate=estimate,
        scheduled_date=start,
        start_date=start,
        google_calendar_event_id=event_id,
        google_calendar_synced=True,
        **fields,
    )


def from_remote_task(
    item: Mapping[str, Any],
    *,
    zone: tzinfo = UTC,
    today: date | None = None,
) -> TaskDraft:
    """Build a task draft from a Google Tasks item.

    Google Tasks only carries a due *date* (the time part is always
    midnight UTC), so the draft is scheduled at local midnight of that date.

    Raises
    ------
    MappingError
        If the item has no id, or a ``due`` value that cannot be parsed.
    """
    item_id = item.get("id")
    if not isinstance(item_id, str) or not item_id:
        raise MappingError("Task item has no id")

    scheduled: datetime | None = None
    due = item.get("due")
    if isinstance(due, str) and due.strip():
        try:
            due_day = parse_rfc3339(due).astimezone(UTC).date()
        except ValueError as exc:
            raise MappingError(f"Task item {item_id} has an unparseable due: {due!r}") from exc
        scheduled = combine_local(due_day, time.min, zone)

    completed = item.get("status") == "completed"
    if completed:
        status = TaskStatus.done
    elif today is not None:
        status = derive_status(scheduled, today, zone)
    else:
        status = TaskStatus.backlog

    notes = item.get("notes")
    return TaskDraft(
        title=str(item.get("title") or "").strip() or UNTITLED,
        description=notes.strip() if isinstance(notes, str) else "",
        time_estimate=DEFAULT_IMPORT_ESTIMATE_MINUTES,
        status=status,
        progress_percentage=100 if completed else 0,
        scheduled_date=scheduled,
        start_date=scheduled,
        google_calendar_event_id=item_id,
        google_calendar_synced=True,
    )
