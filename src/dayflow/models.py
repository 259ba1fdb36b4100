"""Domain models for tasks, occurrences, tokens and calendar payloads."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Tasks and recurrence
# ---------------------------------------------------------------------------


class TaskStatus(StrEnum):
    backlog = "backlog"
    this_week = "this-week"
    today = "today"
    done = "done"


class RecurrencePattern(StrEnum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class RecurringConfig(BaseModel):
    """Recurrence settings attached to a template task.

    Values are stored as given. Range checks (``interval >= 1``, weekday and
    day-of-month bounds) are enforced by the expander so that one malformed
    row does not prevent the task itself from loading.

    ``days_of_week`` uses Sunday = 0 .. Saturday = 6.
    """

    pattern: RecurrencePattern
    interval: int = 1
    days_of_week: list[int] | None = None
    days_of_month: list[int] | None = None
    months_of_year: list[int] | None = None
    end_date: date | None = None


class Board(BaseModel):
    id: int
    name: str
    color: str | None = None


class Task(BaseModel):
    """A task as read from the task store.

    A task with ``recurring`` set is a template: its own ``status`` and
    ``completed_at`` say nothing about individual occurrences.
    """

    id: int
    title: str
    description: str = ""
    time_estimate: int = 0
    status: TaskStatus = TaskStatus.backlog
    priority: int = 2
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    progress_percentage: int = 0
    time_spent: int = 0
    board_id: int | None = None
    scheduled_date: datetime | None = None
    start_date: datetime | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    recurring: RecurringConfig | None = None
    google_calendar_event_id: str | None = None
    google_calendar_synced: bool = False

    @property
    def is_template(self) -> bool:
        return self.recurring is not None

    @property
    def schedulable_start(self) -> datetime | None:
        return self.scheduled_date or self.start_date

    @property
    def has_schedulable_date(self) -> bool:
        return self.schedulable_start is not None

    @property
    def is_linked(self) -> bool:
        return bool(self.google_calendar_event_id)


class TaskOccurrence(Task):
    """A concrete, date-bound view of a template for display.

    ``id`` stays the template id so edits route back to the template;
    ``recurring_instance_id`` identifies the occurrence itself. Fallback
    occurrences produced for malformed templates have no instance id.
    """

    instance_date: date | None = None
    recurring_instance_id: str | None = None
    completed: bool = False

    @property
    def template_id(self) -> int:
        return self.id


class RecurringInstance(BaseModel):
    """A persisted completion override for one occurrence."""

    task_id: int
    instance_date: date
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


class OAuthTokenRecord(BaseModel):
    """Stored OAuth credentials for one user."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime
    scope: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def expires_within(self, margin: timedelta, *, now: datetime) -> bool:
        return self.expires_at - now <= margin

    def __repr__(self) -> str:
        return (
            f"OAuthTokenRecord("
            f"user_id={self.user_id!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scope={self.scope!r})"
        )

    # Pydantic's default __str__ would print the raw token values.
    __str__ = __repr__


class TokenGrant(BaseModel):
    """Parsed response of the provider token endpoint."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None


# ---------------------------------------------------------------------------
# Calendar event payloads
# ---------------------------------------------------------------------------


class EventDateTime(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_time: datetime
    time_zone: str

    @field_validator("date_time")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("date_time must be timezone-aware")
        return value

    def to_google(self) -> dict[str, str]:
        return {"dateTime": self.date_time.isoformat(), "timeZone": self.time_zone}


class EventSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    url: str


class EventPayload(BaseModel):
    """Provider event body. Built only by :mod:`dayflow.event_mapper`."""

    model_config = ConfigDict(frozen=True)

    summary: str
    description: str
    start: EventDateTime
    end: EventDateTime
    color_id: str | None = None
    source: EventSource | None = None

    @model_validator(mode="after")
    def _end_not_before_start(self) -> EventPayload:
        if self.end.date_time < self.start.date_time:
            raise ValueError("event end must not be before its start")
        return self

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            "description": self.description,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
        }
        if self.color_id is not None:
            body["colorId"] = self.color_id
        if self.source is not None:
            body["source"] = {"title": self.source.title, "url": self.source.url}
        return body


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class ImportSource(StrEnum):
    calendar_event = "calendar_event"
    google_task = "google_task"


class TaskDraft(BaseModel):
    """A task ready to be inserted by the task store."""

    title: str
    description: str = ""
    time_estimate: int = 0
    status: TaskStatus = TaskStatus.backlog
    priority: int = 2
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    progress_percentage: int = 0
    time_spent: int = 0
    board_id: int | None = None
    scheduled_date: datetime | None = None
    start_date: datetime | None = None
    due_date: datetime | None = None
    google_calendar_event_id: str | None = None
    google_calendar_synced: bool = False


class ImportCandidate(BaseModel):
    remote_id: str
    source: ImportSource
    draft: TaskDraft

    @property
    def title(self) -> str:
        return self.draft.title


class ImportWindow(BaseModel):
    calendar_id: str = "primary"
    time_min: datetime | None = None
    time_max: datetime | None = None


class ImportFilters(BaseModel):
    include_events: bool = True
    include_tasks: bool = False
    task_list_id: str = "@default"
    show_completed: bool = False
    max_results: int = Field(default=250, ge=1)


class ImportFailure(BaseModel):
    remote_id: str
    title: str
    reason: str


class ImportResult(BaseModel):
    created_count: int = 0
    skipped_duplicates: int = 0
    failures: list[ImportFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# Sync outcomes
# ---------------------------------------------------------------------------


class SyncAction(StrEnum):
    noop = "noop"
    create = "create"
    update = "update"
    delete = "delete"


class SyncStatus(StrEnum):
    skipped = "skipped"
    synced = "synced"
    failed = "failed"
    reconnect_required = "reconnect_required"


class SyncOutcome(BaseModel):
    task_id: int
    action: SyncAction
    status: SyncStatus
    event_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.synced, SyncStatus.skipped)


class BatchSyncReport(BaseModel):
    outcomes: list[SyncOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == SyncStatus.synced)

    @property
    def failed(self) -> list[SyncOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]
