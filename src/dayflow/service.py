"""The calendar sync service object.

:func:`init_service` wires the token store, token manager, calendar client,
reconcilers and completion store for one user and returns a
:class:`CalendarSyncService`. Callers hold on to that object and pass it
where it is needed; :meth:`CalendarSyncService.teardown` releases the HTTP
client it created.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime, tzinfo
from typing import Any

import asyncpg
import httpx

from dayflow.calendar_client import DEFAULT_TIMEOUT_SECONDS, GoogleCalendarClient
from dayflow.calendar_view import materialize_occurrences, set_occurrence_completed
from dayflow.completion_store import InstanceCompletionStore
from dayflow.config import DayflowConfig
from dayflow.core.logging import set_user_context
from dayflow.db import ensure_schema
from dayflow.importer import ImportReconciler
from dayflow.models import (
    BatchSyncReport,
    ImportCandidate,
    ImportFilters,
    ImportResult,
    ImportWindow,
    OAuthTokenRecord,
    SyncOutcome,
    Task,
    TaskOccurrence,
)
from dayflow.ports import TaskRepository
from dayflow.sync import SyncReconciler
from dayflow.timeutil import resolve_zone
from dayflow.token_store import TokenStore
from dayflow.tokens import GoogleOAuthClient, TokenManager

logger = logging.getLogger(__name__)


class CalendarSyncService:
    """Everything a DayFlow front end needs for calendar sync, for one user."""

    def __init__(
        self,
        *,
        config: DayflowConfig,
        zone: tzinfo,
        pool: asyncpg.Pool,
        tokens: TokenManager,
        client: GoogleCalendarClient,
        sync: SyncReconciler,
        importer: ImportReconciler,
        completions: InstanceCompletionStore,
        http_client: httpx.AsyncClient,
        owns_http_client: bool,
    ) -> None:
        self.config = config
        self.zone = zone
        self.pool = pool
        self.tokens = tokens
        self.client = client
        self.sync = sync
        self.importer = importer
        self.completions = completions
        self._http_client = http_client
        self._owns_http_client = owns_http_client
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        await ensure_schema(self.pool)

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_http_client:
            await self._http_client.aclose()
        logger.info("Calendar sync service stopped")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        return self.tokens.authorization_url(state)

    async def connect(self, code: str) -> OAuthTokenRecord:
        return await self.tokens.exchange_authorization_code(code)

    async def disconnect(self) -> bool:
        return await self.tokens.disconnect()

    async def status(self) -> dict[str, Any]:
        connected = await self.tokens.is_connected()
        record = self.tokens.record if connected else None
        return {
            "user_id": self.config.user_id,
            "connected": connected,
            "state": self.tokens.state.value,
            "expires_at": record.expires_at.isoformat() if record is not None else None,
            "scope": record.scope if record is not None else None,
            "auto_sync": self.config.sync.auto_sync,
            "calendar_id": self.config.sync.calendar_id,
            "timezone": self.config.timezone,
        }

    async def list_calendars(self) -> list[dict[str, Any]]:
        return await self.client.list_calendars()

    async def list_task_lists(self) -> list[dict[str, Any]]:
        return await self.client.list_task_lists()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def on_task_mutated(self, before: Task | None, after: Task) -> SyncOutcome:
        return await self.sync.on_task_mutated(before, after)

    async def on_task_deleted(self, task: Task) -> SyncOutcome:
        """Remove the task's remote event and, for templates, its completion rows."""
        outcome = await self.sync.on_task_deleted(task)
        if task.is_template:
            await self.completions.delete_for_task(task.id)
        return outcome

    async def manual_sync(self, task: Task) -> SyncOutcome:
        return await self.sync.manual_sync(task)

    async def manual_unsync(self, task: Task) -> SyncOutcome:
        return await self.sync.manual_unsync(task)

    async def sync_all(self, tasks: Iterable[Task] | None = None) -> BatchSyncReport:
        return await self.sync.sync_all(tasks)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def preview_import(
        self, window: ImportWindow | None = None, filters: ImportFilters | None = None
    ) -> list[ImportCandidate]:
        return await self.importer.preview(window, filters)

    async def confirm_import(
        self, candidates: Sequence[ImportCandidate], board_id: int | None = None
    ) -> ImportResult:
        return await self.importer.confirm(candidates, board_id)

    # ------------------------------------------------------------------
    # Recurring occurrences
    # ------------------------------------------------------------------

    async def occurrences(
        self, tasks: Iterable[Task], window_start: date, window_end: date
    ) -> list[TaskOccurrence]:
        return await materialize_occurrences(
            tasks,
            self.completions,
            window_start,
            window_end,
            zone=self.zone,
            max_instances=self.config.recurrence.max_instances,
        )

    async def set_occurrence_completed(self, occurrence: TaskOccurrence, completed: bool) -> bool:
        return await set_occurrence_completed(self.completions, occurrence, completed)

    def __repr__(self) -> str:
        return f"CalendarSyncService(user_id={self.config.user_id!r}, tokens={self.tokens!r})"


async def init_service(
    config: DayflowConfig,
    pool: asyncpg.Pool,
    tasks: TaskRepository,
    *,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> CalendarSyncService:
    """Build the service for ``config.user_id`` and load its stored tokens.

    When *http_client* is omitted the service creates one and closes it in
    :meth:`CalendarSyncService.teardown`.
    """
    clock = clock or (lambda: datetime.now(UTC))
    zone = resolve_zone(config.timezone)
    set_user_context(config.user_id)

    owns_http_client = http_client is None
    http = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)

    oauth = GoogleOAuthClient(
        client_id=config.google.client_id,
        client_secret=config.google.client_secret,
        redirect_uri=config.google.redirect_uri,
        scopes=config.google.scopes,
        http_client=http,
    )
    token_manager = TokenManager(config.user_id, TokenStore(pool), oauth, clock=clock)
    client = GoogleCalendarClient(token_manager, http)

    service = CalendarSyncService(
        config=config,
        zone=zone,
        pool=pool,
        tokens=token_manager,
        client=client,
        sync=SyncReconciler(client, tasks, config.sync, zone=zone),
        importer=ImportReconciler(client, tasks, zone=zone, clock=clock),
        completions=InstanceCompletionStore(pool, clock=clock),
        http_client=http,
        owns_http_client=owns_http_client,
    )
    try:
        await token_manager.load()
    except Exception:
        await service.teardown()
        raise
    logger.info(
        "Calendar sync service ready (state=%s, auto_sync=%s)",
        token_manager.state.value,
        config.sync.auto_sync,
    )
    return service
