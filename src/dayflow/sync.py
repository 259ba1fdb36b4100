"""Task -> calendar reconciliation.

:class:`SyncReconciler` is invoked after a local task write has already
succeeded. It decides which remote operation (if any) brings the calendar in
line with the task, performs it, and writes the linkage back. Remote failures
never propagate: they are logged and recorded on the task as
``google_calendar_synced = False`` and in the returned :class:`SyncOutcome`.
Task store failures during a remote operation are logged and reported as a
failed outcome; an event created without its linkage being saved is deleted
again. Nothing is retried automatically; :meth:`SyncReconciler.manual_sync`
is the retry path.

Decision table for :meth:`SyncReconciler.decide`, first match wins:

1. sync disabled, or ``sync_only_scheduled`` and the task has no schedulable
   date and no linkage to tear down -> ``noop``
2. no schedulable date now, one before, linkage present -> ``delete``
3. schedulable date and linkage -> ``update``
4. schedulable date, no linkage -> ``create``
5. otherwise -> ``noop``
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, tzinfo

from dayflow.calendar_client import GoogleCalendarClient
from dayflow.config import SyncSettings
from dayflow.core.locks import KeyedLock
from dayflow.errors import (
    AuthExpiredError,
    MappingError,
    NotAuthenticatedError,
    RemoteRequestFailedError,
)
from dayflow.event_mapper import to_remote_event
from dayflow.models import (
    BatchSyncReport,
    EventPayload,
    EventSource,
    SyncAction,
    SyncOutcome,
    SyncStatus,
    Task,
)
from dayflow.ports import TaskRepository

logger = logging.getLogger(__name__)


class SyncReconciler:
    """Keeps each task's remote calendar event in line with the task.

    Reconciliation is serialized per task id, so a later mutation always sees
    the linkage written by an earlier create. Different tasks reconcile
    concurrently.
    """

    def __init__(
        self,
        client: GoogleCalendarClient,
        tasks: TaskRepository,
        settings: SyncSettings,
        *,
        zone: tzinfo = UTC,
        locks: KeyedLock | None = None,
    ) -> None:
        self._client = client
        self._tasks = tasks
        self._settings = settings
        self._zone = zone
        self._locks = locks or KeyedLock()
        # Tasks whose deletion is waiting on an in-flight reconciliation,
        # and event ids created for them meanwhile.
        self._pending_deletes: set[int] = set()
        self._created_for_deleted: dict[int, str] = {}

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(self, before: Task | None, after: Task, *, enabled: bool = True) -> SyncAction:
        if not enabled:
            return SyncAction.noop
        if (
            self._settings.sync_only_scheduled
            and not after.has_schedulable_date
            and not after.is_linked
        ):
            return SyncAction.noop
        if (
            not after.has_schedulable_date
            and before is not None
            and before.has_schedulable_date
            and after.is_linked
        ):
            return SyncAction.delete
        if after.has_schedulable_date and after.is_linked:
            return SyncAction.update
        if after.has_schedulable_date:
            return SyncAction.create
        return SyncAction.noop

    # ------------------------------------------------------------------
    # Automatic hooks
    # ------------------------------------------------------------------

    async def on_task_mutated(self, before: Task | None, after: Task) -> SyncOutcome:
        """Reconcile after a task was created or updated locally."""
        async with self._locks.hold(after.id):
            current = await self._tasks.get_task(after.id)
            if current is None:
                logger.debug("Task %s disappeared before reconciliation; skipping", after.id)
                return _skipped(after)
            action = self.decide(before, current, enabled=self._settings.auto_sync)
            return await self._apply(action, current)

    async def on_task_deleted(self, task: Task) -> SyncOutcome:
        """Remove the remote event of a task that was deleted locally.

        Waits for any reconciliation of the same task that is still in flight,
        so an event created by it is deleted too.
        """
        if not self._settings.auto_sync:
            return _skipped(task)
        self._pending_deletes.add(task.id)
        try:
            async with self._locks.hold(task.id):
                event_id = task.google_calendar_event_id or self._created_for_deleted.get(task.id)
                if not event_id:
                    return _skipped(task)
                try:
                    await self._client.delete_event(self._settings.calendar_id, event_id)
                except (NotAuthenticatedError, AuthExpiredError, RemoteRequestFailedError) as exc:
                    logger.warning("Failed to delete event of deleted task %s: %s", task.id, exc)
                    return _failed(task, SyncAction.delete, event_id, exc)
                logger.info("Deleted calendar event %s of deleted task %s", event_id, task.id)
                return SyncOutcome(
                    task_id=task.id,
                    action=SyncAction.delete,
                    status=SyncStatus.synced,
                    event_id=event_id,
                )
        finally:
            self._pending_deletes.discard(task.id)
            self._created_for_deleted.pop(task.id, None)

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    async def manual_sync(self, task: Task) -> SyncOutcome:
        """Create or update the event regardless of ``auto_sync``."""
        async with self._locks.hold(task.id):
            current = await self._tasks.get_task(task.id)
            if current is None:
                return _skipped(task)
            if not current.has_schedulable_date:
                return SyncOutcome(
                    task_id=current.id,
                    action=SyncAction.noop,
                    status=SyncStatus.skipped,
                    event_id=current.google_calendar_event_id,
                    error="Task has no scheduled date or start date",
                )
            action = SyncAction.update if current.is_linked else SyncAction.create
            return await self._apply(action, current)

    async def manual_unsync(self, task: Task) -> SyncOutcome:
        """Delete the remote event and clear the linkage."""
        async with self._locks.hold(task.id):
            current = await self._tasks.get_task(task.id)
            if current is None or not current.is_linked:
                return _skipped(current or task)
            return await self._apply(SyncAction.delete, current)

    async def sync_all(self, tasks: Iterable[Task] | None = None) -> BatchSyncReport:
        """Manually sync every task in *tasks* (default: tasks needing sync).

        Each task gets its own outcome; a failing task never stops the batch.
        """
        if tasks is None:
            tasks = await self._tasks.list_tasks_needing_sync()
        report = BatchSyncReport()
        for task in tasks:
            report.outcomes.append(await self.manual_sync(task))
        logger.info(
            "Batch sync finished: %d synced, %d failed, %d total",
            report.succeeded,
            len(report.failed),
            len(report.outcomes),
        )
        return report

    # ------------------------------------------------------------------
    # Remote operations (caller holds the task lock)
    # ------------------------------------------------------------------

    async def _apply(self, action: SyncAction, task: Task) -> SyncOutcome:
        match action:
            case SyncAction.create:
                return await self._guarded(task, action, lambda: self._create(task))
            case SyncAction.update:
                return await self._guarded(task, action, lambda: self._update(task))
            case SyncAction.delete:
                return await self._guarded(task, action, lambda: self._delete(task))
        return _skipped(task)

    async def _guarded(
        self,
        task: Task,
        action: SyncAction,
        operation: Callable[[], Awaitable[str | None]],
    ) -> SyncOutcome:
        try:
            event_id = await operation()
        except (
            NotAuthenticatedError,
            AuthExpiredError,
            RemoteRequestFailedError,
            MappingError,
        ) as exc:
            logger.warning("Calendar %s for task %s failed: %s", action, task.id, exc)
            await self._mark_unsynced(task)
            return _failed(task, action, task.google_calendar_event_id, exc)
        except Exception as exc:
            logger.exception(
                "Task store write failed during calendar %s of task %s", action, task.id
            )
            return _failed(task, action, task.google_calendar_event_id, exc)
        return SyncOutcome(
            task_id=task.id, action=action, status=SyncStatus.synced, event_id=event_id
        )

    async def _payload(self, task: Task) -> EventPayload:
        board = await self._tasks.get_board(task.board_id) if task.board_id is not None else None
        source = None
        if self._settings.source_url:
            source = EventSource(title=self._settings.source_title, url=self._settings.source_url)
        return to_remote_event(task, board, zone=self._zone, source=source)

    async def _create(self, task: Task) -> str:
        payload = await self._payload(task)
        event_id = await self._client.create_event(self._settings.calendar_id, payload)
        if task.id in self._pending_deletes:
            self._created_for_deleted[task.id] = event_id
        try:
            await self._tasks.set_linkage(task.id, event_id, synced=True)
        except Exception:
            # An unlinked event would be created again by the next reconciliation.
            self._created_for_deleted.pop(task.id, None)
            await self._discard_orphan(task, event_id)
            raise
        logger.info("Created calendar event %s for task %s", event_id, task.id)
        return event_id

    async def _discard_orphan(self, task: Task, event_id: str) -> None:
        try:
            await self._client.delete_event(self._settings.calendar_id, event_id)
        except (NotAuthenticatedError, AuthExpiredError, RemoteRequestFailedError) as exc:
            logger.error(
                "Calendar event %s of task %s is orphaned and could not be removed: %s",
                event_id,
                task.id,
                exc,
            )
            return
        logger.warning(
            "Removed calendar event %s; linkage to task %s was not saved", event_id, task.id
        )

    async def _mark_unsynced(self, task: Task) -> None:
        try:
            await self._tasks.set_synced(task.id, False)
        except Exception:
            logger.exception("Failed to mark task %s unsynced", task.id)

    async def _update(self, task: Task) -> str | None:
        payload = await self._payload(task)
        event_id = task.google_calendar_event_id
        assert event_id is not None
        await self._client.update_event(self._settings.calendar_id, event_id, payload)
        if not task.google_calendar_synced:
            await self._tasks.set_synced(task.id, True)
        logger.debug("Updated calendar event %s for task %s", event_id, task.id)
        return event_id

    async def _delete(self, task: Task) -> str | None:
        event_id = task.google_calendar_event_id
        assert event_id is not None
        await self._client.delete_event(self._settings.calendar_id, event_id)
        await self._tasks.set_linkage(task.id, None, synced=False)
        logger.info("Deleted calendar event %s and cleared linkage of task %s", event_id, task.id)
        return None


def _skipped(task: Task) -> SyncOutcome:
    return SyncOutcome(
        task_id=task.id,
        action=SyncAction.noop,
        status=SyncStatus.skipped,
        event_id=task.google_calendar_event_id,
    )


def _failed(task: Task, action: SyncAction, event_id: str | None, exc: Exception) -> SyncOutcome:
    status = (
        SyncStatus.reconnect_required
        if isinstance(exc, NotAuthenticatedError | AuthExpiredError)
        else SyncStatus.failed
    )
    return SyncOutcome(
        task_id=task.id, action=action, status=status, event_id=event_id, error=str(exc)
    )
