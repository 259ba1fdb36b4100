"""Interface to the task/board store that owns DayFlow's task data.

The calendar core never persists tasks itself. It reads scheduling fields
and board metadata through this protocol and writes back only the linkage
fields (``google_calendar_event_id``, ``google_calendar_synced``) and newly
imported tasks.
"""

from __future__ import annotations

from typing import Protocol

from dayflow.models import Board, Task, TaskDraft


class TaskRepository(Protocol):
    """Protocol for the external task store."""

    async def get_task(self, task_id: int) -> Task | None:
        """Return the current task, or ``None`` if it was deleted."""
        ...

    async def get_board(self, board_id: int) -> Board | None: ...

    async def set_linkage(self, task_id: int, event_id: str | None, *, synced: bool) -> None:
        """Persist the remote event id and synced flag.

        Passing ``event_id=None`` clears the linkage.
        """
        ...

    async def set_synced(self, task_id: int, synced: bool) -> None: ...

    async def create_task(self, draft: TaskDraft) -> Task:
        """Insert a new task and return it with its assigned id."""
        ...

    async def linked_event_ids(self) -> set[str]:
        """Every non-empty ``google_calendar_event_id`` among local tasks."""
        ...

    async def list_tasks_needing_sync(self) -> list[Task]:
        """Tasks with a schedulable date whose last sync did not succeed."""
        ...
