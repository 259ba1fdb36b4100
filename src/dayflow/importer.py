"""Import of calendar events and Google Tasks into DayFlow.

Two steps: :meth:`ImportReconciler.preview` lists what *would* be imported,
:meth:`ImportReconciler.confirm` creates tasks for the candidates the user
kept. A remote item whose id already appears as a local
``google_calendar_event_id`` is never offered and never created twice, which
also keeps events DayFlow itself pushed from coming back as duplicates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, tzinfo

from dayflow.calendar_client import GoogleCalendarClient
from dayflow.errors import MappingError
from dayflow.event_mapper import from_remote_event, from_remote_task
from dayflow.models import (
    ImportCandidate,
    ImportFailure,
    ImportFilters,
    ImportResult,
    ImportSource,
    ImportWindow,
)
from dayflow.ports import TaskRepository

logger = logging.getLogger(__name__)


class ImportReconciler:
    def __init__(
        self,
        client: GoogleCalendarClient,
        tasks: TaskRepository,
        *,
        zone: tzinfo = UTC,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._tasks = tasks
        self._zone = zone
        self._clock = clock or (lambda: datetime.now(UTC))

    def _today(self) -> date:
        return self._clock().astimezone(self._zone).date()

    async def preview(
        self,
        window: ImportWindow | None = None,
        filters: ImportFilters | None = None,
    ) -> list[ImportCandidate]:
        """Return importable items, events first, in provider order.

        Items already linked to a local task are excluded. Items that cannot
        be mapped (no id, unparseable start) are skipped and logged.
        """
        window = window or ImportWindow()
        filters = filters or ImportFilters()
        linked = await self._tasks.linked_event_ids()
        today = self._today()

        candidates: list[ImportCandidate] = []
        seen: set[str] = set()
        duplicates = 0
        unmappable = 0

        if filters.include_events:
            events = await self._client.list_events(
                window.calendar_id,
                time_min=window.time_min,
                time_max=window.time_max,
                max_results=filters.max_results,
            )
            for event in events:
                event_id = event.get("id")
                if event_id in linked or event_id in seen:
                    duplicates += 1
                    continue
                try:
                    draft = from_remote_event(event, zone=self._zone, today=today)
                except MappingError as exc:
                    unmappable += 1
                    logger.warning("Skipping calendar event during import preview: %s", exc)
                    continue
                seen.add(draft.google_calendar_event_id)
                candidates.append(
                    ImportCandidate(
                        remote_id=draft.google_calendar_event_id,
                        source=ImportSource.calendar_event,
                        draft=draft,
                    )
                )

        if filters.include_tasks:
            items = await self._client.list_task_items(
                filters.task_list_id,
                show_completed=filters.show_completed,
                due_min=window.time_min,
                due_max=window.time_max,
                max_results=filters.max_results,
            )
            for item in items:
                item_id = item.get("id")
                if item_id in linked or item_id in seen:
                    duplicates += 1
                    continue
                try:
                    draft = from_remote_task(item, zone=self._zone, today=today)
                except MappingError as exc:
                    unmappable += 1
                    logger.warning("Skipping Google Tasks item during import preview: %s", exc)
                    continue
                seen.add(draft.google_calendar_event_id)
                candidates.append(
                    ImportCandidate(
                        remote_id=draft.google_calendar_event_id,
                        source=ImportSource.google_task,
                        draft=draft,
                    )
                )

        logger.info(
            "Import preview: %d candidates, %d already imported, %d unmappable",
            len(candidates),
            duplicates,
            unmappable,
        )
        return candidates

    async def confirm(
        self,
        candidates: Sequence[ImportCandidate],
        board_id: int | None = None,
    ) -> ImportResult:
        """Create one task per candidate.

        Each candidate is inserted independently; a failure is recorded in
        :attr:`ImportResult.failures` and the batch continues. Linkage is
        re-checked first, so confirming the same candidates twice creates
        nothing the second time.
        """
        result = ImportResult()
        linked = await self._tasks.linked_event_ids()

        for candidate in candidates:
            if candidate.remote_id in linked:
                result.skipped_duplicates += 1
                continue
            draft = candidate.draft.model_copy(
                update={"google_calendar_event_id": candidate.remote_id, "board_id": board_id}
            )
            try:
                await self._tasks.create_task(draft)
            except Exception as exc:
                logger.warning(
                    "Failed to import %r (%s): %s", candidate.title, candidate.remote_id, exc
                )
                result.failures.append(
                    ImportFailure(
                        remote_id=candidate.remote_id, title=candidate.title, reason=str(exc)
                    )
                )
                continue
            linked.add(candidate.remote_id)
            result.created_count += 1

        logger.info(
            "Import confirmed: %d created, %d duplicates skipped, %d failed",
            result.created_count,
            result.skipped_duplicates,
            len(result.failures),
        )
        return result
