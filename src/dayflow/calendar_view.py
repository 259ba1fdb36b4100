"""Occurrences visible in a date window.

Joins recurrence expansion with the per-occurrence completion overrides.
Templates are expanded (or shown once when their configuration is broken);
plain tasks appear on their own local date. Unscheduled tasks are not part
of any window.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, tzinfo

from dayflow.completion_store import InstanceCompletionStore
from dayflow.config import DEFAULT_MAX_INSTANCES
from dayflow.models import Task, TaskOccurrence
from dayflow.recurrence import expand_or_single, single_occurrence

logger = logging.getLogger(__name__)


async def materialize_occurrences(
    tasks: Iterable[Task],
    completions: InstanceCompletionStore,
    window_start: date,
    window_end: date,
    *,
    zone: tzinfo = UTC,
    max_instances: int = DEFAULT_MAX_INSTANCES,
) -> list[TaskOccurrence]:
    """Return every occurrence dated within ``[window_start, window_end]``.

    ``completed`` on a template occurrence comes from the completion store,
    never from the template's own status. Results are ordered by date, then
    start time, then task id.
    """
    occurrences: list[TaskOccurrence] = []
    for task in tasks:
        if task.is_template:
            expanded = expand_or_single(task, window_start, window_end, max_instances, zone=zone)
            completed_dates = await completions.completion_map(task.id) if expanded else {}
            for occurrence in expanded:
                if not _in_window(occurrence, window_start, window_end):
                    continue
                if occurrence.recurring_instance_id is not None:
                    occurrence.completed = completed_dates.get(occurrence.instance_date, False)
                occurrences.append(occurrence)
        else:
            occurrence = single_occurrence(task, zone=zone)
            if _in_window(occurrence, window_start, window_end):
                occurrences.append(occurrence)

    occurrences.sort(key=_sort_key)
    logger.debug(
        "Materialized %d occurrences for %s..%s", len(occurrences), window_start, window_end
    )
    return occurrences


async def set_occurrence_completed(
    completions: InstanceCompletionStore, occurrence: TaskOccurrence, completed: bool
) -> bool:
    """Toggle completion of one recurring occurrence.

    Only the override row changes; the template task is left untouched.
    Returns ``False`` when the occurrence is not a recurring instance or the
    store rejected the write.
    """
    if occurrence.recurring_instance_id is None or occurrence.instance_date is None:
        logger.debug("Task %s occurrence is not a recurring instance", occurrence.id)
        return False
    if completed:
        ok = await completions.mark_completed(occurrence.template_id, occurrence.instance_date)
    else:
        ok = await completions.mark_incomplete(occurrence.template_id, occurrence.instance_date)
    if ok:
        occurrence.completed = completed
    return ok


def _in_window(occurrence: TaskOccurrence, window_start: date, window_end: date) -> bool:
    return (
        occurrence.instance_date is not None
        and window_start <= occurrence.instance_date <= window_end
    )


def _sort_key(occurrence: TaskOccurrence) -> tuple[date, datetime, int]:
    start = occurrence.schedulable_start
    if start is None:
        start = datetime.min.replace(tzinfo=UTC)
    elif start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    return (occurrence.instance_date or date.min, start, occurrence.id)
