"""Per-occurrence completion overrides for recurring tasks.

Completion state of an occurrence is stored apart from its template, keyed
by ``(task_id, instance_date)``. Storage is sparse: a row exists only for a
completed occurrence, and the absence of a row means "incomplete".

Callers route here only for templates (``task.recurring`` set); plain tasks
keep using their own ``status``/``completed_at`` fields. Nothing in this
module talks to the remote calendar.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta

import asyncpg

from dayflow.models import RecurringInstance

logger = logging.getLogger(__name__)

_TABLE = "recurring_instances"

RECURRING_INSTANCES_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    task_id        BIGINT NOT NULL,
    instance_date  DATE NOT NULL,
    completed_at   TIMESTAMPTZ,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (task_id, instance_date)
)
"""

# Errors a storage call may surface; anything else is a programming error.
_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class InstanceCompletionStore:
    """asyncpg-backed completion overrides.

    Write operations return ``True`` on success and ``False`` when the
    database rejected the write; failures are logged, never raised, so a
    checkbox toggle cannot take down a calendar view.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    clock:
        Source of ``completed_at`` timestamps. Defaults to UTC now.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.pool = pool
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def mark_completed(self, task_id: int, instance_date: date) -> bool:
        """Upsert a completion row with ``completed_at = now``."""
        completed_at = self._clock()
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {_TABLE} (task_id, instance_date, completed_at)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (task_id, instance_date) DO UPDATE SET
                        completed_at = EXCLUDED.completed_at,
                        updated_at   = now()
                    """,
                    task_id,
                    instance_date,
                    completed_at,
                )
        except _STORAGE_ERRORS:
            logger.exception(
                "Failed to mark occurrence completed: task_id=%s date=%s",
                task_id,
                instance_date,
            )
            return False
        logger.debug("Occurrence completed: task_id=%s date=%s", task_id, instance_date)
        return True

    async def mark_incomplete(self, task_id: int, instance_date: date) -> bool:
        """Delete the completion row. Deleting an absent row is a success."""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    f"DELETE FROM {_TABLE} WHERE task_id = $1 AND instance_date = $2",
                    task_id,
                    instance_date,
                )
        except _STORAGE_ERRORS:
            logger.exception(
                "Failed to mark occurrence incomplete: task_id=%s date=%s",
                task_id,
                instance_date,
            )
            return False
        if _affected_rows(result) == 0:
            logger.debug("No completion row to clear: task_id=%s date=%s", task_id, instance_date)
        return True

    async def delete_for_task(self, task_id: int) -> int:
        """Remove every override of a deleted template; returns rows removed.

        Storage errors are logged and reported as zero rows removed.
        """
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(f"DELETE FROM {_TABLE} WHERE task_id = $1", task_id)
        except _STORAGE_ERRORS:
            logger.exception("Failed to remove completion rows for deleted task %s", task_id)
            return 0
        removed = _affected_rows(result)
        if removed:
            logger.info("Removed %d completion rows for deleted task %s", removed, task_id)
        return removed

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def is_completed(self, task_id: int, instance_date: date) -> bool:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT 1 FROM {_TABLE}
                WHERE task_id = $1 AND instance_date = $2 AND completed_at IS NOT NULL
                """,
                task_id,
                instance_date,
            )
        return row is not None

    async def completion_map(self, task_id: int) -> dict[date, bool]:
        """Map every completed occurrence date of *task_id* to ``True``.

        Dates missing from the map are incomplete.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT instance_date FROM {_TABLE}
                WHERE task_id = $1 AND completed_at IS NOT NULL
                ORDER BY instance_date
                """,
                task_id,
            )
        return {row["instance_date"]: True for row in rows}

    async def completed_in_range(
        self, task_id: int, start: date, end: date
    ) -> list[RecurringInstance]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT task_id, instance_date, completed_at FROM {_TABLE}
                WHERE task_id = $1
                  AND instance_date BETWEEN $2 AND $3
                  AND completed_at IS NOT NULL
                ORDER BY instance_date
                """,
                task_id,
                start,
                end,
            )
        return [
            RecurringInstance(
                task_id=row["task_id"],
                instance_date=row["instance_date"],
                completed_at=row["completed_at"],
            )
            for row in rows
        ]

    async def completion_stats(
        self, task_id: int, *, today: date, days: int = 30
    ) -> dict[str, float]:
        """Completed-occurrence counts over the last *days* days.

        ``completion_rate`` is a percentage of stored rows that carry a
        completion timestamp.
        """
        since = today - timedelta(days=days)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT completed_at FROM {_TABLE} WHERE task_id = $1 AND instance_date >= $2",
                task_id,
                since,
            )
        total = len(rows)
        completed = sum(1 for row in rows if row["completed_at"] is not None)
        rate = (completed / total) * 100 if total else 0.0
        return {"total": total, "completed": completed, "completion_rate": rate}

    def __repr__(self) -> str:
        return f"InstanceCompletionStore(pool={self.pool!r})"


def _affected_rows(result: str | None) -> int:
    # asyncpg returns a status string like "DELETE 1" or "DELETE 0"
    if not result:
        return 0
    try:
        return int(result.split()[-1])
    except ValueError:
        return 0


async def ensure_completion_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(RECURRING_INSTANCES_DDL)
