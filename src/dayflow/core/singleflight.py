"""Single-flight execution for shared async operations.

Concurrent callers of :meth:`SingleFlight.run` attach to the operation that
is already in progress instead of starting a second one. Once it settles
(result or exception) the next caller starts a fresh operation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """A mutex-guarded handle on at most one in-flight operation.

    The lock is held only while checking or installing the handle, never
    across the operation itself. The operation runs in its own task and each
    caller awaits it through :func:`asyncio.shield`, so cancelling one caller
    does not cancel the work the others are waiting on.
    """

    def __init__(self, name: str = "operation") -> None:
        self._name = name
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            task = self._inflight
            if task is None or task.done():
                task = asyncio.ensure_future(self._execute(operation))
                self._inflight = task
            else:
                logger.debug("Joining in-flight %s", self._name)
        return await asyncio.shield(task)

    async def _execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            self._inflight = None
