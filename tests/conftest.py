"""Shared fixtures for the dayflow test suite."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest
import structlog
from fakes import FakeCalendarClient, InMemoryTaskRepository

from dayflow.config import SyncSettings
from dayflow.core.logging import set_user_context
from dayflow.models import Board, Task

BERLIN = ZoneInfo("Europe/Berlin")
TODAY = date(2026, 3, 4)  # a Wednesday
NOW = datetime(2026, 3, 4, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_logging_state():
    """Undo configure_logging() side effects between tests."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()
    set_user_context(None)


@pytest.fixture
def board() -> Board:
    return Board(id=7, name="Work", color="#3B82F6")


@pytest.fixture
def repo(board: Board) -> InMemoryTaskRepository:
    return InMemoryTaskRepository(boards=[board])


@pytest.fixture
def calendar() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(auto_sync=True, sync_only_scheduled=True, calendar_id="primary")


@pytest.fixture
def scheduled_task(board: Board) -> Task:
    return Task(
        id=1,
        title="Write report",
        description="Quarterly numbers",
        time_estimate=45,
        status="this-week",
        priority=3,
        category="focus",
        tags=["finance", "q1"],
        board_id=board.id,
        scheduled_date=datetime(2026, 3, 5, 10, 30, tzinfo=BERLIN),
    )
