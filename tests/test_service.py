"""Tests for dayflow.service (wiring, lifecycle and delegation)."""

from __future__ import annotations

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from conftest import BERLIN, NOW
from fakes import InMemoryTaskRepository, make_pool, make_row

from dayflow.config import DatabaseConfig, DayflowConfig, GoogleOAuthConfig, SyncSettings
from dayflow.core.logging import add_user_context
from dayflow.models import RecurrencePattern, RecurringConfig, SyncStatus, Task
from dayflow.service import init_service
from dayflow.tokens import TokenState

pytestmark = pytest.mark.unit


def _config(**overrides) -> DayflowConfig:
    fields = {
        "user_id": "user-1",
        "timezone": "Europe/Berlin",
        "database": DatabaseConfig(dsn="postgres://localhost/dayflow"),
        "google": GoogleOAuthConfig(
            client_id="client-id", client_secret="secret", redirect_uri="http://localhost/cb"
        ),
    }
    fields.update(overrides)
    return DayflowConfig(**fields)


def _http_client() -> MagicMock:
    http = MagicMock(spec=httpx.AsyncClient)
    http.aclose = AsyncMock()
    return http


class TestInitService:
    async def test_wires_components_and_loads_tokens(self) -> None:
        pool = make_pool(fetchrow_return=None)

        service = await init_service(
            _config(), pool, InMemoryTaskRepository(), http_client=_http_client()
        )

        assert service.zone == BERLIN
        assert service.tokens.state == TokenState.no_token
        assert add_user_context(None, "info", {})["user_id"] == "user-1"
        pool._conn.fetchrow.assert_awaited_once()

    async def test_status_with_stored_token(self) -> None:
        pool = make_pool(
            fetchrow_return=make_row(
                user_id="user-1",
                access_token="access",
                refresh_token="refresh",
                expires_at=datetime(2026, 3, 4, 13, 0),
                scope="calendar",
                created_at=None,
                updated_at=None,
            )
        )
        service = await init_service(
            _config(), pool, InMemoryTaskRepository(), http_client=_http_client()
        )

        status = await service.status()

        assert status == {
            "user_id": "user-1",
            "connected": True,
            "state": "valid",
            "expires_at": "2026-03-04T13:00:00+00:00",
            "scope": "calendar",
            "auto_sync": False,
            "calendar_id": "primary",
            "timezone": "Europe/Berlin",
        }

    async def test_authorization_url(self) -> None:
        service = await init_service(
            _config(), make_pool(), InMemoryTaskRepository(), http_client=_http_client()
        )

        assert "state=abc" in service.authorization_url("abc")

    async def test_injected_client_is_left_open(self) -> None:
        http = _http_client()
        service = await init_service(
            _config(), make_pool(), InMemoryTaskRepository(), http_client=http
        )

        await service.teardown()
        await service.teardown()

        http.aclose.assert_not_awaited()

    async def test_owned_client_is_closed_once(self) -> None:
        with patch("dayflow.service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.aclose = AsyncMock()
            service = await init_service(_config(), make_pool(), InMemoryTaskRepository())

            await service.teardown()
            await service.teardown()

        client_cls.return_value.aclose.assert_awaited_once()

    async def test_load_failure_releases_client(self) -> None:
        pool = make_pool()
        pool._conn.fetchrow.side_effect = OSError("connection refused")

        with patch("dayflow.service.httpx.AsyncClient") as client_cls:
            client_cls.return_value.aclose = AsyncMock()
            with pytest.raises(OSError):
                await init_service(_config(), pool, InMemoryTaskRepository())

        client_cls.return_value.aclose.assert_awaited_once()


class TestDelegation:
    async def test_deleting_template_removes_completion_rows(self) -> None:
        pool = make_pool(execute_return="DELETE 3")
        service = await init_service(
            _config(), pool, InMemoryTaskRepository(), http_client=_http_client()
        )
        template = Task(
            id=5,
            title="Stretch",
            scheduled_date=datetime(2026, 3, 2, 9, tzinfo=BERLIN),
            recurring=RecurringConfig(pattern=RecurrencePattern.daily),
        )

        outcome = await service.on_task_deleted(template)

        assert outcome.status == SyncStatus.skipped
        sql, task_id = pool._conn.execute.call_args.args
        assert sql.startswith("DELETE FROM recurring_instances")
        assert task_id == 5

    async def test_template_delete_survives_completion_store_error(self) -> None:
        pool = make_pool()
        service = await init_service(
            _config(), pool, InMemoryTaskRepository(), http_client=_http_client()
        )
        pool._conn.execute.side_effect = OSError("connection reset")
        template = Task(
            id=5,
            title="Stretch",
            scheduled_date=datetime(2026, 3, 2, 9, tzinfo=BERLIN),
            recurring=RecurringConfig(pattern=RecurrencePattern.daily),
        )

        outcome = await service.on_task_deleted(template)

        assert outcome.status == SyncStatus.skipped
        pool._conn.execute.assert_awaited_once()

    async def test_occurrences_use_configured_cap(self) -> None:
        pool = make_pool(fetch_return=[])
        config = _config()
        config.recurrence.max_instances = 3
        service = await init_service(
            config, pool, InMemoryTaskRepository(), http_client=_http_client(), clock=lambda: NOW
        )
        template = Task(
            id=5,
            title="Stretch",
            scheduled_date=datetime(2026, 3, 2, 9, tzinfo=BERLIN),
            recurring=RecurringConfig(pattern=RecurrencePattern.daily),
        )

        occurrences = await service.occurrences([template], date(2026, 3, 1), date(2026, 3, 31))

        assert [o.instance_date for o in occurrences] == [
            date(2026, 3, 2),
            date(2026, 3, 3),
            date(2026, 3, 4),
        ]

    async def test_manual_sync_without_connection_requires_reconnect(self) -> None:
        repo = InMemoryTaskRepository()
        task = repo.put(
            Task(id=1, title="Report", scheduled_date=datetime(2026, 3, 5, 10, tzinfo=BERLIN))
        )
        service = await init_service(
            _config(sync=SyncSettings(auto_sync=True)),
            make_pool(fetchrow_return=None),
            repo,
            http_client=_http_client(),
        )

        outcome = await service.manual_sync(task)

        assert outcome.status == SyncStatus.reconnect_required
        assert repo.tasks[1].google_calendar_synced is False

    async def test_ensure_schema_creates_both_tables(self) -> None:
        pool = make_pool(execute_return="CREATE TABLE")
        service = await init_service(
            _config(), pool, InMemoryTaskRepository(), http_client=_http_client()
        )

        await service.ensure_schema()

        ddl = [call.args[0] for call in pool._conn.execute.call_args_list]
        assert any("google_calendar_tokens" in sql for sql in ddl)
        assert any("recurring_instances" in sql for sql in ddl)
