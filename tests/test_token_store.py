"""Unit tests for dayflow.token_store.TokenStore (mocked asyncpg pool)."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import pytest
from fakes import make_pool, make_row

from dayflow.models import OAuthTokenRecord
from dayflow.token_store import (
    TOKENS_TABLE_DDL,
    TokenNotFoundError,
    TokenStore,
    ensure_tokens_schema,
)

pytestmark = pytest.mark.unit

_EXPIRES = datetime(2026, 3, 4, 13, 0, tzinfo=UTC)


def _record(**overrides) -> OAuthTokenRecord:
    fields = {
        "user_id": "user-1",
        "access_token": "ya29.secret-access",
        "refresh_token": "1//secret-refresh",
        "expires_at": _EXPIRES,
        "scope": "https://www.googleapis.com/auth/calendar",
    }
    fields.update(overrides)
    return OAuthTokenRecord(**fields)


class TestLoad:
    async def test_returns_record(self) -> None:
        pool = make_pool(
            fetchrow_return=make_row(
                user_id="user-1",
                access_token="ya29.secret-access",
                refresh_token="1//secret-refresh",
                expires_at=datetime(2026, 3, 4, 13, 0),  # naive from the driver
                scope=None,
                created_at=None,
                updated_at=None,
            )
        )

        record = await TokenStore(pool).load("user-1")

        assert record is not None
        assert record.access_token == "ya29.secret-access"
        assert record.expires_at == _EXPIRES
        assert record.expires_at.tzinfo is not None

    async def test_missing_returns_none(self) -> None:
        assert await TokenStore(make_pool()).load("user-1") is None


class TestSave:
    async def test_upserts_all_fields(self) -> None:
        pool = make_pool(execute_return="INSERT 0 1")

        await TokenStore(pool).save(_record())

        sql, *args = pool._conn.execute.call_args.args
        assert "ON CONFLICT (user_id) DO UPDATE" in sql
        assert args == [
            "user-1",
            "ya29.secret-access",
            "1//secret-refresh",
            _EXPIRES,
            "https://www.googleapis.com/auth/calendar",
        ]

    async def test_secrets_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        pool = make_pool(execute_return="INSERT 0 1")

        with caplog.at_level(logging.DEBUG, logger="dayflow.token_store"):
            await TokenStore(pool).save(_record())

        assert "OAuth tokens stored" in caplog.text
        assert "secret-access" not in caplog.text
        assert "secret-refresh" not in caplog.text


class TestUpdateAccessToken:
    async def test_updates_in_place(self) -> None:
        pool = make_pool(execute_return="UPDATE 1")

        await TokenStore(pool).update_access_token(
            "user-1", access_token="new-access", expires_at=_EXPIRES
        )

        sql, *args = pool._conn.execute.call_args.args
        assert sql.strip().startswith("UPDATE google_calendar_tokens")
        assert "COALESCE($4, refresh_token)" in sql
        assert args == ["user-1", "new-access", _EXPIRES, None]

    async def test_missing_row_raises(self) -> None:
        pool = make_pool(execute_return="UPDATE 0")

        with pytest.raises(TokenNotFoundError):
            await TokenStore(pool).update_access_token(
                "user-1", access_token="new-access", expires_at=_EXPIRES
            )


class TestDelete:
    async def test_deleted(self) -> None:
        assert await TokenStore(make_pool(execute_return="DELETE 1")).delete("user-1") is True

    async def test_not_found(self) -> None:
        assert await TokenStore(make_pool(execute_return="DELETE 0")).delete("user-1") is False


class TestRedaction:
    def test_record_repr_hides_tokens(self) -> None:
        record = _record()

        for rendered in (repr(record), str(record)):
            assert "secret-access" not in rendered
            assert "secret-refresh" not in rendered
            assert "<REDACTED>" in rendered

    def test_store_repr(self) -> None:
        assert repr(TokenStore(make_pool())).startswith("TokenStore(pool=")


async def test_ensure_tokens_schema() -> None:
    pool = make_pool(execute_return="CREATE TABLE")

    await ensure_tokens_schema(pool)

    pool._conn.execute.assert_awaited_once_with(TOKENS_TABLE_DDL)
