"""Unit tests for dayflow.tokens: GoogleOAuthClient and TokenManager.

Covers:
- authorization URL parameters
- token endpoint success, provider rejection, server and transport failures
- ensure_valid(): margin-based refresh, no-token and invalid states
- single-flight refresh under concurrency
- invalid_grant clears stored tokens; transient failures keep them
- write-through ordering (store before memory)
- authorization-code exchange, replay and rejection
- disconnect()
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fakes import InMemoryTokenStore

from dayflow.errors import (
    AuthExpiredError,
    ExchangeFailedError,
    NotAuthenticatedError,
    RemoteRequestFailedError,
)
from dayflow.models import OAuthTokenRecord, TokenGrant
from dayflow.tokens import (
    GOOGLE_TOKEN_URL,
    GoogleOAuthClient,
    OAuthGrantError,
    TokenManager,
    TokenState,
)

pytestmark = pytest.mark.unit

_NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record(*, expires_in: timedelta = timedelta(hours=1), **overrides) -> OAuthTokenRecord:
    fields = {
        "user_id": "user-1",
        "access_token": "access-old",
        "refresh_token": "refresh-1",
        "expires_at": _NOW + expires_in,
        "scope": "calendar",
    }
    fields.update(overrides)
    return OAuthTokenRecord(**fields)


def _mock_response(
    *, status_code: int, json_body: dict | None = None, text: str = ""
) -> httpx.Response:
    request = httpx.Request("POST", GOOGLE_TOKEN_URL)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


def _oauth_client(http_client: MagicMock) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost/callback",
        scopes=("scope-a", "scope-b"),
        http_client=http_client,
    )


def _manager(store: InMemoryTokenStore) -> tuple[TokenManager, MagicMock]:
    oauth = MagicMock()
    oauth.refresh = AsyncMock()
    manager = TokenManager("user-1", store, oauth, clock=lambda: _NOW)
    return manager, oauth


def _grant(access_token: str = "access-new", refresh_token: str | None = None) -> TokenGrant:
    return TokenGrant(access_token=access_token, expires_in=3600, refresh_token=refresh_token)


# ---------------------------------------------------------------------------
# GoogleOAuthClient
# ---------------------------------------------------------------------------


class TestGoogleOAuthClient:
    def test_authorization_url_requests_offline_consent(self) -> None:
        client = _oauth_client(MagicMock(spec=httpx.AsyncClient))

        url = client.authorization_url("state-123")

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["include_granted_scopes"] == ["true"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["scope-a scope-b"]
        assert query["state"] == ["state-123"]

    async def test_refresh_success(self) -> None:
        http = MagicMock(spec=httpx.AsyncClient)
        http.post = AsyncMock(
            return_value=_mock_response(
                status_code=200,
                json_body={"access_token": "access-new", "expires_in": "1800", "scope": "s"},
            )
        )

        grant = await _oauth_client(http).refresh("refresh-1")

        assert grant == TokenGrant(access_token="access-new", expires_in=1800, scope="s")
        data = http.post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-1"

    async def test_invalid_grant_is_revoked(self) -> None:
        http = MagicMock(spec=httpx.AsyncClient)
        http.post = AsyncMock(
            return_value=_mock_response(
                status_code=400,
                json_body={
                    "error": "invalid_grant",
                    "error_description": "Token has been revoked.",
                },
            )
        )

        with pytest.raises(OAuthGrantError) as exc_info:
            await _oauth_client(http).refresh("refresh-1")

        assert exc_info.value.revoked is True
        assert exc_info.value.status_code == 400

    async def test_server_error_is_remote_failure(self) -> None:
        http = MagicMock(spec=httpx.AsyncClient)
        http.post = AsyncMock(return_value=_mock_response(status_code=503, text="unavailable"))

        with pytest.raises(RemoteRequestFailedError) as exc_info:
            await _oauth_client(http).refresh("refresh-1")

        assert exc_info.value.status_code == 503

    async def test_transport_error_is_remote_failure(self) -> None:
        http = MagicMock(spec=httpx.AsyncClient)
        http.post = AsyncMock(side_effect=httpx.ConnectError("dns failure"))

        with pytest.raises(RemoteRequestFailedError) as exc_info:
            await _oauth_client(http).exchange_code("code-1")

        assert exc_info.value.status_code is None

    async def test_missing_access_token_is_rejected(self) -> None:
        http = MagicMock(spec=httpx.AsyncClient)
        http.post = AsyncMock(return_value=_mock_response(status_code=200, json_body={}))

        with pytest.raises(RemoteRequestFailedError, match="access_token"):
            await _oauth_client(http).refresh("refresh-1")

    def test_repr_hides_secret(self) -> None:
        assert "client-secret" not in repr(_oauth_client(MagicMock(spec=httpx.AsyncClient)))


# ---------------------------------------------------------------------------
# TokenManager.ensure_valid / refresh
# ---------------------------------------------------------------------------


class TestEnsureValid:
    async def test_returns_cached_token_far_from_expiry(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore(_record()))

        assert await manager.ensure_valid() == "access-old"
        oauth.refresh.assert_not_awaited()
        assert manager.state == TokenState.valid

    async def test_without_token_raises_not_authenticated(self) -> None:
        manager, _ = _manager(InMemoryTokenStore())

        with pytest.raises(NotAuthenticatedError):
            await manager.ensure_valid()
        assert manager.state == TokenState.no_token

    async def test_refreshes_within_margin(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=4)))
        manager, oauth = _manager(store)
        oauth.refresh.return_value = _grant()

        token = await manager.ensure_valid()

        assert token == "access-new"
        oauth.refresh.assert_awaited_once_with("refresh-1")
        stored = store.records["user-1"]
        assert stored.access_token == "access-new"
        assert stored.expires_at == _NOW + timedelta(seconds=3600)
        assert stored.refresh_token == "refresh-1"

    async def test_refreshes_exactly_at_margin(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore(_record(expires_in=timedelta(minutes=5))))
        oauth.refresh.return_value = _grant()

        assert await manager.ensure_valid() == "access-new"

    async def test_concurrent_callers_share_one_refresh(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore(_record(expires_in=timedelta(minutes=1))))
        states: list[TokenState] = []

        async def slow_refresh(refresh_token: str) -> TokenGrant:
            states.append(manager.state)
            await asyncio.sleep(0.01)
            return _grant()

        oauth.refresh.side_effect = slow_refresh

        tokens = await asyncio.gather(manager.ensure_valid(), manager.ensure_valid())

        assert tokens == ["access-new", "access-new"]
        assert oauth.refresh.await_count == 1
        assert states == [TokenState.refresh_in_flight]
        assert manager.state == TokenState.valid

    async def test_store_written_before_memory(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)
        oauth.refresh.return_value = _grant()
        store.update_access_token = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await manager.ensure_valid()

        assert manager.record is not None
        assert manager.record.access_token == "access-old"

    async def test_rotated_refresh_token_is_persisted(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)
        oauth.refresh.return_value = _grant(refresh_token="refresh-2")

        await manager.ensure_valid()

        assert store.records["user-1"].refresh_token == "refresh-2"
        assert manager.record.refresh_token == "refresh-2"


class TestRefreshFailures:
    async def test_invalid_grant_clears_tokens(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)
        oauth.refresh.side_effect = OAuthGrantError(
            status_code=400, error_code="invalid_grant", description="revoked"
        )

        with pytest.raises(AuthExpiredError):
            await manager.ensure_valid()

        assert manager.state == TokenState.invalid
        assert "user-1" not in store.records
        assert store.deleted == ["user-1"]

        # Further calls fail fast until the user reconnects.
        with pytest.raises(AuthExpiredError):
            await manager.ensure_valid()
        assert oauth.refresh.await_count == 1

    async def test_transient_failure_keeps_tokens(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)
        oauth.refresh.side_effect = RemoteRequestFailedError(status_code=503, message="down")

        with pytest.raises(RemoteRequestFailedError):
            await manager.ensure_valid()

        assert manager.state == TokenState.valid
        assert store.records["user-1"].access_token == "access-old"

    async def test_disconnect_during_refresh(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)

        async def refresh_after_disconnect(refresh_token: str) -> TokenGrant:
            store.records.clear()
            return _grant()

        oauth.refresh.side_effect = refresh_after_disconnect

        with pytest.raises(NotAuthenticatedError):
            await manager.ensure_valid()
        assert manager.state == TokenState.no_token

    async def test_stale_token_refresh_is_skipped_when_already_rotated(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore(_record()))

        token = await manager.refresh(stale_token="some-older-token")

        assert token == "access-old"
        oauth.refresh.assert_not_awaited()

    async def test_forced_refresh_for_current_token(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore(_record()))
        oauth.refresh.return_value = _grant()

        assert await manager.refresh(stale_token="access-old") == "access-new"
        oauth.refresh.assert_awaited_once()


# ---------------------------------------------------------------------------
# Authorization code exchange
# ---------------------------------------------------------------------------


class TestExchange:
    async def test_stores_new_record(self) -> None:
        store = InMemoryTokenStore()
        manager, oauth = _manager(store)
        oauth.exchange_code = AsyncMock(return_value=_grant("access-1", refresh_token="refresh-1"))

        record = await manager.exchange_authorization_code("  code-abc ")

        oauth.exchange_code.assert_awaited_once_with("code-abc")
        assert record.access_token == "access-1"
        assert record.expires_at == _NOW + timedelta(hours=1)
        assert store.records["user-1"] == record
        assert manager.state == TokenState.valid

    async def test_replayed_code_returns_stored_record(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore())
        oauth.exchange_code = AsyncMock(return_value=_grant("access-1", refresh_token="refresh-1"))

        first = await manager.exchange_authorization_code("code-abc")
        second = await manager.exchange_authorization_code("code-abc")

        assert second == first
        assert oauth.exchange_code.await_count == 1

    async def test_rejected_code_raises_exchange_failed(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore())
        oauth.exchange_code = AsyncMock(
            side_effect=OAuthGrantError(
                status_code=400, error_code="invalid_grant", description="Malformed auth code."
            )
        )

        with pytest.raises(ExchangeFailedError):
            await manager.exchange_authorization_code("code-used")
        assert manager.state == TokenState.no_token

    async def test_missing_refresh_token_keeps_existing(self) -> None:
        store = InMemoryTokenStore(_record())
        manager, oauth = _manager(store)
        oauth.exchange_code = AsyncMock(return_value=_grant("access-2"))

        record = await manager.exchange_authorization_code("code-2")

        assert record.refresh_token == "refresh-1"
        assert record.access_token == "access-2"

    async def test_missing_refresh_token_without_existing_fails(self) -> None:
        manager, oauth = _manager(InMemoryTokenStore())
        oauth.exchange_code = AsyncMock(return_value=_grant("access-2"))

        with pytest.raises(ExchangeFailedError, match="refresh token"):
            await manager.exchange_authorization_code("code-2")

    async def test_empty_code_rejected(self) -> None:
        manager, _ = _manager(InMemoryTokenStore())

        with pytest.raises(ExchangeFailedError):
            await manager.exchange_authorization_code("   ")

    async def test_reconnect_after_invalid(self) -> None:
        store = InMemoryTokenStore(_record(expires_in=timedelta(minutes=1)))
        manager, oauth = _manager(store)
        oauth.refresh.side_effect = OAuthGrantError(
            status_code=400, error_code="invalid_grant", description=None
        )
        with pytest.raises(AuthExpiredError):
            await manager.ensure_valid()

        oauth.exchange_code = AsyncMock(return_value=_grant("access-3", refresh_token="refresh-3"))
        await manager.exchange_authorization_code("code-3")

        assert manager.state == TokenState.valid
        assert await manager.ensure_valid() == "access-3"


class TestDisconnect:
    async def test_disconnect_clears_state(self) -> None:
        store = InMemoryTokenStore(_record())
        manager, _ = _manager(store)
        await manager.ensure_valid()

        assert await manager.disconnect() is True

        assert manager.state == TokenState.no_token
        assert store.records == {}
        with pytest.raises(NotAuthenticatedError):
            await manager.ensure_valid()

    def test_repr_has_no_secrets(self) -> None:
        manager, _ = _manager(InMemoryTokenStore(_record()))

        assert "access-old" not in repr(manager)
