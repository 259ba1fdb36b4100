"""Google OAuth token lifecycle.

:class:`GoogleOAuthClient` speaks to the provider's ``authorize`` and
``token`` endpoints. :class:`TokenManager` owns one user's token record and
moves it through::

    no_token -> valid -> refresh_in_flight -> valid
                                           -> invalid (reconnect required)

Refreshes are single-flight: concurrent callers that find the access token
about to expire all await the same refresh request, because providers may
revoke a refresh token that is presented twice.

Every token mutation is written to :class:`~dayflow.token_store.TokenStore`
before the in-memory copy changes.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

import httpx

from dayflow.core.singleflight import SingleFlight
from dayflow.errors import (
    AuthExpiredError,
    CalendarSyncError,
    ExchangeFailedError,
    NotAuthenticatedError,
    RemoteRequestFailedError,
)
from dayflow.models import OAuthTokenRecord, TokenGrant
from dayflow.token_store import TokenNotFoundError, TokenStore

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthGrantError(CalendarSyncError):
    """The token endpoint rejected a grant (bad code, revoked refresh token, ...)."""

    def __init__(self, *, status_code: int, error_code: str | None, description: str | None):
        self.status_code = status_code
        self.error_code = error_code
        self.description = description
        super().__init__(
            f"OAuth grant rejected ({status_code}): {error_code or 'unknown_error'}"
            + (f" - {description}" if description else "")
        )

    @property
    def revoked(self) -> bool:
        return self.error_code == "invalid_grant"


class TokenState(StrEnum):
    no_token = "no_token"
    valid = "valid"
    refresh_in_flight = "refresh_in_flight"
    invalid = "invalid"


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Authorization-code and refresh-token grants against Google's token endpoint."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: tuple[str, ...],
        http_client: httpx.AsyncClient,
        token_url: str = GOOGLE_TOKEN_URL,
        auth_url: str = GOOGLE_AUTH_URL,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._http_client = http_client
        self._token_url = token_url
        self._auth_url = auth_url

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(self._scopes),
            "response_type": "code",
            # offline + consent is what makes Google return a refresh token
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._grant(
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._grant(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )

    async def _grant(self, data: dict[str, str]) -> TokenGrant:
        grant_type = data["grant_type"]
        try:
            response = await self._http_client.post(
                self._token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise RemoteRequestFailedError(
                status_code=None, message=f"OAuth {grant_type} request failed: {exc}"
            ) from exc

        if 400 <= response.status_code < 500:
            error_code, description = _oauth_error_fields(response)
            raise OAuthGrantError(
                status_code=response.status_code,
                error_code=error_code,
                description=description,
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message=f"OAuth token endpoint error during {grant_type}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="OAuth token endpoint returned invalid JSON",
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="OAuth token response is missing a non-empty access_token",
            )

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
            refresh_token=refresh_token.strip()
            if isinstance(refresh_token, str) and refresh_token.strip()
            else None,
            scope=scope if isinstance(scope, str) and scope.strip() else None,
        )

    def __repr__(self) -> str:
        return f"GoogleOAuthClient(client_id={self._client_id!r}, client_secret=<REDACTED>)"


def _oauth_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    description = body.get("error_description")
    return (
        error if isinstance(error, str) else None,
        " ".join(description.split())[:200] if isinstance(description, str) else None,
    )


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


# ---------------------------------------------------------------------------
# Token manager
# ---------------------------------------------------------------------------


class TokenManager:
    """Validity and refresh logic for one user's OAuth tokens.

    Parameters
    ----------
    user_id:
        Owner of the token record.
    store:
        Durable token storage; the only persistence boundary for credentials.
    oauth:
        Provider client used for the refresh and authorization-code grants.
    clock:
        Returns the current aware datetime. Defaults to UTC now.
    refresh_margin:
        Tokens expiring within this margin are refreshed before use.
    """

    def __init__(
        self,
        user_id: str,
        store: TokenStore,
        oauth: GoogleOAuthClient,
        *,
        clock: Callable[[], datetime] | None = None,
        refresh_margin: timedelta = REFRESH_MARGIN,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._oauth = oauth
        self._clock = clock or (lambda: datetime.now(UTC))
        self._refresh_margin = refresh_margin
        self._record: OAuthTokenRecord | None = None
        self._loaded = False
        self._invalid = False
        self._refresh_flight: SingleFlight[OAuthTokenRecord] = SingleFlight("token refresh")
        self._redeemed_codes: set[str] = set()

    @property
    def state(self) -> TokenState:
        if self._invalid:
            return TokenState.invalid
        if self._refresh_flight.in_flight:
            return TokenState.refresh_in_flight
        if self._record is None:
            return TokenState.no_token
        return TokenState.valid

    @property
    def record(self) -> OAuthTokenRecord | None:
        return self._record

    def authorization_url(self, state: str) -> str:
        return self._oauth.authorization_url(state)

    async def load(self) -> OAuthTokenRecord | None:
        """Read the record from storage, replacing any cached copy."""
        self._record = await self._store.load(self.user_id)
        self._loaded = True
        return self._record

    async def is_connected(self) -> bool:
        if self._invalid:
            return False
        return await self._current() is not None

    async def ensure_valid(self) -> str:
        """Return an access token that is valid for at least the refresh margin.

        Raises
        ------
        NotAuthenticatedError
            If the user never connected (or disconnected).
        AuthExpiredError
            If an earlier refresh was rejected; the user must reconnect.
        """
        if self._invalid:
            raise AuthExpiredError("Google Calendar authorization expired; reconnect required")
        record = await self._current()
        if record is None:
            raise NotAuthenticatedError("Not connected to Google Calendar")
        if record.expires_within(self._refresh_margin, now=self._clock()):
            logger.info("Access token expires at %s; refreshing", record.expires_at.isoformat())
            record = await self._refresh_flight.run(self._refresh_once)
        return record.access_token

    async def refresh(self, *, stale_token: str | None = None) -> str:
        """Exchange the refresh token for a new access token.

        When *stale_token* is given and the cached access token has already
        moved on (another caller refreshed meanwhile), the current token is
        returned without another provider round-trip.
        """
        if self._invalid:
            raise AuthExpiredError("Google Calendar authorization expired; reconnect required")
        record = await self._current()
        if record is None:
            raise NotAuthenticatedError("Not connected to Google Calendar")
        if stale_token is not None and record.access_token != stale_token:
            return record.access_token
        record = await self._refresh_flight.run(self._refresh_once)
        return record.access_token

    async def exchange_authorization_code(self, code: str) -> OAuthTokenRecord:
        """Redeem a one-time authorization code for the initial token pair.

        Replaying a code this manager already redeemed returns the stored
        record. Any rejection by the provider (including a reused code) is
        reported as :class:`ExchangeFailedError`.
        """
        normalized = code.strip()
        if not normalized:
            raise ExchangeFailedError("Authorization code must be a non-empty string")

        fingerprint = hashlib.sha256(normalized.encode()).hexdigest()
        if fingerprint in self._redeemed_codes and self._record is not None:
            logger.info("Authorization code already redeemed; returning stored tokens")
            return self._record

        try:
            grant = await self._oauth.exchange_code(normalized)
        except OAuthGrantError as exc:
            logger.warning("Authorization code exchange rejected: %s", exc.error_code)
            raise ExchangeFailedError(f"Authorization code exchange rejected: {exc}") from exc
        except RemoteRequestFailedError as exc:
            raise ExchangeFailedError(f"Authorization code exchange failed: {exc}") from exc

        existing = self._record if self._loaded else await self._store.load(self.user_id)
        refresh_token = grant.refresh_token or (existing.refresh_token if existing else None)
        if not refresh_token:
            raise ExchangeFailedError(
                "Token response did not include a refresh token; "
                "re-run authorization with prompt=consent"
            )

        record = OAuthTokenRecord(
            user_id=self.user_id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
            scope=grant.scope,
        )
        await self._store.save(record)
        self._record = record
        self._loaded = True
        self._invalid = False
        self._redeemed_codes.add(fingerprint)
        logger.info("Connected to Google Calendar (scope=%s)", record.scope)
        return record

    async def disconnect(self) -> bool:
        """Delete stored tokens and return to the ``no_token`` state."""
        deleted = await self._store.delete(self.user_id)
        self._record = None
        self._loaded = True
        self._invalid = False
        self._redeemed_codes.clear()
        return deleted

    async def _current(self) -> OAuthTokenRecord | None:
        if not self._loaded:
            await self.load()
        return self._record

    async def _refresh_once(self) -> OAuthTokenRecord:
        record = self._record
        if record is None:
            raise NotAuthenticatedError("Not connected to Google Calendar")

        try:
            grant = await self._oauth.refresh(record.refresh_token)
        except OAuthGrantError as exc:
            self._invalid = True
            logger.warning(
                "Refresh token rejected by provider (%s); clearing tokens, reconnect required",
                exc.error_code,
            )
            await self._store.delete(self.user_id)
            self._record = None
            raise AuthExpiredError(
                "Google Calendar authorization expired. Please reconnect."
            ) from exc

        expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        try:
            await self._store.update_access_token(
                self.user_id,
                access_token=grant.access_token,
                expires_at=expires_at,
                refresh_token=grant.refresh_token,
            )
        except TokenNotFoundError as exc:
            # Disconnected while the refresh was in flight.
            self._record = None
            raise NotAuthenticatedError("Google Calendar was disconnected") from exc

        updates: dict[str, Any] = {
            "access_token": grant.access_token,
            "expires_at": expires_at,
            "updated_at": self._clock(),
        }
        if grant.refresh_token:
            updates["refresh_token"] = grant.refresh_token
        self._record = record.model_copy(update=updates)
        logger.info("Access token refreshed; valid until %s", expires_at.isoformat())
        return self._record

    def __repr__(self) -> str:
        return f"TokenManager(user_id={self.user_id!r}, state={self.state.value!r})"
