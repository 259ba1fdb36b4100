"""HTTP client for the Google Calendar and Google Tasks REST APIs.

This is the only module that sends calendar requests. Every request carries
a bearer token from :class:`~dayflow.tokens.TokenManager`; a ``401`` triggers
exactly one token refresh and one retry of the same request. Nothing else is
retried: rate limits and server errors surface as
:class:`RemoteRequestFailedError` and the caller decides what to do.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from dayflow.errors import RemoteRequestFailedError, redact_credentials
from dayflow.models import EventPayload
from dayflow.timeutil import rfc3339
from dayflow.tokens import TokenManager

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_TASKS_API_BASE_URL = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_PAGE_SIZE = 250


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_credentials(" ".join(message.split())[:200])
        if isinstance(error_payload, str) and error_payload.strip():
            return redact_credentials(" ".join(error_payload.split())[:200])

    raw_text = response.text.strip()
    if raw_text:
        return redact_credentials(" ".join(raw_text.split())[:200])
    return "Request failed without an error payload"


class GoogleCalendarClient:
    """Thin async wrapper over the calendar endpoints DayFlow uses.

    Parameters
    ----------
    token_manager:
        Source of bearer tokens; also performs the refresh on ``401``.
    http_client:
        Shared ``httpx.AsyncClient``. When omitted the client creates and
        owns one, closed by :meth:`aclose`.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient | None = None,
        *,
        calendar_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        tasks_base_url: str = GOOGLE_TASKS_API_BASE_URL,
    ) -> None:
        self._tokens = token_manager
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self._calendar_base_url = calendar_base_url.rstrip("/")
        self._tasks_base_url = tasks_base_url.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        access_token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise RemoteRequestFailedError(
                status_code=None,
                message=redact_credentials(f"{method} {url} failed: {exc}"),
            ) from exc

    async def _request_with_bearer(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        access_token = await self._tokens.ensure_valid()
        response = await self._request_once(
            method, url, access_token=access_token, params=params, json_body=json_body
        )
        if response.status_code == 401:
            logger.info("%s %s returned 401; refreshing token and retrying once", method, url)
            access_token = await self._tokens.refresh(stale_token=access_token)
            response = await self._request_once(
                method, url, access_token=access_token, params=params, json_body=json_body
            )
        return response

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method, url, params=params, json_body=json_body
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message=_safe_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="Provider returned invalid JSON for a successful response",
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message="Provider returned an unexpected JSON payload shape",
            )
        return payload

    async def _paginate(
        self,
        url: str,
        params: dict[str, Any],
        *,
        limit: int,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_params = dict(params)
        while True:
            page_params["maxResults"] = min(limit - len(items), MAX_PAGE_SIZE)
            payload = await self._request_json("GET", url, params=page_params)
            page_items = payload.get("items")
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token or len(items) >= limit:
                return items[:limit]
            page_params["pageToken"] = next_page_token

    def _event_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self._calendar_base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            url += f"/{quote(event_id, safe='')}"
        return url

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def create_event(self, calendar_id: str, payload: EventPayload) -> str:
        """Insert an event and return its provider id."""
        created = await self._request_json(
            "POST", self._event_url(calendar_id), json_body=payload.to_google_body()
        )
        event_id = created.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise RemoteRequestFailedError(
                status_code=None, message="Provider did not return an id for the created event"
            )
        logger.debug("Created calendar event %s in %s", event_id, calendar_id)
        return event_id

    async def update_event(self, calendar_id: str, event_id: str, payload: EventPayload) -> None:
        """Replace the event body in place (full ``PUT``)."""
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        await self._request_json(
            "PUT",
            self._event_url(calendar_id, normalized_event_id),
            json_body=payload.to_google_body(),
        )
        logger.debug("Updated calendar event %s in %s", normalized_event_id, calendar_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event. An event that is already gone (404/410) counts as deleted."""
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request_with_bearer(
            "DELETE", self._event_url(calendar_id, normalized_event_id)
        )
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event %r already gone; treating as success", normalized_event_id
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestFailedError(
                status_code=response.status_code,
                message=_safe_error_message(response),
            )

    async def list_events(
        self,
        calendar_id: str = "primary",
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = MAX_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Return raw, non-cancelled single events ordered by start time."""
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
        }
        if time_min is not None:
            params["timeMin"] = rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = rfc3339(time_max)
        items = await self._paginate(self._event_url(calendar_id), params, limit=max_results)
        return [item for item in items if item.get("status") != "cancelled"]

    async def list_calendars(self) -> list[dict[str, Any]]:
        """Return ``{"id", "summary", "primary"}`` for each calendar of the user."""
        items = await self._paginate(
            f"{self._calendar_base_url}/users/me/calendarList", {}, limit=MAX_PAGE_SIZE * 4
        )
        calendars: list[dict[str, Any]] = []
        for item in items:
            calendar_id = item.get("id")
            if not isinstance(calendar_id, str) or not calendar_id:
                continue
            calendars.append(
                {
                    "id": calendar_id,
                    "summary": item.get("summaryOverride") or item.get("summary") or calendar_id,
                    "primary": bool(item.get("primary", False)),
                }
            )
        return calendars

    # ------------------------------------------------------------------
    # Google Tasks
    # ------------------------------------------------------------------

    async def list_task_lists(self) -> list[dict[str, Any]]:
        items = await self._paginate(
            f"{self._tasks_base_url}/users/@me/lists", {}, limit=MAX_PAGE_SIZE
        )
        return [
            {"id": item["id"], "title": item.get("title") or item["id"]}
            for item in items
            if isinstance(item.get("id"), str) and item["id"]
        ]

    async def list_task_items(
        self,
        task_list_id: str = "@default",
        *,
        show_completed: bool = False,
        due_min: datetime | None = None,
        due_max: datetime | None = None,
        max_results: int = MAX_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")
        params: dict[str, Any] = {
            "showCompleted": show_completed,
            "showHidden": show_completed,
        }
        if due_min is not None:
            params["dueMin"] = rfc3339(due_min)
        if due_max is not None:
            params["dueMax"] = rfc3339(due_max)
        url = f"{self._tasks_base_url}/lists/{quote(task_list_id, safe='@')}/tasks"
        items = await self._paginate(url, params, limit=max_results)
        return [item for item in items if not item.get("deleted")]

    def __repr__(self) -> str:
        return f"GoogleCalendarClient(token_manager={self._tokens!r})"
