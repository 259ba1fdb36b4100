"""Error taxonomy shared by the sync, import and recurrence layers.

Propagation rules:

- ``RecurrenceConfigError`` and ``MappingError`` are data problems. Callers
  recover locally (single-instance fallback, skipped import item) and never
  retry them.
- ``NotAuthenticatedError`` and ``AuthExpiredError`` must reach the user as an
  explicit "reconnect required" state.
- ``RemoteRequestFailedError`` is a provider or transport failure. Only a 401
  is eligible for the single refresh-and-retry.
"""

from __future__ import annotations

import re


class CalendarSyncError(RuntimeError):
    """Base error for the calendar core."""


class NotAuthenticatedError(CalendarSyncError):
    """Raised when no token is stored for the user; the OAuth flow must start."""


class AuthExpiredError(CalendarSyncError):
    """Raised when the refresh grant was rejected; the user must reconnect."""


class ExchangeFailedError(CalendarSyncError):
    """Raised when an authorization code cannot be exchanged for tokens."""


class RemoteRequestFailedError(CalendarSyncError):
    """Raised when a calendar provider request fails.

    ``status_code`` is ``None`` for transport-level failures (DNS, timeouts).
    """

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Calendar request failed: {message}")
        else:
            super().__init__(f"Calendar request failed ({status_code}): {message}")

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class MappingError(CalendarSyncError):
    """Raised when a task or remote item lacks a field the mapping requires."""


class RecurrenceConfigError(CalendarSyncError):
    """Raised when a recurring configuration cannot be expanded."""


def redact_credentials(message: str) -> str:
    """Mask token and secret values embedded in *message* before logging."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-]+", "Bearer [REDACTED]", redacted)
    return redacted
