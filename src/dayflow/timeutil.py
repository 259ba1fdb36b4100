"""Timezone helpers.

One configured IANA timezone (the user's profile timezone) governs every
local-date decision: recurrence anchors, "today"/"this week" status
derivation and the ``timeZone`` field sent with calendar events. Naive
datetimes are interpreted in that zone; aware datetimes are converted to it.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def resolve_zone(name: str | None) -> ZoneInfo | tzinfo:
    """Return the ZoneInfo for *name*, falling back to UTC when unknown."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; falling back to UTC", name)
        return UTC


def zone_name(zone: tzinfo) -> str:
    key = getattr(zone, "key", None)
    if isinstance(key, str) and key:
        return key
    return "UTC"


def to_local(value: datetime, zone: tzinfo) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def local_date(value: datetime, zone: tzinfo) -> date:
    return to_local(value, zone).date()


def combine_local(day: date, at: time, zone: tzinfo) -> datetime:
    """Build an aware datetime for *day* at wall-clock time *at* in *zone*."""
    return datetime.combine(day, at.replace(tzinfo=None), tzinfo=zone)


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    """Parse a provider RFC 3339 timestamp; naive results are treated as UTC.

    Raises ``ValueError`` for malformed input.
    """
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def js_weekday(day: date) -> int:
    """Weekday index with Sunday = 0 .. Saturday = 6."""
    return (day.weekday() + 1) % 7
