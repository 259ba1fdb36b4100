"""Durable storage for per-user Google OAuth tokens.

The ``google_calendar_tokens`` table is the single source of truth for a
user's credentials. A token refresh updates the existing row in place; the
row is only removed when the user disconnects.

Secret material (access and refresh tokens) is never logged.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import asyncpg

from dayflow.models import OAuthTokenRecord

logger = logging.getLogger(__name__)

_TABLE = "google_calendar_tokens"

TOKENS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id        TEXT PRIMARY KEY,
    access_token   TEXT NOT NULL,
    refresh_token  TEXT NOT NULL,
    expires_at     TIMESTAMPTZ NOT NULL,
    scope          TEXT,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class TokenNotFoundError(LookupError):
    """Raised when an in-place update targets a user with no stored token."""


class TokenStore:
    """Async token store backed by the ``google_calendar_tokens`` table.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load(self, user_id: str) -> OAuthTokenRecord | None:
        """Return the stored record for *user_id*, or ``None``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT user_id, access_token, refresh_token, expires_at, scope,
                       created_at, updated_at
                FROM {_TABLE}
                WHERE user_id = $1
                """,
                user_id,
            )
        if row is None:
            return None
        return OAuthTokenRecord(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=_ensure_utc(row["expires_at"]),
            scope=row["scope"],
            created_at=_ensure_utc(row["created_at"]) if row["created_at"] else None,
            updated_at=_ensure_utc(row["updated_at"]) if row["updated_at"] else None,
        )

    async def save(self, record: OAuthTokenRecord) -> None:
        """Insert or replace the full token pair (initial authorization)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE}
                    (user_id, access_token, refresh_token, expires_at, scope)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id) DO UPDATE SET
                    access_token  = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at    = EXCLUDED.expires_at,
                    scope         = EXCLUDED.scope,
                    updated_at    = now()
                """,
                record.user_id,
                record.access_token,
                record.refresh_token,
                record.expires_at,
                record.scope,
            )
        logger.info(
            "OAuth tokens stored: user_id=%r expires_at=%s scope=%r",
            record.user_id,
            record.expires_at.isoformat(),
            record.scope,
        )

    async def update_access_token(
        self,
        user_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Rotate the access token of an existing record in place.

        The refresh token is replaced only when the provider issued a new one.

        Raises
        ------
        TokenNotFoundError
            If no record exists for *user_id* (e.g. the user disconnected
            while a refresh was in flight).
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {_TABLE} SET
                    access_token  = $2,
                    expires_at    = $3,
                    refresh_token = COALESCE($4, refresh_token),
                    updated_at    = now()
                WHERE user_id = $1
                """,
                user_id,
                access_token,
                expires_at,
                refresh_token,
            )
        if not result or result.split()[-1] == "0":
            raise TokenNotFoundError(f"No stored OAuth tokens for user {user_id!r}")
        logger.debug(
            "Access token rotated: user_id=%r expires_at=%s refresh_rotated=%s",
            user_id,
            expires_at.isoformat(),
            refresh_token is not None,
        )

    async def delete(self, user_id: str) -> bool:
        """Remove the record; returns ``True`` if a row was deleted."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(f"DELETE FROM {_TABLE} WHERE user_id = $1", user_id)
        deleted = result.split()[-1] != "0" if result else False
        if deleted:
            logger.info("OAuth tokens deleted: user_id=%r", user_id)
        else:
            logger.debug("No OAuth tokens to delete: user_id=%r", user_id)
        return deleted

    def __repr__(self) -> str:
        return f"TokenStore(pool={self.pool!r})"


def _ensure_utc(dt: datetime) -> datetime:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


async def ensure_tokens_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(TOKENS_TABLE_DDL)
