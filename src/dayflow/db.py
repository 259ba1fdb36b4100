"""Connection pool management and schema bootstrap."""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from dayflow.completion_store import ensure_completion_schema
from dayflow.config import DatabaseConfig
from dayflow.token_store import ensure_tokens_schema

logger = logging.getLogger(__name__)

_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def should_retry_with_ssl_disable(exc: Exception, dsn: str) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        "sslmode=" not in dsn
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """Owns the asyncpg pool used by the token and completion stores."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> asyncpg.Pool:
        pool_kwargs: dict[str, Any] = {
            "dsn": self.config.dsn,
            "min_size": self.config.min_size,
            "max_size": self.config.max_size,
        }
        try:
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.config.dsn):
                raise
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**pool_kwargs, ssl="disable")
        logger.info(
            "Connection pool created (min=%d, max=%d)", self.config.min_size, self.config.max_size
        )
        return self.pool

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed")

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError("Database has no active connection pool")
        return self.pool

    def __repr__(self) -> str:
        # The DSN can embed a password.
        return f"Database(connected={self.pool is not None})"


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the token and completion tables if they do not exist."""
    await ensure_tokens_schema(pool)
    await ensure_completion_schema(pool)
    logger.info("Calendar schema ensured")
