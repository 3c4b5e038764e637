"""
Database helpers: connection pool management and schema initialisation.

Uses ``asyncpg`` for async PostgreSQL access.  The database is optional:
it backs the local message cache and the ``audit_log`` table.  Without it
the session still works, with no cache and file-only auditing.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: The ``[database]`` section: ``host``, ``database``,
                ``user`` and optionally ``port``, ``password``,
                ``min_size``, ``max_size``.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host", "/var/run/postgresql"),
        port=int(config.get("port", 5432)),
        database=config.get("database", "chatsync"),
        user=config.get("user", "chatsync"),
        password=config.get("password"),
        min_size=int(config.get("min_size", 1)),
        max_size=int(config.get("max_size", 5)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user", "chatsync"),
        config.get("host", "/var/run/postgresql"),
        config.get("database", "chatsync"),
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS message_cache (
        channel_id TEXT PRIMARY KEY,
        payload    JSONB NOT NULL,
        saved_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log (action, timestamp);",
)


async def init_database(pool: asyncpg.Pool) -> None:
    """Create the ``message_cache`` and ``audit_log`` tables.

    Idempotent (``IF NOT EXISTS``); executed once at service startup.
    """
    async with pool.acquire() as conn:
        for statement in _SCHEMA:
            await conn.execute(statement)
    logger.info("Database schema ready")

