"""
PostgreSQL-backed local snapshot cache for channel message logs.

Used only to paint a channel before the network answers.  It is never
authoritative: a failed load is an empty snapshot, and every cached row
goes back through the store's dedup path.

Provisional messages are cached with their send status so a failed send
is still visible (and retryable) after a restart.

All queries use parameterized placeholders ($1, $2, ...).
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Iterable, List, Optional

import asyncpg

from chatsync.errors import MalformedPayload
from chatsync.models import Message, SendStatus, message_to_dict, normalize_message

logger = logging.getLogger("chatsync.cache")

_UPSERT_SQL = """
    INSERT INTO message_cache (channel_id, payload, saved_at)
    VALUES ($1, $2::jsonb, NOW())
    ON CONFLICT (channel_id)
    DO UPDATE SET payload = EXCLUDED.payload, saved_at = NOW()
"""

_SELECT_SQL = "SELECT payload FROM message_cache WHERE channel_id = $1"

DEFAULT_MAX_MESSAGES = 200


class MessageCache:
    """Per-channel message snapshots in the ``message_cache`` table.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
        max_messages: Most recent messages kept per channel.
    """

    def __init__(self, pool: asyncpg.Pool, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        self._pool = pool
        self._max_messages = max(1, max_messages)

    async def load(self, channel_id: str) -> List[Message]:
        try:
            raw: Optional[str] = await self._pool.fetchval(_SELECT_SQL, channel_id)
        except (asyncpg.PostgresError, OSError):
            logger.warning("Cache load failed for channel %s", channel_id, exc_info=True)
            return []
        if raw is None:
            return []

        try:
            rows = json.loads(raw) if isinstance(raw, str) else raw
        except json.JSONDecodeError:
            logger.warning("Corrupt cache snapshot for channel %s; ignoring", channel_id)
            return []

        messages: List[Message] = []
        for row in rows or []:
            try:
                msg = normalize_message(row, default_channel_id=channel_id, allow_provisional=True)
            except MalformedPayload:
                logger.debug("Skipping malformed cached row in channel %s", channel_id)
                continue
            # A write still pending at save time has an unknown outcome now.
            if msg.is_provisional and msg.status is SendStatus.PENDING:
                msg = replace(msg, status=SendStatus.FAILED)
            messages.append(msg)
        logger.debug("Loaded %d cached messages for channel %s", len(messages), channel_id)
        return messages

    async def save(self, channel_id: str, messages: Iterable[Message]) -> None:
        snapshot = list(messages)[-self._max_messages:]
        payload = json.dumps([message_to_dict(m) for m in snapshot])
        try:
            await self._pool.execute(_UPSERT_SQL, channel_id, payload)
        except (asyncpg.PostgresError, OSError):
            logger.warning("Cache save failed for channel %s", channel_id, exc_info=True)
            return
        logger.debug("Saved %d messages to cache for channel %s", len(snapshot), channel_id)
