"""
Structured audit logging for chat session events.

Each event (startup, channel switch, send, failed write, denied access,
connection state change, level up, shutdown) is recorded with a
timestamp, service name, action, details dict and success flag.

Events always go to a JSON Lines file.  When a database pool is supplied
they are also inserted into the ``audit_log`` table.  Writes happen on a
background task that drains a bounded queue in batches, so callers on the
event loop only pay for an enqueue.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

DEFAULT_LOG_PATH = Path("/var/log/chatsync/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class AuditEvent:
    service: str
    action: str
    details: Dict[str, Any]
    success: bool
    timestamp: str

    def to_json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "service": self.service,
                "action": self.action,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def db_row(self) -> tuple[str, str, str, bool]:
        return (self.service, self.action, json.dumps(self.details, default=str), self.success)


class AuditLogger:
    """Buffered audit logger writing to a file and, optionally, the database.

    Args:
        pool: ``asyncpg`` pool with INSERT on ``audit_log``, or ``None``
              for file-only auditing.
        log_path: JSON Lines audit file.
        queue_size: Max queued events before producers wait.
        flush_batch_size: Max events written per batch.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        log_path: Path = DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path)
        self._queue: asyncio.Queue[AuditEvent | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(), name="chatsync-audit-writer"
            )

    def _append_file(self, batch: List[AuditEvent]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(event.to_json_line() for event in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _insert_rows(self, batch: List[AuditEvent]) -> None:
        if self._pool is None:
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_INSERT_AUDIT_SQL, [event.db_row() for event in batch])
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write %d audit events to database", len(batch))

    async def _write_batch(self, batch: List[AuditEvent]) -> None:
        if batch:
            self._append_file(batch)
            await self._insert_rows(batch)

    async def _worker(self) -> None:
        """Drain the queue until the ``None`` sentinel arrives."""
        while True:
            first = await self._queue.get()
            batch: List[AuditEvent] = []
            stop = first is None
            if first is not None:
                batch.append(first)
            while not stop and len(batch) < self._flush_batch_size:
                try:
                    item = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if item is None:
                    stop = True
                else:
                    batch.append(item)

            await self._write_batch(batch)
            if stop:
                return

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Args:
            service: Originating service, normally ``"chatsync"``.
            action: Action identifier (``"send"``, ``"channel_switch"``,
                    ``"permission_denied"``, ...).
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: %s/%s", service, action)
            return
        event = AuditEvent(
            service=service,
            action=action,
            details=dict(details or {}),
            success=success,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._ensure_worker()
        await self._queue.put(event)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        worker = self._worker_task
        if worker is not None:
            await self._queue.put(None)
            await worker
