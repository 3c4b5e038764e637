"""
In-memory message log for the client session.

Holds, per channel, the visible messages ordered by ``created_at``
ascending with ties broken by arrival order (first seen keeps its place).
Every inbound message goes through :class:`~chatsync.dedup.DedupEngine`
before it becomes visible, so merging the same batch twice leaves the
store unchanged.

The store is the only component that mutates messages.  Everything runs on
one asyncio event loop, so no locking is needed; if this is ever driven
from several threads, each channel log needs its own lock and ``merge`` /
``replace`` must hold it across the dedup lookup.
"""

from __future__ import annotations

import bisect
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from chatsync.dedup import DedupEngine
from chatsync.models import Message, SendStatus

logger = logging.getLogger("chatsync.message_store")


@dataclass
class _Entry:
    message: Message
    seq: int


def _sort_key(entry: _Entry) -> Tuple[datetime, int]:
    return entry.message.created_at, entry.seq


class MessageStore:
    """Ordered, append-only per-channel message log with idempotent merge.

    Args:
        dedup: Dedup engine shared with the rest of the session.
    """

    def __init__(self, dedup: Optional[DedupEngine] = None) -> None:
        self._dedup = dedup or DedupEngine()
        self._logs: Dict[str, List[_Entry]] = {}
        self._index: Dict[str, str] = {}
        self._tombstones: Set[str] = set()
        self._arrival = itertools.count()

    @property
    def dedup(self) -> DedupEngine:
        return self._dedup

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def messages(self, channel_id: str) -> List[Message]:
        return [entry.message for entry in self._logs.get(channel_id, [])]

    def get(self, message_id: str) -> Optional[Message]:
        entry = self._find(message_id)
        return entry.message if entry else None

    def channels(self) -> List[str]:
        return list(self._logs)

    def count(self, channel_id: str) -> int:
        return len(self._logs.get(channel_id, []))

    def _find(self, message_id: str) -> Optional[_Entry]:
        channel_id = self._index.get(message_id)
        if channel_id is None:
            return None
        for entry in self._logs.get(channel_id, []):
            if entry.message.id == message_id:
                return entry
        return None

    def _is_tombstoned(self, message_id: str) -> bool:
        return (
            message_id in self._tombstones
            or self._dedup.resolve(message_id) in self._tombstones
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def _insert(self, channel_id: str, message: Message, seq: Optional[int] = None) -> None:
        entries = self._logs.setdefault(channel_id, [])
        entry = _Entry(message, next(self._arrival) if seq is None else seq)
        bisect.insort(entries, entry, key=_sort_key)
        self._index[message.id] = channel_id

    def seed(self, channel_id: str, cached: Iterable[Message]) -> int:
        """Load a cached snapshot for *channel_id*.

        The cache is never authoritative; its rows go through the same
        dedup path as network deliveries.

        Returns:
            Number of cached messages that became visible.
        """
        added = self.merge(channel_id, cached)
        logger.debug("Seeded channel=%s from cache: %d messages", channel_id, len(added))
        return len(added)

    def merge(self, channel_id: str, incoming: Iterable[Message]) -> List[Message]:
        """Idempotently union *incoming* into the channel log.

        A canonical message that heuristically matches a still-provisional
        entry reconciles that entry in place.  A known message delivered
        again with ``edited`` set and a new body updates the stored body.

        Returns:
            The messages that became newly visible, in input order.
        """
        added: List[Message] = []
        for candidate in incoming:
            if candidate.channel_id != channel_id:
                logger.warning(
                    "Dropping message_id=%s: channel %s does not match merge target %s",
                    candidate.id,
                    candidate.channel_id,
                    channel_id,
                )
                continue
            if self._is_tombstoned(candidate.id):
                logger.debug("Ignoring removed message_id=%s", candidate.id)
                continue

            entries = self._logs.setdefault(channel_id, [])
            match = self._dedup.find_match((e.message for e in entries), candidate)

            if match is None:
                self._insert(channel_id, candidate)
                added.append(candidate)
                continue

            same_id = self._dedup.resolve(match.id) == self._dedup.resolve(candidate.id)
            if same_id:
                if candidate.edited and candidate.body != match.body:
                    entry = self._find(match.id)
                    if entry is not None:
                        entry.message = replace(
                            match,
                            body=candidate.body,
                            attachment=candidate.attachment,
                            edited=True,
                        )
                        logger.debug("Applied edit to message_id=%s", match.id)
                continue

            if match.is_provisional and not candidate.is_provisional:
                logger.debug(
                    "Delivery %s confirms provisional %s", candidate.id, match.id
                )
                self.replace(match.id, candidate)
                continue

            logger.debug(
                "Duplicate delivery message_id=%s matches %s", candidate.id, match.id
            )
        return added

    def add_provisional(self, message: Message) -> None:
        """Apply an optimistic local message immediately.

        Only the id is checked; a sender may legitimately repeat a message
        within the heuristic dedup window.

        Raises:
            ValueError: If *message* is not provisional or its id was used.
        """
        if not message.is_provisional:
            raise ValueError(f"Not a provisional id: {message.id}")
        if message.id in self._index or self._dedup.resolve(message.id) != message.id:
            raise ValueError(f"Provisional id already used: {message.id}")
        self._insert(message.channel_id, message)
        logger.debug("Applied provisional message_id=%s", message.id)

    def replace(self, provisional_id: str, canonical: Message) -> Optional[Message]:
        """Swap a provisional entry for its canonical counterpart in place.

        The entry keeps its arrival position; it only moves if the
        canonical timestamp sorts it elsewhere.  Safe to call again after
        the entry has already been reconciled.

        Returns:
            The visible canonical message, or ``None`` if it was removed.
        """
        canonical = replace(canonical, status=SendStatus.SENT)
        self._dedup.link(provisional_id, canonical.id)
        if provisional_id in self._tombstones:
            # Removed before the ack arrived; the canonical id inherits it.
            self._tombstones.add(canonical.id)
        entry = self._find(provisional_id)

        if entry is None:
            # Reconciled earlier by a push/poll delivery, or never applied here.
            if canonical.id not in self._index and not self._is_tombstoned(canonical.id):
                self.merge(canonical.channel_id, [canonical])
            return self.get(canonical.id)

        channel_id = self._index.pop(provisional_id)
        entries = self._logs[channel_id]
        entries.remove(entry)

        if canonical.id in self._index or self._is_tombstoned(canonical.id):
            # Canonical copy is already visible (or moderated); retire ours.
            logger.debug("Retired provisional %s; %s already present", provisional_id, canonical.id)
            return self.get(canonical.id)

        if canonical.channel_id != channel_id:
            canonical = replace(canonical, channel_id=channel_id)
        self._insert(channel_id, canonical, seq=entry.seq)
        logger.debug("Reconciled %s -> %s", provisional_id, canonical.id)
        return canonical

    def remove(self, message_id: str) -> bool:
        """Remove a message for moderation; later deliveries of it are ignored."""
        canonical_id = self._dedup.resolve(message_id)
        self._tombstones.add(message_id)
        self._tombstones.add(canonical_id)
        removed = False
        for mid in {message_id, canonical_id}:
            entry = self._find(mid)
            if entry is None:
                continue
            channel_id = self._index.pop(mid)
            self._logs[channel_id].remove(entry)
            removed = True
        if removed:
            logger.info("Removed message_id=%s", message_id)
        return removed

    def _set_status(self, message_id: str, status: SendStatus) -> Optional[Message]:
        entry = self._find(message_id)
        if entry is None:
            return None
        entry.message = replace(entry.message, status=status)
        return entry.message

    def mark_failed(self, message_id: str) -> Optional[Message]:
        return self._set_status(message_id, SendStatus.FAILED)

    def mark_pending(self, message_id: str) -> Optional[Message]:
        return self._set_status(message_id, SendStatus.PENDING)
