"""
Duplicate detection across delivery paths.

The same logical message can reach the client up to three times: the
sender's optimistic copy, the push delivery, and the poll delivery.  Ids
alone cannot catch all of them because the optimistic copy carries a
provisional id until the durable write is acknowledged, so the check has
two tiers:

1. exact id match, where a provisional id that has been linked to its
   canonical id also matches that canonical id;
2. heuristic match: same channel, same sender, identical body, and
   timestamps closer than ``window_ms``.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from chatsync.models import Message

logger = logging.getLogger("chatsync.dedup")

DEFAULT_WINDOW_MS = 3000


class DedupEngine:
    """Identifies duplicate deliveries.

    Args:
        window_ms: Maximum timestamp distance for the heuristic match.
    """

    def __init__(self, window_ms: int = DEFAULT_WINDOW_MS) -> None:
        self.window_ms = window_ms
        self._links: Dict[str, str] = {}

    def link(self, provisional_id: str, canonical_id: str) -> None:
        """Record that *provisional_id* was reconciled to *canonical_id*."""
        self._links[provisional_id] = canonical_id

    def resolve(self, message_id: str) -> str:
        """Return the canonical id for *message_id* (itself if unlinked)."""
        return self._links.get(message_id, message_id)

    def heuristic_match(self, existing: Message, candidate: Message) -> bool:
        if existing.channel_id != candidate.channel_id:
            return False
        if existing.sender_id != candidate.sender_id:
            return False
        if existing.body != candidate.body:
            return False
        return abs(candidate.created_at_ms - existing.created_at_ms) < self.window_ms

    def find_match(
        self,
        existing: Iterable[Message],
        candidate: Message,
    ) -> Optional[Message]:
        """Return the stored message *candidate* duplicates, if any.

        An id match always wins over a heuristic match, wherever in
        *existing* the two appear.  For a canonical candidate, a
        provisional heuristic match wins over a canonical one, so the
        delivery reconciles the viewer's pending send rather than an older
        message with the same text.
        """
        candidate_id = self.resolve(candidate.id)
        heuristic: Optional[Message] = None
        provisional: Optional[Message] = None
        for msg in existing:
            if msg.id == candidate.id or self.resolve(msg.id) == candidate_id:
                return msg
            if not self.heuristic_match(msg, candidate):
                continue
            if heuristic is None:
                heuristic = msg
            if provisional is None and msg.is_provisional:
                provisional = msg
        if provisional is not None and not candidate.is_provisional:
            return provisional
        return heuristic

    def is_duplicate(self, existing: Iterable[Message], candidate: Message) -> bool:
        return self.find_match(existing, candidate) is not None
