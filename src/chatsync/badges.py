"""
Unread/mention badges and the notification event stream.

The router sees every newly visible message on every channel, whichever
one is active.  Messages from other senders on an inactive channel bump
that channel's ``unread`` counter; if they mention the viewer they also
bump ``mentions`` and produce a ``mention`` event addressed to the viewer,
otherwise an untargeted ``message`` event.  Activating a channel resets
its badge and nothing else.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Iterable, List, Optional

from chatsync.models import (
    Badge,
    Message,
    NotificationEvent,
    NotificationKind,
    Viewer,
    excerpt,
)

logger = logging.getLogger("chatsync.badges")


class NotificationBus:
    """Fan-out of notification events to any number of queue subscribers."""

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._queues: List[asyncio.Queue[NotificationEvent]] = []

    def subscribe(self) -> asyncio.Queue[NotificationEvent]:
        queue: asyncio.Queue[NotificationEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[NotificationEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: NotificationEvent) -> None:
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Notification queue full; dropping %s event for channel %s",
                    event.kind.value,
                    event.channel_id,
                )


def mention_pattern(viewer: Viewer) -> re.Pattern[str]:
    """Regex matching ``@<display name>`` or ``@<viewer id>``."""
    tokens = {re.escape(viewer.id)}
    if viewer.display_name:
        tokens.add(re.escape(viewer.display_name))
    alternatives = "|".join(sorted(tokens, key=len, reverse=True))
    return re.compile(rf"@(?:{alternatives})(?!\w)", re.IGNORECASE)


class BadgeRouter:
    """Per-channel unread/mention accounting.

    Args:
        viewer: The session's viewer (used for self/mention detection).
        bus: Where notification events are published.
    """

    def __init__(self, viewer: Viewer, bus: Optional[NotificationBus] = None) -> None:
        self._viewer = viewer
        self._mention_re = mention_pattern(viewer)
        self._bus = bus or NotificationBus()
        self._badges: Dict[str, Badge] = {}
        self._active: Optional[str] = None

    @property
    def bus(self) -> NotificationBus:
        return self._bus

    @property
    def active_channel(self) -> Optional[str]:
        return self._active

    def set_viewer(self, viewer: Viewer) -> None:
        self._viewer = viewer
        self._mention_re = mention_pattern(viewer)

    def mentions_viewer(self, body: str) -> bool:
        return bool(self._mention_re.search(body))

    def activate(self, channel_id: str) -> None:
        """Mark *channel_id* active and reset its badge."""
        self._active = channel_id
        self._badges[channel_id] = Badge()

    def deactivate(self) -> None:
        """Leave the active channel; its messages count as unread again."""
        self._active = None

    def get_badges(self) -> Dict[str, Badge]:
        return {cid: Badge(b.unread, b.mentions) for cid, b in self._badges.items()}

    def observe(self, message: Message) -> Optional[NotificationEvent]:
        """Account for one newly visible message."""
        if message.sender_id == self._viewer.id:
            return None
        if message.channel_id == self._active:
            return None

        badge = self._badges.setdefault(message.channel_id, Badge())
        badge.unread += 1

        if self.mentions_viewer(message.body):
            badge.mentions += 1
            event = NotificationEvent(
                kind=NotificationKind.MENTION,
                channel_id=message.channel_id,
                sender_id=message.sender_id,
                excerpt=excerpt(message.body),
                target=self._viewer.id,
                message_id=message.id,
            )
        else:
            event = NotificationEvent(
                kind=NotificationKind.MESSAGE,
                channel_id=message.channel_id,
                sender_id=message.sender_id,
                excerpt=excerpt(message.body),
                message_id=message.id,
            )
        self._bus.publish(event)
        return event

    def observe_many(self, messages: Iterable[Message]) -> List[NotificationEvent]:
        events: List[NotificationEvent] = []
        for message in messages:
            event = self.observe(message)
            if event is not None:
                events.append(event)
        return events
