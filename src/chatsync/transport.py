"""
Transport coordinator: keeps the active channel live over push, with a
poll loop as fallback.

Invariants:
    - At most one push subscription and at most one poll task exist, both
      for the active channel.
    - While the connection state is ``CONNECTED`` there is no poll task;
      otherwise (and with an active channel) exactly one runs.
    - Poll failures are logged and retried on the next tick at the same
      fixed interval.  During an outage stale data beats silence, so there
      is no backoff here.
    - Subscribers are counted per channel.  The last ``unsubscribe`` tears
      down both the push subscription and the poll task.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatsync.health import ConnectionHealthMonitor
from chatsync.models import ConnectionState
from chatsync.push import PushTransport
from chatsync.remote import MessageService

logger = logging.getLogger("chatsync.transport")

# handler(channel_id, items) -- items are raw push payloads or polled Messages
DeliveryHandler = Callable[[str, List[Any]], Awaitable[None]]

DEFAULT_POLL_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class Subscription:
    """Handle returned by :meth:`TransportCoordinator.subscribe`."""

    channel_id: str
    token: int


class TransportCoordinator:
    """Owns the push subscription and the poll task for the active channel.

    Args:
        push: Push transport.
        service: Remote service used by the poll loop.
        monitor: Connection health monitor; the coordinator follows its state.
        poll_interval: Seconds between poll fetches while not connected.
    """

    def __init__(
        self,
        push: PushTransport,
        service: MessageService,
        monitor: ConnectionHealthMonitor,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._push = push
        self._service = service
        self._monitor = monitor
        self._poll_interval = max(0.0, poll_interval)
        self._channel_id: Optional[str] = None
        self._handlers: Dict[int, DeliveryHandler] = {}
        self._tokens = itertools.count(1)
        self._poll_task: asyncio.Task[None] | None = None
        monitor.add_listener(self._on_state_change)

    @property
    def active_channel(self) -> Optional[str]:
        return self._channel_id

    @property
    def poll_active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscriber_count(self, channel_id: Optional[str] = None) -> int:
        if channel_id is not None and channel_id != self._channel_id:
            return 0
        return len(self._handlers)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, channel_id: str, handler: DeliveryHandler) -> Subscription:
        """Add a subscriber for *channel_id*, switching channels if needed."""
        if self._channel_id is not None and self._channel_id != channel_id:
            await self._teardown()

        if self._channel_id is None:
            self._channel_id = channel_id
            await self._push.subscribe(channel_id, self._on_push_payload)
            self._sync_poll()
            logger.info("Transport active for channel %s", channel_id)

        sub = Subscription(channel_id, next(self._tokens))
        self._handlers[sub.token] = handler
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        if sub.channel_id != self._channel_id:
            return
        self._handlers.pop(sub.token, None)
        if not self._handlers:
            await self._teardown()

    async def _teardown(self) -> None:
        channel_id = self._channel_id
        self._channel_id = None
        self._handlers.clear()
        self._stop_poll()
        await self._push.unsubscribe()
        if channel_id is not None:
            logger.info("Transport torn down for channel %s", channel_id)

    async def close(self) -> None:
        await self._teardown()

    # ------------------------------------------------------------------
    # Poll fallback
    # ------------------------------------------------------------------

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        self._sync_poll()

    def _sync_poll(self) -> None:
        want = (
            self._channel_id is not None
            and self._monitor.state is not ConnectionState.CONNECTED
        )
        if want and not self.poll_active:
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll_loop(self._channel_id),
                name=f"chatsync-poll-{self._channel_id}",
            )
            logger.info("Poll fallback started for channel %s", self._channel_id)
        elif not want and self._poll_task is not None:
            self._stop_poll()

    def _stop_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Poll fallback stopped")

    async def poll_once(self, channel_id: str) -> None:
        try:
            messages = await self._service.fetch_recent(channel_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Poll for channel %s failed (%s); retrying next tick", channel_id, exc)
            return
        if messages and channel_id == self._channel_id:
            await self._dispatch(channel_id, list(messages))

    async def _poll_loop(self, channel_id: str) -> None:
        while True:
            await self.poll_once(channel_id)
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _on_push_payload(self, payload: Dict[str, Any]) -> None:
        if self._channel_id is None:
            return
        await self._dispatch(self._channel_id, [payload])

    async def _dispatch(self, channel_id: str, items: List[Any]) -> None:
        for handler in list(self._handlers.values()):
            try:
                await handler(channel_id, items)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Delivery handler failed for channel %s", channel_id, exc_info=True)
