"""
Chat session facade: one instance per signed-in viewer.

Wires the store, dedup engine, health monitor, transport coordinator,
badge router, send pipeline and XP ledger together and exposes the
operations a UI needs.  All state lives on the instance; nothing is
module-global.

Inbound data (cache snapshot, ``fetch_recent``, push frames, poll results,
background sweeps) all funnel through :meth:`ChatSession._ingest`, which
normalizes, merges into the store and forwards newly visible messages to
the badge router.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from chatsync.access import can_view, tier_from_subscription
from chatsync.badges import BadgeRouter, NotificationBus
from chatsync.cache import MessageCache
from chatsync.dedup import DEFAULT_WINDOW_MS, DedupEngine
from chatsync.errors import InvalidMessage, MalformedPayload, PermissionDenied, SendResult
from chatsync.health import DEFAULT_TICK_SECONDS, ConnectionHealthMonitor
from chatsync.message_store import MessageStore
from chatsync.models import (
    Badge,
    Channel,
    ConnectionState,
    Message,
    NotificationEvent,
    Viewer,
    ViewerTier,
    normalize_message,
)
from chatsync.push import PushTransport
from chatsync.remote import MessageService
from chatsync.send_pipeline import Clock, OptimisticSendPipeline
from chatsync.transport import DEFAULT_POLL_INTERVAL_SECONDS, Subscription, TransportCoordinator
from chatsync.xp import XPLedger
from shared.audit import AuditLogger

logger = logging.getLogger("chatsync.session")


@dataclass(frozen=True)
class SessionSettings:
    """Tunables read from the ``[sync]`` config section."""

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    health_tick_seconds: float = DEFAULT_TICK_SECONDS
    dedup_window_ms: int = DEFAULT_WINDOW_MS
    background_poll_seconds: float = 30.0

    @classmethod
    def from_config(cls, sync: Mapping[str, Any]) -> "SessionSettings":
        return cls(
            poll_interval_seconds=float(sync.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)),
            health_tick_seconds=float(sync.get("health_tick_seconds", DEFAULT_TICK_SECONDS)),
            dedup_window_ms=int(sync.get("dedup_window_ms", DEFAULT_WINDOW_MS)),
            background_poll_seconds=float(sync.get("background_poll_seconds", 30.0)),
        )


class ChatSession:
    """Real-time chat state for one viewer.

    Args:
        viewer: The signed-in viewer.
        service: Remote chat service (durable writes, fetches, probe).
        push: Push transport.
        cache: Optional local snapshot cache.
        audit: Optional audit logger.
        settings: Timing and dedup tunables.
        initial_xp: Starting XP for the viewer's ledger.
        clock: Epoch-seconds clock used for provisional ids.
    """

    def __init__(
        self,
        viewer: Viewer,
        service: MessageService,
        push: PushTransport,
        *,
        cache: Optional[MessageCache] = None,
        audit: Optional[AuditLogger] = None,
        settings: Optional[SessionSettings] = None,
        initial_xp: float = 0.0,
        clock: Clock = time.time,
    ) -> None:
        self._settings = settings or SessionSettings()
        self._viewer = viewer
        self._service = service
        self._push = push
        self._cache = cache
        self._audit = audit

        self._store = MessageStore(DedupEngine(self._settings.dedup_window_ms))
        self._monitor = ConnectionHealthMonitor(service.probe, self._settings.health_tick_seconds)
        self._coordinator = TransportCoordinator(
            push, service, self._monitor, self._settings.poll_interval_seconds
        )
        self._badges = BadgeRouter(viewer, NotificationBus())
        self._ledger = XPLedger(initial_xp)
        self._pipeline = OptimisticSendPipeline(
            self._store, service, viewer, self._ledger, audit=audit, clock=clock
        )

        self._channels: Dict[str, Channel] = {}
        self._active: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._baselined: Set[str] = set()
        self._sweep_task: asyncio.Task[None] | None = None
        self._audit_tasks: Set[asyncio.Task[None]] = set()
        self._started = False

        push.add_listener(on_open=self._monitor.on_push_open, on_close=self._monitor.on_push_closed)
        self._monitor.add_listener(self._on_state_change)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def viewer(self) -> Viewer:
        return self._viewer

    @property
    def active_channel(self) -> Optional[str]:
        return self._active

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def monitor(self) -> ConnectionHealthMonitor:
        return self._monitor

    @property
    def coordinator(self) -> TransportCoordinator:
        return self._coordinator

    @property
    def ledger(self) -> XPLedger:
        return self._ledger

    def get_badges(self) -> Dict[str, Badge]:
        return self._badges.get_badges()

    def get_connection_state(self) -> ConnectionState:
        return self._monitor.state

    def notifications(self) -> asyncio.Queue[NotificationEvent]:
        """Subscribe to the notification event stream."""
        return self._badges.bus.subscribe()

    def messages(self, channel_id: Optional[str] = None) -> List[Message]:
        target = channel_id or self._active
        if target is None:
            return []
        return self._store.messages(target)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        channels: Iterable[Channel],
        initial_channel_id: Optional[str] = None,
    ) -> None:
        self.update_channels(channels)
        if not self._started:
            self._started = True
            self._monitor.start()
            self._push.start()
            if self._settings.background_poll_seconds > 0:
                self._sweep_task = asyncio.get_running_loop().create_task(
                    self._sweep_loop(), name="chatsync-background-sweep"
                )
            logger.info(
                "Session started for viewer %s (tier=%s, %d channels)",
                self._viewer.id,
                self._viewer.tier.value,
                len(self._channels),
            )
        if initial_channel_id is not None:
            await self.switch_active_channel(initial_channel_id)

    async def close(self) -> None:
        """Tear down transports, flush in-flight writes and save the cache."""
        sweep, self._sweep_task = self._sweep_task, None
        if sweep is not None:
            sweep.cancel()
            try:
                await sweep
            except asyncio.CancelledError:
                pass

        await self._coordinator.close()
        self._subscription = None
        await self._push.close()
        await self._monitor.stop()
        await self._pipeline.drain()

        if self._cache is not None:
            for channel_id in self._store.channels():
                await self._cache.save(channel_id, self._store.messages(channel_id))

        if self._audit_tasks:
            await asyncio.gather(*list(self._audit_tasks), return_exceptions=True)
        self._started = False
        logger.info("Session closed for viewer %s", self._viewer.id)

    # ------------------------------------------------------------------
    # Channel context
    # ------------------------------------------------------------------

    def update_channels(self, channels: Iterable[Channel]) -> None:
        self._channels = {channel.id: channel for channel in channels}
        logger.debug("Channel list updated: %d channels", len(self._channels))

    def set_viewer(self, viewer: Viewer) -> None:
        self._viewer = viewer
        self._pipeline.set_viewer(viewer)
        self._badges.set_viewer(viewer)

    async def apply_context(
        self,
        viewer: Viewer,
        channels: Optional[Iterable[Channel]] = None,
    ) -> None:
        """Adopt a refreshed viewer and, optionally, channel list.

        The active channel is left when the new tier or the channel's new
        access level hides it from the viewer, or when it drops out of the
        channel list.
        """
        if channels is not None:
            self.update_channels(channels)
        if viewer != self._viewer:
            if viewer.tier is not self._viewer.tier:
                logger.info("Viewer tier %s -> %s", self._viewer.tier.value, viewer.tier.value)
            self.set_viewer(viewer)
        await self._enforce_active_access()

    async def update_subscription(self, status: Mapping[str, Any]) -> ViewerTier:
        """Recompute the viewer tier from a subscription record."""
        tier = tier_from_subscription(status)
        await self.apply_context(replace(self._viewer, tier=tier))
        return tier

    async def _enforce_active_access(self) -> None:
        if self._active is None:
            return
        channel = self._channels.get(self._active)
        if channel is None:
            logger.warning("Active channel %s is no longer listed", self._active)
        elif can_view(self._viewer.tier, channel):
            return
        else:
            logger.warning(
                "Channel %s no longer viewable at tier %s", channel.id, self._viewer.tier.value
            )
        await self._leave_active()

    async def _leave_active(self) -> None:
        previous, self._active = self._active, None
        self._badges.deactivate()
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await self._coordinator.unsubscribe(sub)
        if previous is not None and self._cache is not None:
            await self._cache.save(previous, self._store.messages(previous))

    async def switch_active_channel(self, channel_id: str) -> None:
        """Make *channel_id* the active channel.

        Raises:
            KeyError: If the channel is unknown.
            PermissionDenied: If the viewer's tier cannot view it.
        """
        channel = self._channels.get(channel_id)
        if channel is None:
            raise KeyError(f"Unknown channel: {channel_id}")

        tier = self._viewer.tier
        if not can_view(tier, channel):
            self._audit_soon(
                "permission_denied",
                {"channel_id": channel_id, "action": "view", "tier": tier.value},
                success=False,
            )
            raise PermissionDenied(channel_id, "view", tier.value)

        if channel_id == self._active:
            self._badges.activate(channel_id)
            return

        previous = self._active
        await self._leave_active()
        self._active = channel_id
        self._badges.activate(channel_id)
        self._baselined.add(channel_id)

        if self._cache is not None:
            self._store.seed(channel_id, await self._cache.load(channel_id))

        try:
            recent = await self._service.fetch_recent(channel_id)
        except Exception as exc:
            logger.warning("Initial fetch for channel %s failed: %s", channel_id, exc)
        else:
            await self._ingest(channel_id, recent)

        if self._active != channel_id:
            # Another switch happened while we were fetching.
            return

        self._subscription = await self._coordinator.subscribe(channel_id, self._ingest)
        logger.info("Active channel %s -> %s", previous, channel_id)
        self._audit_soon("channel_switch", {"from": previous, "to": channel_id}, success=True)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        channel_id: str,
        body: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        channel = self._channels.get(channel_id)
        if channel is None:
            return SendResult.invalid(InvalidMessage(f"Unknown channel: {channel_id}"))
        return await self._pipeline.send(channel, body, attachment)

    async def retry(self, provisional_id: str) -> SendResult:
        message = self._store.get(provisional_id)
        channel = self._channels.get(message.channel_id) if message is not None else None
        if channel is None:
            return SendResult.invalid(InvalidMessage(f"No failed message {provisional_id} to retry"))
        return await self._pipeline.retry(provisional_id, channel)

    # ------------------------------------------------------------------
    # Connection health
    # ------------------------------------------------------------------

    async def set_network_reachable(self, reachable: bool) -> None:
        await self._monitor.on_network_change(reachable)

    def retry_push(self) -> bool:
        """Restart push reconnection if it has given up.

        Returns:
            Whether a retry was started.
        """
        if not self._push.reconnect_exhausted:
            return False
        logger.info("Push reconnection exhausted; retrying")
        self._push.retry()
        return True

    def _on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        self._audit_soon("connection_state", {"from": old.value, "to": new.value}, success=True)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _normalize(self, channel_id: str, items: Iterable[Any]) -> Dict[str, List[Message]]:
        grouped: Dict[str, List[Message]] = defaultdict(list)
        for item in items:
            try:
                message = normalize_message(item, default_channel_id=channel_id)
            except MalformedPayload as exc:
                logger.warning("Dropping malformed payload for channel %s: %s", channel_id, exc)
                continue
            grouped[message.channel_id].append(message)
        return grouped

    def _merge(self, channel_id: str, items: Iterable[Any]) -> List[Message]:
        added: List[Message] = []
        for target, batch in self._normalize(channel_id, items).items():
            added.extend(self._store.merge(target, batch))
        return added

    async def _ingest(self, channel_id: str, items: List[Any]) -> None:
        added = self._merge(channel_id, items)
        if added:
            self._badges.observe_many(added)

    # ------------------------------------------------------------------
    # Background awareness
    # ------------------------------------------------------------------

    async def sweep_once(self) -> None:
        """Fetch recent messages for every viewable inactive channel.

        The first sweep of a channel only establishes a baseline; later
        sweeps feed new messages to the badge router.
        """
        for channel in list(self._channels.values()):
            if channel.id == self._active or not can_view(self._viewer.tier, channel):
                continue
            try:
                recent = await self._service.fetch_recent(channel.id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Background fetch for channel %s failed: %s", channel.id, exc)
                continue

            if channel.id in self._baselined:
                await self._ingest(channel.id, recent)
            else:
                self._baselined.add(channel.id)
                baseline = self._merge(channel.id, recent)
                logger.debug("Baselined channel %s with %d messages", channel.id, len(baseline))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.background_poll_seconds)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("Background sweep failed", exc_info=True)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit_soon(self, action: str, details: Dict[str, Any], success: bool) -> None:
        if self._audit is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._audit.log("chatsync", action, details, success=success)
        )
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)
