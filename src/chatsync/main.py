"""
chatsync entry point: runs one viewer's real-time chat session as a
long-lived service.

Key behaviours:
    - Loads configuration from ``/etc/chatsync/settings.toml`` (or
      ``$CHATSYNC_CONFIG``).
    - The API token comes from the system keychain or an encrypted file.
    - PostgreSQL is optional; with it the session gets a local message
      cache and audit rows in ``audit_log``.
    - Feeds a host reachability signal to the session every health tick
      and refreshes the viewer's tier and channel list periodically.
    - Handles SIGTERM / SIGINT for graceful shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import toml

from chatsync.access import can_view
from chatsync.cache import DEFAULT_MAX_MESSAGES, MessageCache
from chatsync.errors import PermissionDenied, RemoteServiceError
from chatsync.models import Channel, NotificationEvent, NotificationKind, Viewer
from chatsync.push import DEFAULT_BACKOFF_SECONDS, WebSocketPushTransport
from chatsync.remote import RemoteChatService
from chatsync.session import ChatSession, SessionSettings
from shared.audit import DEFAULT_LOG_PATH, AuditLogger
from shared.db import get_connection_pool, init_database
from shared.secrets import load_api_token

logger = logging.getLogger("chatsync.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("CHATSYNC_CONFIG", "/etc/chatsync/settings.toml")
)

_REQUIRED_KEYS = [
    ("remote", "base_url"),
    ("push", "url"),
]

DEFAULT_CONTEXT_REFRESH_SECONDS = 300.0

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)
    for keys in _REQUIRED_KEYS:
        obj = config
        for k in keys:
            if not isinstance(obj, dict) or k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]
    return config


def reachability_target(config: Dict[str, Any]) -> tuple[str, int]:
    """Host and port used as the network reachability signal."""
    sync_cfg = config.get("sync", {})
    parsed = urlparse(config["remote"]["base_url"])
    host = sync_cfg.get("reachability_host") or parsed.hostname or "localhost"
    port = sync_cfg.get("reachability_port") or parsed.port or (443 if parsed.scheme == "https" else 80)
    return host, int(port)


def pick_initial_channel(
    channels: List[Channel], viewer: Viewer, preferred: Optional[str] = None
) -> Optional[str]:
    if preferred:
        return preferred
    for channel in channels:
        if can_view(viewer.tier, channel):
            return channel.id
    return None


async def network_reachable(host: str, port: int, timeout: float = 3.0) -> bool:
    """Whether a TCP connection to ``host:port`` can be opened."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


# ---------------------------------------------------------------------------
# Background helpers
# ---------------------------------------------------------------------------


async def _log_notifications(queue: asyncio.Queue[NotificationEvent]) -> None:
    while True:
        event = await queue.get()
        if event.kind is NotificationKind.MENTION:
            logger.info(
                "Mention in #%s from %s: %s", event.channel_id, event.sender_id, event.excerpt
            )
        else:
            logger.debug(
                "New message in #%s from %s: %s", event.channel_id, event.sender_id, event.excerpt
            )


async def refresh_context(session: ChatSession, remote: RemoteChatService) -> None:
    """Re-read the viewer's tier and the channel list.

    Goes through :meth:`ChatSession.apply_context`, which leaves the active
    channel if the refreshed context no longer lets the viewer see it.
    """
    viewer = await remote.fetch_viewer()
    channels = await remote.fetch_channels()
    await session.apply_context(viewer, channels)
    logger.debug("Context refreshed: tier=%s, %d channels", viewer.tier.value, len(channels))


# ---------------------------------------------------------------------------
# Shutdown handling
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    remaining = max(0.0, seconds)
    while remaining > 0:
        if _shutdown_event.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main() -> None:
    """Top-level async entry point for the chatsync service."""
    config = load_config()
    remote_cfg = config["remote"]
    push_cfg = config["push"]
    sync_cfg = config.get("sync", {})
    cache_cfg = config.get("cache", {})
    audit_cfg = config.get("audit", {})
    settings = SessionSettings.from_config(sync_cfg)

    token = load_api_token(remote_cfg)

    pool = None
    audit: Optional[AuditLogger] = None
    remote: Optional[RemoteChatService] = None
    session: Optional[ChatSession] = None
    notifier: Optional[asyncio.Task[None]] = None
    try:
        if "database" in config:
            pool = await get_connection_pool(dict(config["database"]))
            await init_database(pool)

        audit = AuditLogger(pool, Path(audit_cfg.get("log_path", DEFAULT_LOG_PATH)))

        remote = RemoteChatService(
            remote_cfg["base_url"],
            token,
            timeout_seconds=float(remote_cfg.get("timeout_seconds", 10)),
            recent_limit=int(remote_cfg.get("recent_limit", 50)),
        )
        await remote.setup()
        viewer = await remote.fetch_viewer()
        channels = await remote.fetch_channels()
        logger.info("Signed in as %s (id=%s, tier=%s)", viewer.display_name, viewer.id, viewer.tier.value)

        push = WebSocketPushTransport(
            push_cfg["url"],
            token,
            backoff_seconds=push_cfg.get("reconnect_backoff_seconds", DEFAULT_BACKOFF_SECONDS),
            heartbeat_ms=int(float(push_cfg.get("heartbeat_seconds", 10)) * 1000),
        )
        cache = None
        if pool is not None and cache_cfg.get("enabled", True):
            cache = MessageCache(pool, int(cache_cfg.get("max_messages", DEFAULT_MAX_MESSAGES)))

        session = ChatSession(viewer, remote, push, cache=cache, audit=audit, settings=settings)
        await audit.log(
            "chatsync",
            "startup",
            {"viewer_id": viewer.id, "tier": viewer.tier.value, "channels": len(channels)},
            success=True,
        )

        initial = pick_initial_channel(channels, viewer, sync_cfg.get("initial_channel"))
        try:
            await session.start(channels, initial)
        except (PermissionDenied, KeyError) as exc:
            logger.warning("Could not open initial channel %s: %s", initial, exc)

        notifier = asyncio.get_running_loop().create_task(
            _log_notifications(session.notifications()), name="chatsync-notifications"
        )

        host, port = reachability_target(config)
        refresh_every = float(sync_cfg.get("context_refresh_seconds", DEFAULT_CONTEXT_REFRESH_SECONDS))
        last_refresh = time.monotonic()

        while not _shutdown_event.is_set():
            await session.set_network_reachable(await network_reachable(host, port))
            if refresh_every > 0 and time.monotonic() - last_refresh >= refresh_every:
                last_refresh = time.monotonic()
                session.retry_push()
                try:
                    await refresh_context(session, remote)
                except RemoteServiceError as exc:
                    logger.warning("Context refresh failed: %s", exc)
            await _sleep_with_shutdown(settings.health_tick_seconds)
    finally:
        if notifier is not None:
            notifier.cancel()
        if session is not None:
            try:
                await session.close()
            except Exception:
                logger.exception("Failed to close chat session")
        if audit is not None:
            try:
                await audit.log("chatsync", "shutdown", {}, success=True)
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if remote is not None:
            await remote.cleanup()
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("chatsync shut down cleanly.")


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
