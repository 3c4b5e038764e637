"""
Push transport: a persistent WebSocket over which the chat service
delivers new messages for the subscribed channel as STOMP ``MESSAGE``
frames.

Key behaviours:
    - One connection per session; the channel subscription is swapped in
      place on channel switch (no reconnect).
    - ``CONNECT`` carries the bearer token; the transport reports itself
      live only after the server answers ``CONNECTED``.
    - Reconnects on a fixed 1/2/4/8/16 s schedule with a little jitter, then
      stops and flags ``reconnect_exhausted`` until :meth:`retry` is called.
      The poll fallback keeps the chat usable in the meantime.
    - Open/close transitions are reported to registered listeners so the
      health monitor can track them.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import websockets
import websockets.exceptions

from chatsync.stomp import StompFrame, encode_frame, is_heartbeat, parse_frame

logger = logging.getLogger("chatsync.push")

PayloadCallback = Callable[[Dict[str, Any]], Awaitable[None]]
SignalCallback = Callable[[], Any]

DEFAULT_BACKOFF_SECONDS: Sequence[float] = (1.0, 2.0, 4.0, 8.0, 16.0)


def topic_for(channel_id: str) -> str:
    return f"/topic/chat/{channel_id}"


def backoff_with_jitter(base: float) -> float:
    """Add up to ``min(0.5 s, 25 %)`` of random jitter to *base*."""
    return base + random.uniform(0.0, min(0.5, base * 0.25))


class PushTransport(ABC):
    """Interface the transport coordinator drives."""

    @abstractmethod
    async def subscribe(self, channel_id: str, on_message: PayloadCallback) -> None:
        """Deliver payloads for *channel_id* to *on_message*, replacing any
        previous subscription."""
        ...

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Drop the current channel subscription."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    def add_listener(
        self,
        on_open: Optional[SignalCallback] = None,
        on_close: Optional[SignalCallback] = None,
    ) -> None:
        """Register open/close callbacks.  No-op for connectionless transports."""

    def start(self) -> None:
        """Begin connecting in the background."""

    @property
    def reconnect_exhausted(self) -> bool:
        """Whether reconnection has stopped until :meth:`retry` is called."""
        return False

    def retry(self) -> None:
        """Resume reconnecting after giving up."""

    async def close(self) -> None:
        """Release the connection."""


class WebSocketPushTransport(PushTransport):
    """STOMP-over-WebSocket push client.

    Args:
        url: ``ws://`` or ``wss://`` endpoint (e.g. ``wss://chat.example/ws``).
        token: Bearer token sent in the STOMP ``CONNECT`` frame.
        backoff_seconds: Reconnect delays; the transport gives up after the
            last one until :meth:`retry`.
        heartbeat_ms: Heart-beat interval offered to the server.
        connect_timeout: Seconds to wait for the ``CONNECTED`` frame.
        connect: Connection factory (defaults to ``websockets.connect``).
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        backoff_seconds: Sequence[float] = DEFAULT_BACKOFF_SECONDS,
        heartbeat_ms: int = 10000,
        connect_timeout: float = 10.0,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._backoff = tuple(float(s) for s in backoff_seconds)
        self._heartbeat_ms = max(0, int(heartbeat_ms))
        self._connect_timeout = connect_timeout
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._connected = False
        self._closed = False
        self._attempt = 0
        self._exhausted = False
        self._retry_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._channel_id: Optional[str] = None
        self._on_message: Optional[PayloadCallback] = None
        self._sub_id: Optional[str] = None
        self._sub_ids = itertools.count(1)
        self._on_open: List[SignalCallback] = []
        self._on_close: List[SignalCallback] = []

    # ----- public API -----------------------------------------------------

    def is_connected(self) -> bool:
        return self._connected

    @property
    def reconnect_exhausted(self) -> bool:
        return self._exhausted

    @property
    def channel_id(self) -> Optional[str]:
        return self._channel_id

    def add_listener(
        self,
        on_open: Optional[SignalCallback] = None,
        on_close: Optional[SignalCallback] = None,
    ) -> None:
        if on_open is not None:
            self._on_open.append(on_open)
        if on_close is not None:
            self._on_close.append(on_close)

    def start(self) -> None:
        if self._task is None and not self._closed:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="chatsync-push"
            )

    def retry(self) -> None:
        """Reset the backoff schedule and reconnect after giving up."""
        self._attempt = 0
        self._exhausted = False
        self._retry_event.set()

    async def close(self) -> None:
        self._closed = True
        self._retry_event.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connected = False
        self._ws = None

    async def subscribe(self, channel_id: str, on_message: PayloadCallback) -> None:
        if self._sub_id is not None:
            await self._send_unsubscribe()
        self._channel_id = channel_id
        self._on_message = on_message
        if self._connected:
            await self._send_subscribe()
        logger.debug("Push subscription target -> %s", channel_id)

    async def unsubscribe(self) -> None:
        if self._sub_id is not None:
            await self._send_unsubscribe()
        self._channel_id = None
        self._on_message = None

    # ----- frames ---------------------------------------------------------

    async def _send(self, frame: str) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(frame)
            return True
        except (OSError, websockets.exceptions.WebSocketException):
            logger.debug("Push send failed; will resubscribe on reconnect", exc_info=True)
            return False

    async def _send_subscribe(self) -> None:
        if self._channel_id is None:
            return
        sub_id = f"sub-{next(self._sub_ids)}"
        self._sub_id = sub_id
        await self._send(
            encode_frame(
                "SUBSCRIBE",
                {"id": sub_id, "destination": topic_for(self._channel_id), "ack": "auto"},
            )
        )

    async def _send_unsubscribe(self) -> None:
        sub_id, self._sub_id = self._sub_id, None
        if sub_id is not None and self._connected:
            await self._send(encode_frame("UNSUBSCRIBE", {"id": sub_id}))

    def _connect_frame(self) -> str:
        heartbeat = f"{self._heartbeat_ms},{self._heartbeat_ms}"
        return encode_frame(
            "CONNECT",
            {
                "accept-version": "1.2",
                "host": urlparse(self._url).hostname or "localhost",
                "heart-beat": heartbeat,
                "Authorization": f"Bearer {self._token}",
            },
        )

    async def _handle_frame(self, frame: StompFrame) -> None:
        if frame.command == "ERROR":
            raise ConnectionError(
                f"Push server error: {frame.headers.get('message', frame.body.strip())}"
            )
        if frame.command != "MESSAGE":
            return

        sub_id = frame.headers.get("subscription")
        destination = frame.headers.get("destination")
        if self._channel_id is None or self._on_message is None:
            return
        if sub_id != self._sub_id and destination != topic_for(self._channel_id):
            logger.debug("Ignoring frame for stale subscription %s", sub_id)
            return

        body = frame.body.strip()
        if not body or body[0] not in "{[":
            return
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Dropping push frame with invalid JSON body")
            return

        payloads = data if isinstance(data, list) else [data]
        for payload in payloads:
            if not isinstance(payload, dict):
                continue
            try:
                await self._on_message(payload)
            except Exception:
                logger.warning("Push message handler failed", exc_info=True)

    # ----- connection loop ------------------------------------------------

    async def _notify(self, callbacks: List[SignalCallback]) -> None:
        for callback in list(callbacks):
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Push listener failed", exc_info=True)

    def _next_delay(self) -> Optional[float]:
        if self._attempt >= len(self._backoff):
            return None
        base = self._backoff[self._attempt]
        self._attempt += 1
        return backoff_with_jitter(base)

    async def _session(self) -> None:
        async with self._connect(self._url) as ws:
            await ws.send(self._connect_frame())
            while True:
                raw = await asyncio.wait_for(ws.recv(), timeout=self._connect_timeout)
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                if not is_heartbeat(raw):
                    break
            frame = parse_frame(raw)
            if frame.command != "CONNECTED":
                raise ConnectionError(f"Expected CONNECTED, got {frame.command}")

            self._ws = ws
            self._connected = True
            self._attempt = 0
            self._exhausted = False
            logger.info("Push transport connected: %s", self._url)
            try:
                await self._notify(self._on_open)
                if self._channel_id is not None:
                    await self._send_subscribe()
                async for raw in ws:
                    if isinstance(raw, bytes):
                        raw = raw.decode("utf-8", errors="replace")
                    if is_heartbeat(raw):
                        continue
                    await self._handle_frame(parse_frame(raw))
            finally:
                self._ws = None
                self._connected = False
                self._sub_id = None
                logger.info("Push transport disconnected")
                if not self._closed:
                    await self._notify(self._on_close)

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except (
                OSError,
                ValueError,
                asyncio.TimeoutError,
                websockets.exceptions.WebSocketException,
            ) as exc:
                logger.warning("Push connection failed: %s", exc)

            if self._closed:
                break

            delay = self._next_delay()
            if delay is None:
                self._exhausted = True
                logger.warning(
                    "Push reconnect gave up after %d attempts; polling only until retry",
                    len(self._backoff),
                )
                self._retry_event.clear()
                await self._retry_event.wait()
                continue

            logger.info("Push reconnect attempt %d in %.1fs", self._attempt, delay)
            await asyncio.sleep(delay)
