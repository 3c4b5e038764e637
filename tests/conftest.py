"""
Shared fakes for chatsync tests: an in-memory remote service, a push
transport driven by hand, and a message factory.
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from chatsync.models import Channel, Message, Viewer, ViewerTier
from chatsync.push import PushTransport
from chatsync.remote import MessageService

T0 = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)  # 1700000000


def make_message(
    message_id: str,
    channel_id: str = "general",
    sender_id: str = "u-other",
    body: Optional[str] = None,
    offset_ms: int = 0,
    **kwargs: Any,
) -> Message:
    return Message(
        id=message_id,
        channel_id=channel_id,
        sender_id=sender_id,
        body=body if body is not None else f"body of {message_id}",
        created_at=T0 + timedelta(milliseconds=offset_ms),
        **kwargs,
    )


class FakeService(MessageService):
    """Remote service double.  ``write`` assigns ids 42, 43, ..."""

    def __init__(self) -> None:
        self.recent: Dict[str, List[Message]] = {}
        self.fetch_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.write_gate: Optional[asyncio.Event] = None
        self.probe_ok = True
        self.writes: List[Dict[str, Any]] = []
        self.fetches: List[str] = []
        self._ids = itertools.count(42)
        self.ack_offset_ms = 100

    async def fetch_recent(self, channel_id: str) -> List[Message]:
        self.fetches.append(channel_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.recent.get(channel_id, []))

    async def write(self, channel_id, body, attachment=None) -> Message:
        self.writes.append({"channel_id": channel_id, "body": body, "attachment": attachment})
        if self.write_gate is not None:
            await self.write_gate.wait()
        if self.write_error is not None:
            raise self.write_error
        return make_message(
            str(next(self._ids)),
            channel_id=channel_id,
            sender_id="u-me",
            body=body,
            offset_ms=self.ack_offset_ms,
            attachment=attachment,
        )

    async def probe(self) -> bool:
        return self.probe_ok


class FakePush(PushTransport):
    """Push transport whose connection events are fired by the test."""

    def __init__(self) -> None:
        self.channel_id: Optional[str] = None
        self.on_message = None
        self.subscribe_calls: List[str] = []
        self.unsubscribe_calls = 0
        self.connected = False
        self.started = False
        self.closed = False
        self.exhausted = False
        self.retries = 0
        self._on_open: list = []
        self._on_close: list = []

    async def subscribe(self, channel_id, on_message) -> None:
        self.channel_id = channel_id
        self.on_message = on_message
        self.subscribe_calls.append(channel_id)

    async def unsubscribe(self) -> None:
        self.channel_id = None
        self.on_message = None
        self.unsubscribe_calls += 1

    def is_connected(self) -> bool:
        return self.connected

    def add_listener(self, on_open=None, on_close=None) -> None:
        if on_open is not None:
            self._on_open.append(on_open)
        if on_close is not None:
            self._on_close.append(on_close)

    def start(self) -> None:
        self.started = True

    @property
    def reconnect_exhausted(self) -> bool:
        return self.exhausted

    def retry(self) -> None:
        self.exhausted = False
        self.retries += 1

    async def close(self) -> None:
        self.closed = True

    async def open(self) -> None:
        self.connected = True
        for cb in self._on_open:
            await cb()

    async def drop(self) -> None:
        self.connected = False
        for cb in self._on_close:
            await cb()

    async def deliver(self, payload: Dict[str, Any]) -> None:
        assert self.on_message is not None, "no active push subscription"
        await self.on_message(payload)


@pytest.fixture
def viewer() -> Viewer:
    return Viewer(id="u-me", display_name="Alice", tier=ViewerTier.PREMIUM)


@pytest.fixture
def channels() -> List[Channel]:
    return [
        Channel(id="general", access_level="open"),
        Channel(id="premium-lounge", access_level="premium"),
        Channel(id="elite-room", access_level="elite"),
        Channel(id="staff", access_level="admin-only", locked=True),
        Channel(id="announcements", access_level="read-only"),
    ]


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
def push() -> FakePush:
    return FakePush()


