"""
HTTP client for the remote channel/message service.

This is the durable-write path for the sender and the data source for the
poll fallback.  Every response goes through the normalization boundary in
``chatsync.models`` before it leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from chatsync.access import tier_from_subscription
from chatsync.errors import MalformedPayload, RemoteServiceError
from chatsync.models import (
    Channel,
    Message,
    Viewer,
    normalize_channel,
    normalize_message,
)

logger = logging.getLogger("chatsync.remote")


class MessageService(ABC):
    """Interface of the remote service the sync core depends on."""

    @abstractmethod
    async def fetch_recent(self, channel_id: str) -> List[Message]:
        """Return the most recent messages of *channel_id*."""
        ...

    @abstractmethod
    async def write(
        self,
        channel_id: str,
        body: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Persist a message and return its canonical form."""
        ...

    @abstractmethod
    async def probe(self) -> bool:
        """Return ``True`` if the service answers; never raises."""
        ...


def _unwrap(data: Any, *keys: str) -> Any:
    """Return the first present ``data[key]`` for envelope-style responses."""
    if isinstance(data, dict):
        for key in keys:
            if key in data:
                return data[key]
    return data


class RemoteChatService(MessageService):
    """``aiohttp`` implementation of :class:`MessageService`.

    Args:
        base_url: Service root, e.g. ``https://chat.example.com``.
        token: Bearer token for the ``Authorization`` header.
        timeout_seconds: Total timeout per request.
        recent_limit: Page size for :meth:`fetch_recent`.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 10.0,
        recent_limit: int = 50,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._recent_limit = max(1, int(recent_limit))
        self._session: Optional[aiohttp.ClientSession] = None

    async def setup(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._token}"},
            )

    async def cleanup(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "RemoteChatService":
        await self.setup()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()

    async def _make_request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        if self._session is None:
            await self.setup()

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with self._session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise RemoteServiceError(
                        f"{method} {endpoint} -> HTTP {response.status}: {text[:200]}",
                        status=response.status,
                    )
                if "application/json" in response.headers.get("content-type", ""):
                    return await response.json()
                return {"content": await response.text()}
        except aiohttp.ClientError as exc:
            raise RemoteServiceError(f"{method} {endpoint} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise RemoteServiceError(f"{method} {endpoint} timed out") from exc

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def fetch_recent(self, channel_id: str) -> List[Message]:
        data = await self._make_request(
            "GET",
            f"/api/community/channels/{channel_id}/messages",
            params={"limit": str(self._recent_limit)},
        )
        rows = _unwrap(data, "messages", "data")
        if not isinstance(rows, list):
            raise RemoteServiceError(f"Unexpected messages payload for channel {channel_id}")

        messages: List[Message] = []
        for row in rows:
            try:
                messages.append(normalize_message(row, default_channel_id=channel_id))
            except MalformedPayload as exc:
                logger.warning("Skipping malformed message in channel %s: %s", channel_id, exc)
        return messages

    async def write(
        self,
        channel_id: str,
        body: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> Message:
        payload: Dict[str, Any] = {"content": body}
        if attachment:
            payload["file"] = attachment
        data = await self._make_request(
            "POST",
            f"/api/community/channels/{channel_id}/messages",
            json=payload,
        )
        try:
            return normalize_message(_unwrap(data, "message", "data"), default_channel_id=channel_id)
        except MalformedPayload as exc:
            raise RemoteServiceError(f"Unusable write acknowledgement: {exc}") from exc

    async def probe(self) -> bool:
        try:
            await self._make_request("GET", "/health")
            return True
        except RemoteServiceError as exc:
            logger.debug("Reachability probe failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Session context
    # ------------------------------------------------------------------

    async def fetch_channels(self) -> List[Channel]:
        data = await self._make_request("GET", "/api/community/channels")
        rows = _unwrap(data, "channels", "data")
        if not isinstance(rows, list):
            raise RemoteServiceError("Unexpected channels payload")
        channels: List[Channel] = []
        for row in rows:
            try:
                channels.append(normalize_channel(row))
            except MalformedPayload as exc:
                logger.warning("Skipping malformed channel: %s", exc)
        return channels

    async def fetch_viewer(self) -> Viewer:
        data = await self._make_request("GET", "/api/me")
        user = _unwrap(data, "user")
        if not isinstance(user, dict) or user.get("id") is None:
            raise RemoteServiceError("Unexpected viewer payload")
        subscription = user.get("subscription")
        status = dict(subscription) if isinstance(subscription, dict) else dict(user)
        status.setdefault("role", user.get("role"))
        return Viewer(
            id=str(user["id"]),
            display_name=str(user.get("username") or user.get("name") or user["id"]),
            tier=tier_from_subscription(status),
        )
