"""
Core data model for the chat sync client, plus the normalization boundary
that turns every inbound payload into one canonical shape.

Payloads reach the client from four places (push frames, poll responses,
durable-write acknowledgements and the local cache) and historically used
different field names for the same thing (``content`` vs ``body``,
``createdAt`` vs ``created_at`` ...).  :func:`normalize_message` and
:func:`normalize_channel` absorb those variants at ingress so nothing
downstream ever has to look at a raw dict.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from chatsync.errors import MalformedPayload

logger = logging.getLogger("chatsync.models")

# Provisional (optimistic) ids live in their own namespace so they can never
# collide with an id assigned by the remote service.
PROVISIONAL_PREFIX = "local:"

_EXCERPT_LEN = 80


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ViewerTier(str, enum.Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"
    ELITE = "ELITE"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class ConnectionState(str, enum.Enum):
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DEGRADED_SERVER = "DEGRADED_SERVER"
    DEGRADED_NETWORK = "DEGRADED_NETWORK"


class SendStatus(str, enum.Enum):
    SENT = "sent"
    PENDING = "pending"
    FAILED = "failed"


class NotificationKind(str, enum.Enum):
    MESSAGE = "message"
    MENTION = "mention"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Channel:
    """A chat channel as seen by this session."""

    id: str
    access_level: str = "open"
    category: str = "general"
    display_name: str = ""
    locked: bool = False
    permission_type: str = "read-write"


@dataclass(frozen=True, slots=True)
class Message:
    """A single chat message in canonical form."""

    id: str
    channel_id: str
    sender_id: str
    body: str
    created_at: datetime
    sender_name: Optional[str] = None
    attachment: Optional[Dict[str, Any]] = None
    edited: bool = False
    status: SendStatus = SendStatus.SENT

    @property
    def is_provisional(self) -> bool:
        return is_provisional_id(self.id)

    @property
    def created_at_ms(self) -> int:
        return int(self.created_at.timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class Viewer:
    """The signed-in user this session runs for."""

    id: str
    display_name: str
    tier: ViewerTier = ViewerTier.FREE


@dataclass
class Badge:
    """Per-channel unread/mention counters."""

    unread: int = 0
    mentions: int = 0


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """Emitted by the badge router for traffic on inactive channels.

    ``target`` is the viewer id for mentions and ``None`` for untargeted
    broadcast events.
    """

    kind: NotificationKind
    channel_id: str
    sender_id: str
    excerpt: str
    target: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def is_provisional_id(message_id: str) -> bool:
    return message_id.startswith(PROVISIONAL_PREFIX)


def excerpt(body: str, limit: int = _EXCERPT_LEN) -> str:
    """Single-line preview of *body*, truncated to *limit* characters."""
    flat = " ".join(body.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 1].rstrip() + "…"


# ---------------------------------------------------------------------------
# Normalization boundary
# ---------------------------------------------------------------------------

_ID_KEYS = ("id", "messageId", "message_id", "_id")
_CHANNEL_KEYS = ("channelId", "channel_id", "channel")
_SENDER_ID_KEYS = ("senderId", "sender_id", "userId", "user_id")
_SENDER_NAME_KEYS = ("senderName", "sender_name", "username")
_BODY_KEYS = ("content", "body", "text", "message")
_TIMESTAMP_KEYS = ("createdAt", "created_at", "timestamp", "ts")
_ATTACHMENT_KEYS = ("attachment", "file")
_EDITED_KEYS = ("edited", "isEdited", "is_edited")

_ACCESS_ALIASES = {
    "a7fx": "elite",
    "admin": "admin-only",
    "readonly": "read-only",
}

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10**11


def _first(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string, epoch number (s or ms) or datetime to UTC.

    Raises:
        MalformedPayload: If *value* cannot be interpreted as a timestamp.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool):
        raise MalformedPayload(f"Unparsable timestamp: {value!r}")

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str):
        raw = value.strip()
        if re.fullmatch(r"-?\d+(\.\d+)?", raw):
            return parse_timestamp(float(raw))
        # fromisoformat() before 3.11 does not accept a trailing "Z"
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(raw))
        except ValueError:
            pass

    raise MalformedPayload(f"Unparsable timestamp: {value!r}")


def _sender_field(payload: Mapping[str, Any], keys: tuple[str, ...], nested: tuple[str, ...]) -> Any:
    value = _first(payload, keys)
    if value is not None:
        return value
    sender = payload.get("sender")
    if isinstance(sender, Mapping):
        return _first(sender, nested)
    return None


def _normalize_attachment(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or value == "" or value == {}:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        return {"url": value}
    raise MalformedPayload(f"Unsupported attachment descriptor: {type(value).__name__}")


def normalize_message(
    payload: Mapping[str, Any],
    default_channel_id: Optional[str] = None,
    *,
    allow_provisional: bool = False,
) -> Message:
    """Parse a raw message payload into a canonical :class:`Message`.

    Args:
        payload: Raw dict from a transport, the remote service or the cache.
        default_channel_id: Channel to assume when the payload omits it
            (poll responses are scoped to one channel and often do).
        allow_provisional: Accept ids in the provisional namespace.  Only
            the local cache may carry those; remote payloads never do.

    Raises:
        MalformedPayload: On a missing id/channel or an unparsable timestamp.
    """
    if isinstance(payload, Message):
        return payload
    if not isinstance(payload, Mapping):
        raise MalformedPayload(f"Expected a mapping, got {type(payload).__name__}")

    raw_id = _first(payload, _ID_KEYS)
    if raw_id is None or str(raw_id).strip() == "":
        raise MalformedPayload("Message payload has no id")
    message_id = str(raw_id).strip()
    if is_provisional_id(message_id) and not allow_provisional:
        raise MalformedPayload(f"Remote payload uses a provisional id: {message_id}")

    channel = _first(payload, _CHANNEL_KEYS)
    if isinstance(channel, Mapping):
        channel = channel.get("id")
    channel_id = str(channel) if channel is not None else default_channel_id
    if not channel_id:
        raise MalformedPayload(f"Message {message_id} has no channel id")

    raw_ts = _first(payload, _TIMESTAMP_KEYS)
    if raw_ts is None:
        raise MalformedPayload(f"Message {message_id} has no timestamp")

    sender_id = _sender_field(payload, _SENDER_ID_KEYS, ("id", "userId"))
    sender_name = _sender_field(payload, _SENDER_NAME_KEYS, ("username", "name"))
    body = _first(payload, _BODY_KEYS)

    status_raw = payload.get("status")
    try:
        status = SendStatus(status_raw) if status_raw else SendStatus.SENT
    except ValueError:
        status = SendStatus.SENT

    return Message(
        id=message_id,
        channel_id=channel_id,
        sender_id=str(sender_id) if sender_id is not None else "",
        body=str(body) if body is not None else "",
        created_at=parse_timestamp(raw_ts),
        sender_name=str(sender_name) if sender_name is not None else None,
        attachment=_normalize_attachment(_first(payload, _ATTACHMENT_KEYS)),
        edited=_as_bool(_first(payload, _EDITED_KEYS)),
        status=status,
    )


def message_to_dict(msg: Message) -> Dict[str, Any]:
    """Serialise a message to the canonical JSON-friendly shape."""
    return {
        "id": msg.id,
        "channel_id": msg.channel_id,
        "sender_id": msg.sender_id,
        "sender_name": msg.sender_name,
        "body": msg.body,
        "created_at": msg.created_at.isoformat(),
        "attachment": msg.attachment,
        "edited": msg.edited,
        "status": msg.status.value,
    }


def normalize_access_level(value: Any) -> str:
    """Lower-case, hyphenate and de-alias a channel access level."""
    level = re.sub(r"[\s_]+", "-", str(value or "open").strip().lower())
    return _ACCESS_ALIASES.get(level, level)


def normalize_channel(payload: Mapping[str, Any]) -> Channel:
    """Parse a raw channel payload into a :class:`Channel`.

    Raises:
        MalformedPayload: If the payload has no id.
    """
    if isinstance(payload, Channel):
        return payload
    raw_id = _first(payload, ("id", "channelId", "channel_id", "name"))
    if raw_id is None:
        raise MalformedPayload("Channel payload has no id")

    access_level = normalize_access_level(
        _first(payload, ("accessLevel", "access_level"))
    )
    locked_raw = payload.get("locked")
    locked = _as_bool(locked_raw) if locked_raw is not None else access_level == "admin-only"
    permission_type = str(
        _first(payload, ("permissionType", "permission_type")) or "read-write"
    ).strip().lower()

    return Channel(
        id=str(raw_id),
        access_level=access_level,
        category=str(payload.get("category") or "general"),
        display_name=str(
            _first(payload, ("displayName", "display_name", "name")) or raw_id
        ),
        locked=locked,
        permission_type=permission_type,
    )
