"""
Error taxonomy and the send result type.

Only conditions a caller has to act on are exceptions here.  A push
transport outage is a connection *state* (see ``chatsync.health``) and a
duplicate delivery is dropped silently by the dedup engine; neither ever
surfaces as an error.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chatsync.models import Message


class ChatSyncError(Exception):
    """Base class for every error raised by the sync core."""


class PermissionDenied(ChatSyncError):
    """The viewer's tier does not allow this action on the channel."""

    def __init__(self, channel_id: str, action: str, tier: str) -> None:
        self.channel_id = channel_id
        self.action = action
        self.tier = tier
        super().__init__(f"{tier} viewer may not {action} in channel '{channel_id}'")


class InvalidMessage(ChatSyncError):
    """The outgoing message has nothing to send."""


class RemoteServiceError(ChatSyncError):
    """A request to the remote channel/message service failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class DurableWriteFailed(ChatSyncError):
    """The durable write for an optimistic message did not succeed."""

    def __init__(self, provisional_id: str, cause: BaseException) -> None:
        self.provisional_id = provisional_id
        self.cause = cause
        super().__init__(f"Durable write failed for {provisional_id}: {cause}")


class MalformedPayload(ChatSyncError, ValueError):
    """An inbound payload could not be normalized."""


class SendOutcome(str, enum.Enum):
    SENT = "sent"
    DENIED = "denied"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass(frozen=True)
class SendResult:
    """Outcome of ``send``/``retry``.

    ``message`` is the canonical message on success, the failed provisional
    message on a durable-write failure, and ``None`` when nothing was applied.
    """

    status: SendOutcome
    message: Optional["Message"] = None
    error: Optional[ChatSyncError] = None
    xp_awarded: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is SendOutcome.SENT

    @classmethod
    def sent(cls, message: "Message", xp_awarded: float = 0.0) -> "SendResult":
        return cls(SendOutcome.SENT, message=message, xp_awarded=xp_awarded)

    @classmethod
    def denied(cls, error: PermissionDenied) -> "SendResult":
        return cls(SendOutcome.DENIED, error=error)

    @classmethod
    def invalid(cls, error: InvalidMessage) -> "SendResult":
        return cls(SendOutcome.INVALID, error=error)

    @classmethod
    def failed(cls, message: "Message", error: DurableWriteFailed) -> "SendResult":
        return cls(SendOutcome.FAILED, message=message, error=error)
