"""
Optimistic send pipeline: apply locally first, reconcile on acknowledgement.

Steps for every outgoing message:

1. ``can_post`` check.  A denial returns before anything touches the store.
2. Build the message with a provisional ``local:<epoch-ms>`` id and apply it
   to the store at once, so the sender sees it before any round trip.
3. Issue the durable write to the remote service, whatever the push
   transport is doing (push only speeds up delivery to *other* viewers).
4. On success swap the provisional entry for the canonical message and
   award XP.
5. On failure leave the message visible, marked ``failed``.  Nothing is
   retried automatically; :meth:`OptimisticSendPipeline.retry` re-issues the
   write when the viewer asks for it.

Once issued, a durable write is never cancelled: it runs in its own task
and the caller awaits it through :func:`asyncio.shield`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from chatsync.access import can_post
from chatsync.errors import (
    DurableWriteFailed,
    InvalidMessage,
    PermissionDenied,
    SendResult,
)
from chatsync.message_store import MessageStore
from chatsync.models import (
    PROVISIONAL_PREFIX,
    Channel,
    Message,
    SendStatus,
    Viewer,
)
from chatsync.remote import MessageService
from chatsync.xp import XPLedger
from shared.audit import AuditLogger

logger = logging.getLogger("chatsync.send_pipeline")

Clock = Callable[[], float]


class ProvisionalIdFactory:
    """Mints ``local:<epoch-ms>`` ids, suffixing ``-<n>`` on collisions.

    Ids are never handed out twice within a session, even if the clock
    steps backwards.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._issued: Set[str] = set()

    def next_id(self) -> str:
        ms = int(self._clock() * 1000)
        candidate = f"{PROVISIONAL_PREFIX}{ms}"
        n = 0
        while candidate in self._issued:
            n += 1
            candidate = f"{PROVISIONAL_PREFIX}{ms}-{n}"
        self._issued.add(candidate)
        return candidate


class OptimisticSendPipeline:
    """Apply-then-reconcile write path.

    Args:
        store: The session's message store.
        service: Remote service providing the durable write.
        viewer: The sending viewer (tier is re-read on every send).
        ledger: XP ledger credited on successful sends.
        audit: Optional audit logger.
        clock: Epoch-seconds clock for ids and timestamps.
    """

    def __init__(
        self,
        store: MessageStore,
        service: MessageService,
        viewer: Viewer,
        ledger: Optional[XPLedger] = None,
        *,
        audit: Optional[AuditLogger] = None,
        clock: Clock = time.time,
    ) -> None:
        self._store = store
        self._service = service
        self._viewer = viewer
        self._ledger = ledger or XPLedger()
        self._audit = audit
        self._clock = clock
        self._ids = ProvisionalIdFactory(clock)
        self._inflight: Set[asyncio.Task[SendResult]] = set()

    @property
    def ledger(self) -> XPLedger:
        return self._ledger

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def set_viewer(self, viewer: Viewer) -> None:
        self._viewer = viewer

    async def _audit_log(self, action: str, details: Dict[str, Any], success: bool) -> None:
        if self._audit is not None:
            await self._audit.log("chatsync", action, details, success=success)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self,
        channel: Channel,
        body: str,
        attachment: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """Send *body* to *channel* optimistically."""
        tier = self._viewer.tier
        if not can_post(tier, channel):
            error = PermissionDenied(channel.id, "post", tier.value)
            logger.info("Send denied: %s", error)
            await self._audit_log(
                "permission_denied",
                {"channel_id": channel.id, "action": "post", "tier": tier.value},
                success=False,
            )
            return SendResult.denied(error)

        body = body or ""
        if not body.strip() and not attachment:
            return SendResult.invalid(InvalidMessage("Message has no body or attachment"))

        provisional = Message(
            id=self._ids.next_id(),
            channel_id=channel.id,
            sender_id=self._viewer.id,
            sender_name=self._viewer.display_name,
            body=body,
            created_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            attachment=dict(attachment) if attachment else None,
            status=SendStatus.PENDING,
        )
        self._store.add_provisional(provisional)
        return await self._issue(provisional)

    async def retry(self, provisional_id: str, channel: Channel) -> SendResult:
        """Re-issue the durable write for a failed provisional message."""
        current = self._store.get(provisional_id)
        if current is None or not current.is_provisional or current.status is not SendStatus.FAILED:
            return SendResult.invalid(
                InvalidMessage(f"No failed message {provisional_id} to retry")
            )
        tier = self._viewer.tier
        if not can_post(tier, channel):
            return SendResult.denied(PermissionDenied(channel.id, "post", tier.value))

        pending = self._store.mark_pending(provisional_id) or replace(current, status=SendStatus.PENDING)
        logger.info("Retrying durable write for %s", provisional_id)
        return await self._issue(pending)

    async def drain(self) -> None:
        """Wait for every in-flight durable write to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Durable write
    # ------------------------------------------------------------------

    async def _issue(self, provisional: Message) -> SendResult:
        task = asyncio.get_running_loop().create_task(
            self._persist(provisional), name=f"chatsync-write-{provisional.id}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _persist(self, provisional: Message) -> SendResult:
        try:
            canonical = await self._service.write(
                provisional.channel_id, provisional.body, provisional.attachment
            )
        except Exception as exc:
            error = DurableWriteFailed(provisional.id, exc)
            failed = self._store.mark_failed(provisional.id) or replace(
                provisional, status=SendStatus.FAILED
            )
            logger.warning(
                "Durable write failed for %s in channel %s: %s",
                provisional.id,
                provisional.channel_id,
                exc,
            )
            await self._audit_log(
                "send_failed",
                {"channel_id": provisional.channel_id, "provisional_id": provisional.id},
                success=False,
            )
            return SendResult.failed(failed, error)

        visible = self._store.replace(provisional.id, canonical) or canonical
        xp_awarded = await self._accrue_xp(provisional)
        logger.info("Sent %s -> %s in channel %s", provisional.id, visible.id, visible.channel_id)
        await self._audit_log(
            "send",
            {
                "channel_id": visible.channel_id,
                "provisional_id": provisional.id,
                "message_id": visible.id,
                "xp": xp_awarded,
            },
            success=True,
        )
        return SendResult.sent(visible, xp_awarded)

    async def _accrue_xp(self, message: Message) -> float:
        try:
            amount, new_level = self._ledger.award_message(
                message.body, message.attachment is not None
            )
        except Exception:
            logger.warning("XP accrual failed for %s", message.id, exc_info=True)
            return 0.0
        if new_level is not None:
            await self._audit_log(
                "level_up",
                {"viewer_id": self._viewer.id, "level": new_level, "xp": self._ledger.xp},
                success=True,
            )
        return amount
