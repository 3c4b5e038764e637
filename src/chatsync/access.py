"""
Channel access policy: who may view and who may post where.

Rules are evaluated in order against the channel's normalized access level:

    admin-only  -> ADMIN / SUPER_ADMIN only (view and post)
    read-only   -> everyone views, ADMIN / SUPER_ADMIN post
    open, free  -> everyone views and posts
    premium     -> PREMIUM, ELITE, ADMIN, SUPER_ADMIN
    elite       -> ELITE, ADMIN, SUPER_ADMIN
    (other)     -> permissive

The permissive default exists for backwards compatibility with channels
created before access levels were introduced; it is not a security
boundary; the remote service enforces its own checks.

A ``locked`` channel, or one whose permission type is ``read-only``, keeps
its view rule but accepts posts from admins only.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, FrozenSet, Mapping, Optional

from chatsync.models import Channel, ViewerTier, parse_timestamp
from chatsync.errors import MalformedPayload

logger = logging.getLogger("chatsync.access")

ADMIN_TIERS: FrozenSet[ViewerTier] = frozenset(
    {ViewerTier.ADMIN, ViewerTier.SUPER_ADMIN}
)
PREMIUM_TIERS: FrozenSet[ViewerTier] = frozenset(
    {ViewerTier.PREMIUM, ViewerTier.ELITE} | ADMIN_TIERS
)
ELITE_TIERS: FrozenSet[ViewerTier] = frozenset({ViewerTier.ELITE} | ADMIN_TIERS)

_OPEN_LEVELS = frozenset({"open", "free"})
_ELITE_PLANS = frozenset({"a7fx", "elite"})
_PREMIUM_PLANS = frozenset({"aura", "premium"})


def can_view(tier: ViewerTier, channel: Channel) -> bool:
    level = channel.access_level
    if level == "admin-only":
        return tier in ADMIN_TIERS
    if level == "read-only" or level in _OPEN_LEVELS:
        return True
    if level == "premium":
        return tier in PREMIUM_TIERS
    if level == "elite":
        return tier in ELITE_TIERS
    return True


def can_post(tier: ViewerTier, channel: Channel) -> bool:
    level = channel.access_level
    if level == "admin-only" or level == "read-only":
        return tier in ADMIN_TIERS
    if channel.locked or channel.permission_type == "read-only":
        return tier in ADMIN_TIERS
    if level in _OPEN_LEVELS:
        return True
    if level == "premium":
        return tier in PREMIUM_TIERS
    if level == "elite":
        return tier in ELITE_TIERS
    return True


# ---------------------------------------------------------------------------
# Tier derivation
# ---------------------------------------------------------------------------


def _subscription_active(status: Mapping[str, Any], now: datetime) -> bool:
    if str(status.get("subscription_status") or "").lower() != "active":
        return False
    expiry = status.get("subscription_expiry")
    if expiry is None:
        return False
    try:
        return parse_timestamp(expiry) > now
    except MalformedPayload:
        logger.warning("Unparsable subscription_expiry %r; treating as expired", expiry)
        return False


def tier_from_subscription(
    status: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> ViewerTier:
    """Derive a :class:`ViewerTier` from a subscription-status record.

    Args:
        status: Mapping with any of ``role``, ``subscription_plan``,
                ``subscription_status``, ``subscription_expiry`` and
                ``payment_failed`` (camelCase variants are accepted too).
        now: Reference time for the expiry check (defaults to UTC now).
    """
    now = now or datetime.now(timezone.utc)
    record = {
        "role": status.get("role"),
        "subscription_plan": status.get("subscription_plan", status.get("subscriptionPlan")),
        "subscription_status": status.get("subscription_status", status.get("subscriptionStatus")),
        "subscription_expiry": status.get("subscription_expiry", status.get("subscriptionExpiry")),
        "payment_failed": status.get("payment_failed", status.get("paymentFailed")),
    }
    role = str(record["role"] or "").strip().lower()
    plan = str(record["subscription_plan"] or "").strip().lower()

    if role == "super_admin":
        return ViewerTier.SUPER_ADMIN
    if role == "admin":
        return ViewerTier.ADMIN
    if record["payment_failed"]:
        return ViewerTier.FREE

    active = _subscription_active(record, now)
    if (active and plan in _ELITE_PLANS) or role in _ELITE_PLANS:
        return ViewerTier.ELITE
    if (active and plan in _PREMIUM_PLANS) or role == "premium":
        return ViewerTier.PREMIUM
    return ViewerTier.FREE
