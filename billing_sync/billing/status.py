"""Subscription status helpers.

Stripe reports a fine-grained subscription status. User records only carry a
coarse one (active / pending / expired, plus the locally issued
manual_active and grace states), and the library entitlement is derived from
that coarse value.
"""

from __future__ import annotations

from typing import Optional

ACTIVE = "active"
PENDING = "pending"
EXPIRED = "expired"
MANUAL_ACTIVE = "manual_active"
GRACE = "grace"

_STRIPE_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PENDING,
    "incomplete": PENDING,
    "incomplete_expired": PENDING,
    "paused": PENDING,
    "canceled": EXPIRED,
    "unpaid": EXPIRED,
}

# "trialing" is listed for records written before normalization existed.
ACCESS_GRANTING_STATUSES = frozenset({ACTIVE, "trialing", MANUAL_ACTIVE, GRACE})


def normalize_stripe_status(status: Optional[str]) -> str:
    """Map a raw Stripe subscription status onto the coarse record status.

    Unknown values pass through unchanged; empty values become pending.
    """
    if not status:
        return PENDING
    return _STRIPE_STATUS_MAP.get(status, status)


def should_grant_access(status: Optional[str]) -> bool:
    if not status:
        return False
    return status in ACCESS_GRANTING_STATUSES
