"""Access activation with a manual fallback.

Activation first looks for a real Stripe subscription belonging to the user
(stored customer id, then every customer with the user's email). Only when
none grants access is a time-boxed manual grant written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from google.cloud import firestore

from .errors import ProcessorError
from .reconciler import SubscriptionReconciler
from .status import (
    ACTIVE,
    GRACE,
    MANUAL_ACTIVE,
    PENDING,
    normalize_stripe_status,
    should_grant_access,
)
from .stripe_gateway import StripeGateway
from .stripe_objects import Subscription
from .users import UserRecord, UserStore, normalize_email

logger = logging.getLogger("billing.activation")

DEFAULT_DURATION_DAYS = 30
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365
DEFAULT_MANUAL_PAYMENT_METHOD = "Manual activation"
MANUAL_STATUSES = frozenset({ACTIVE, MANUAL_ACTIVE, PENDING, GRACE})


def clamp_duration_days(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_DURATION_DAYS
    return max(MIN_DURATION_DAYS, min(MAX_DURATION_DAYS, int(value)))


def resolve_manual_status(value: Optional[str]) -> str:
    status = str(value or "").strip().lower()
    return status if status in MANUAL_STATUSES else MANUAL_ACTIVE


def build_manual_activation(
    *,
    now: datetime,
    duration_days: int,
    payment_method: str,
    status: str,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    """Merge payload for a manual grant over [now, now + duration_days]."""
    payload: Dict[str, Any] = {
        "subscriptionStatus": status,
        "subscription": {
            "status": status,
            "paymentMethod": payment_method,
            "startDate": now,
            "endDate": now + timedelta(days=duration_days),
            "graceEndsAt": None,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        },
        "entitlements": {"library": should_grant_access(status)},
        "updatedAt": firestore.SERVER_TIMESTAMP,
    }
    if email:
        payload["email"] = email
    return payload


def subscription_rank(subscription: Subscription) -> Tuple[bool, int]:
    """Sort key: access-granting first, then the latest period end."""
    granting = should_grant_access(normalize_stripe_status(subscription.status))
    return granting, int(subscription.period_end or 0)


def pick_best_subscription(
    candidates: Iterable[Tuple[Subscription, str]],
) -> Optional[Tuple[Subscription, str]]:
    best: Optional[Tuple[Subscription, str]] = None
    for candidate in candidates:
        if best is None or subscription_rank(candidate[0]) > subscription_rank(best[0]):
            best = candidate
    return best


@dataclass
class ActivationResult:
    status: str
    message: str
    expires_at: Optional[str]
    access_granted: bool
    source: str
    subscription_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionActivator:
    def __init__(
        self,
        gateway: StripeGateway,
        store: UserStore,
        reconciler: SubscriptionReconciler,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._reconciler = reconciler
        self._clock = clock

    def find_remote_subscription(
        self,
        *,
        email: str,
        stored_customer_id: Optional[str] = None,
        price_id: Optional[str] = None,
    ) -> Optional[Tuple[Subscription, str]]:
        """Best Stripe subscription for the user, as ``(subscription, customer_id)``."""
        customer_ids: List[str] = []
        if stored_customer_id:
            customer_ids.append(stored_customer_id)
        try:
            for customer in self._gateway.list_customers_by_email(email):
                if not customer.deleted and customer.id not in customer_ids:
                    customer_ids.append(customer.id)
        except ProcessorError as exc:
            logger.warning("Customer search for %s failed: %s", email, exc.message)

        candidates: List[Tuple[Subscription, str]] = []
        for customer_id in customer_ids:
            try:
                subscriptions = self._gateway.list_subscriptions(customer_id)
            except ProcessorError as exc:
                logger.warning(
                    "Subscription search for customer %s failed: %s", customer_id, exc.message
                )
                continue
            for sub in subscriptions:
                if price_id and price_id not in sub.price_ids:
                    continue
                candidates.append((sub, sub.customer_id or customer_id))

        return pick_best_subscription(candidates)

    def activate(
        self,
        *,
        uid: str,
        email: str,
        record: Optional[UserRecord] = None,
        duration_days: Optional[int] = None,
        payment_method: Optional[str] = None,
        status: Optional[str] = None,
        price_id: Optional[str] = None,
    ) -> ActivationResult:
        email = normalize_email(email) or email
        found = self.find_remote_subscription(
            email=email,
            stored_customer_id=record.stripe_customer_id if record else None,
            price_id=price_id,
        )
        if found is not None:
            subscription, customer_id = found
            if should_grant_access(normalize_stripe_status(subscription.status)):
                result = self._reconciler.reconcile(
                    uid,
                    subscription,
                    customer_id=customer_id,
                    email=email,
                    existing=record,
                )
                return ActivationResult(
                    status=result.status,
                    message="Subscription synchronized with Stripe",
                    expires_at=result.end_date,
                    access_granted=result.access_granted,
                    source="stripe",
                    subscription_id=subscription.id,
                )
            logger.info(
                "Best Stripe subscription %s for uid=%s is %s; using manual activation",
                subscription.id,
                uid,
                subscription.status,
            )

        days = clamp_duration_days(duration_days)
        effective_status = resolve_manual_status(status)
        label = str(payment_method or "").strip() or DEFAULT_MANUAL_PAYMENT_METHOD
        now = self._clock()
        payload = build_manual_activation(
            now=now,
            duration_days=days,
            payment_method=label,
            status=effective_status,
            email=email,
        )
        self._store.merge(uid, payload)

        end_date = payload["subscription"]["endDate"]
        logger.info(
            "Manual activation uid=%s status=%s days=%s until=%s",
            uid,
            effective_status,
            days,
            end_date.isoformat(),
        )
        return ActivationResult(
            status=effective_status,
            message=f"Access activated manually for {days} days",
            expires_at=end_date.isoformat(),
            access_granted=payload["entitlements"]["library"],
            source="manual",
        )
