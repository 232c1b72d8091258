"""Subscription reconciliation into user records.

Every reconciliation recomputes the whole ``subscription`` sub-document from a
Stripe snapshot and writes it with one merge-write. Nothing is read back or
incremented, so concurrent reconciliations for the same user converge on
whichever snapshot is written last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from google.cloud import firestore

from ..utils.security_logger import security_logger
from .payment_methods import PaymentMethodResolver
from .status import normalize_stripe_status, should_grant_access
from .stripe_objects import Subscription, epoch_to_datetime
from .users import UserRecord, UserStore, normalize_email

logger = logging.getLogger("billing.reconciler")


@dataclass
class ReconcileResult:
    status: str
    end_date: Optional[str]
    access_granted: bool


def grace_ends_at(subscription: Subscription) -> Optional[datetime]:
    """Scheduled end of access: explicit cancel_at, else period end when canceling at period end."""
    if subscription.cancel_at:
        return epoch_to_datetime(subscription.cancel_at)
    if subscription.cancel_at_period_end:
        return epoch_to_datetime(subscription.period_end)
    return None


def build_subscription_update(
    subscription: Subscription,
    *,
    payment_method_label: Optional[str],
    status_override: Optional[str] = None,
    customer_id: Optional[str] = None,
    email: Optional[str] = None,
) -> Dict[str, Any]:
    status = status_override or normalize_stripe_status(subscription.status)
    payload: Dict[str, Any] = {
        "stripeSubscriptionId": subscription.id,
        "subscriptionStatus": subscription.status or "incomplete",
        "subscription": {
            "status": status,
            "paymentMethod": payment_method_label or None,
            "startDate": epoch_to_datetime(subscription.period_start),
            "endDate": epoch_to_datetime(subscription.period_end),
            "graceEndsAt": grace_ends_at(subscription),
            "updatedAt": firestore.SERVER_TIMESTAMP,
        },
        "entitlements": {"library": should_grant_access(status)},
        "updatedAt": firestore.SERVER_TIMESTAMP,
    }
    if customer_id:
        payload["stripeCustomerId"] = customer_id
    normalized_email = normalize_email(email)
    if normalized_email:
        payload["email"] = normalized_email
    return payload


def build_initial_subscription_record(subscription: Subscription) -> Dict[str, Any]:
    """Record for a freshly created, not yet paid subscription.

    Dates and payment method are cleared; the first subscription webhook
    fills them in.
    """
    status = normalize_stripe_status(subscription.status)
    return {
        "stripeSubscriptionId": subscription.id,
        "subscriptionStatus": subscription.status or "incomplete",
        "subscription": {
            "status": status,
            "paymentMethod": None,
            "startDate": None,
            "endDate": None,
            "graceEndsAt": None,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        },
        "entitlements": {"library": should_grant_access(status)},
        "updatedAt": firestore.SERVER_TIMESTAMP,
    }


class SubscriptionReconciler:
    def __init__(self, store: UserStore, payment_methods: PaymentMethodResolver) -> None:
        self._store = store
        self._payment_methods = payment_methods

    def reconcile(
        self,
        uid: str,
        subscription: Subscription,
        *,
        customer_id: Optional[str] = None,
        status_override: Optional[str] = None,
        email: Optional[str] = None,
        existing: Optional[UserRecord] = None,
        resolve_payment_method: bool = True,
    ) -> ReconcileResult:
        """Write the subscription snapshot onto ``users/{uid}``.

        Args:
            uid: target user.
            subscription: Stripe snapshot; unexpanded relations are fetched as needed.
            customer_id: Stripe customer to persist on the record.
            status_override: wins over the normalized Stripe status (termination events).
            email: email to backfill on the record.
            existing: the record as already read, used to detect customer reassignment.
            resolve_payment_method: False persists a null payment method without lookups.
        """
        label = (
            self._payment_methods.resolve_label(subscription)
            if resolve_payment_method
            else None
        )

        if customer_id and existing is not None:
            previous = existing.stripe_customer_id
            if previous and previous != customer_id:
                logger.warning(
                    "Reassigning Stripe customer for uid=%s from %s to %s",
                    uid,
                    previous,
                    customer_id,
                )
                security_logger.customer_reassigned(
                    uid=uid, previous_customer_id=previous, customer_id=customer_id
                )

        payload = build_subscription_update(
            subscription,
            payment_method_label=label,
            status_override=status_override,
            customer_id=customer_id,
            email=email,
        )
        self._store.merge(uid, payload)

        sub_doc = payload["subscription"]
        end_date = sub_doc["endDate"]
        result = ReconcileResult(
            status=sub_doc["status"],
            end_date=end_date.isoformat() if end_date else None,
            access_granted=payload["entitlements"]["library"],
        )
        logger.info(
            "Reconciled uid=%s subscription=%s stripeStatus=%s status=%s access=%s",
            uid,
            subscription.id,
            subscription.status,
            result.status,
            result.access_granted,
        )
        return result
