"""Stripe webhook event dispatch.

Handled event types:
    customer.subscription.created / updated -> reconcile
    customer.subscription.deleted           -> reconcile with status expired
    invoice.payment_failed                  -> pending, no access
    checkout.session.completed              -> fetch subscription, reconcile

Events for users we cannot find are logged and dropped. Raising here would
turn them into 500s and Stripe would retry them forever.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict

from google.cloud import firestore

from .reconciler import SubscriptionReconciler
from .status import EXPIRED, PENDING, should_grant_access
from .stripe_gateway import StripeGateway
from .stripe_objects import CheckoutSession, Invoice, StripeEvent, Subscription
from .users import ResolvedUser, UserResolver, UserStore

logger = logging.getLogger("billing.webhook")

HANDLED = "handled"
IGNORED = "ignored"
UNRESOLVED = "unresolved"


def _log_resolved(event: StripeEvent, user: ResolvedUser) -> None:
    logger.info("%s %s resolved to uid=%s via %s", event.type, event.id, user.uid, user.matched_by)


class WebhookDispatcher:
    def __init__(
        self,
        resolver: UserResolver,
        reconciler: SubscriptionReconciler,
        store: UserStore,
        gateway: StripeGateway,
    ) -> None:
        self._resolver = resolver
        self._reconciler = reconciler
        self._store = store
        self._gateway = gateway
        self._handlers: Dict[str, Callable[[StripeEvent], str]] = {
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_payment_failed,
            "checkout.session.completed": self._on_checkout_completed,
        }

    def dispatch(self, event: StripeEvent) -> str:
        """Apply one verified event. Returns handled, ignored or unresolved."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("Ignoring event %s (%s)", event.id, event.type)
            return IGNORED
        outcome = handler(event)
        logger.info("Webhook event %s (%s): %s", event.id, event.type, outcome)
        return outcome

    def _on_subscription_changed(self, event: StripeEvent) -> str:
        subscription = Subscription.model_validate(event.data.obj)
        return self._reconcile_subscription(event, subscription)

    def _on_subscription_deleted(self, event: StripeEvent) -> str:
        subscription = Subscription.model_validate(event.data.obj)
        return self._reconcile_subscription(
            event,
            subscription,
            status_override=EXPIRED,
            resolve_payment_method=False,
        )

    def _reconcile_subscription(
        self,
        event: StripeEvent,
        subscription: Subscription,
        *,
        status_override=None,
        resolve_payment_method: bool = True,
    ) -> str:
        customer_id = subscription.customer_id
        user = self._resolver.resolve(customer_id=customer_id)
        if user is None:
            logger.info(
                "Dropping %s %s: no user for customer %s", event.type, event.id, customer_id
            )
            return UNRESOLVED
        _log_resolved(event, user)
        self._reconciler.reconcile(
            user.uid,
            subscription,
            customer_id=customer_id,
            status_override=status_override,
            email=user.email,
            existing=user.record,
            resolve_payment_method=resolve_payment_method,
        )
        return HANDLED

    def _on_payment_failed(self, event: StripeEvent) -> str:
        invoice = Invoice.model_validate(event.data.obj)
        user = self._resolver.resolve(customer_id=invoice.customer, email=invoice.customer_email)
        if user is None:
            logger.info(
                "Dropping %s %s: no user for customer %s", event.type, event.id, invoice.customer
            )
            return UNRESOLVED
        _log_resolved(event, user)
        # Conservative deny without a full reconciliation; the next
        # subscription event recomputes the record from Stripe.
        self._store.merge(
            user.uid,
            {
                "subscriptionStatus": "past_due",
                "subscription": {
                    "status": PENDING,
                    "updatedAt": firestore.SERVER_TIMESTAMP,
                },
                "entitlements": {"library": should_grant_access(PENDING)},
                "updatedAt": firestore.SERVER_TIMESTAMP,
            },
        )
        return HANDLED

    def _on_checkout_completed(self, event: StripeEvent) -> str:
        session = CheckoutSession.model_validate(event.data.obj)
        if session.mode != "subscription" or not session.subscription_id:
            logger.debug("Ignoring checkout session %s in mode %s", session.id, session.mode)
            return IGNORED
        user = self._resolver.resolve(customer_id=session.customer_id, email=session.email)
        if user is None:
            logger.info(
                "Dropping %s %s: no user for customer %s email %s",
                event.type,
                event.id,
                session.customer_id,
                session.email,
            )
            return UNRESOLVED
        _log_resolved(event, user)
        subscription = self._gateway.retrieve_subscription(session.subscription_id)
        self._reconciler.reconcile(
            user.uid,
            subscription,
            customer_id=subscription.customer_id or session.customer_id,
            email=user.email,
            existing=user.record,
        )
        return HANDLED
