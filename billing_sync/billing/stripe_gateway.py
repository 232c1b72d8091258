"""Stripe gateway - every remote Stripe call the service makes.

The gateway owns the API key and the pinned API version and passes them on
each request, so nothing is written to the ``stripe`` module globals. Results
are validated into the models in ``stripe_objects``; SDK errors are translated
into ``ProcessorError`` so callers decide soft vs hard handling.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import stripe

from .errors import ProcessorError, SignatureVerificationFailed
from .stripe_objects import (
    CheckoutSession,
    Customer,
    Invoice,
    PaymentIntent,
    PaymentMethod,
    SetupIntent,
    StripeEvent,
    Subscription,
)

logger = logging.getLogger("billing.stripe")

# Expansions that let payment method resolution work without extra fetches.
SUBSCRIPTION_EXPAND = [
    "default_payment_method",
    "latest_invoice.payment_intent.payment_method",
    "pending_setup_intent.payment_method",
]


def _plain(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject into a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return json.loads(str(obj))


class StripeGateway:
    """Thin, typed facade over the Stripe SDK."""

    def __init__(self, api_key: str, api_version: str) -> None:
        if not api_key:
            raise ValueError("Stripe API key must be configured and non-empty")
        self._api_key = api_key
        self.api_version = api_version

    @property
    def _opts(self) -> Dict[str, Any]:
        return {"api_key": self._api_key, "stripe_version": self.api_version}

    @contextmanager
    def _call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
            logger.debug("Stripe %s failed: %s", operation, message)
            raise ProcessorError(
                operation,
                message,
                code=getattr(exc, "code", None),
                http_status=getattr(exc, "http_status", None),
            ) from exc

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(
        self,
        payload: bytes,
        sig_header: Optional[str],
        secret: str,
    ) -> StripeEvent:
        """Verify a webhook signature against the raw body and parse the event."""
        if not sig_header:
            raise SignatureVerificationFailed("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise SignatureVerificationFailed("Payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, secret)
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationFailed(str(exc) or "Invalid signature") from exc
        try:
            return StripeEvent.model_validate(json.loads(body))
        except ValueError as exc:
            raise SignatureVerificationFailed(f"Invalid payload: {exc}") from exc

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def retrieve_customer(self, customer_id: str) -> Customer:
        with self._call("customers.retrieve"):
            customer = stripe.Customer.retrieve(customer_id, **self._opts)
        return Customer.model_validate(_plain(customer))

    def create_customer(self, *, uid: str, email: Optional[str]) -> Customer:
        params: Dict[str, Any] = {"metadata": {"uid": uid}}
        if email:
            params["email"] = email
        with self._call("customers.create"):
            customer = stripe.Customer.create(
                idempotency_key=f"customer-create-{uid}",
                **params,
                **self._opts,
            )
        return Customer.model_validate(_plain(customer))

    def list_customers_by_email(self, email: str, limit: int = 10) -> List[Customer]:
        with self._call("customers.list"):
            result = stripe.Customer.list(email=email, limit=limit, **self._opts)
        return [Customer.model_validate(_plain(c)) for c in _plain(result).get("data", [])]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> Subscription:
        with self._call("subscriptions.retrieve"):
            sub = stripe.Subscription.retrieve(
                subscription_id, expand=SUBSCRIPTION_EXPAND, **self._opts
            )
        return Subscription.model_validate(_plain(sub))

    def list_subscriptions(self, customer_id: str, limit: int = 20) -> List[Subscription]:
        with self._call("subscriptions.list"):
            result = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=limit,
                expand=["data.default_payment_method"],
                **self._opts,
            )
        return [Subscription.model_validate(_plain(s)) for s in _plain(result).get("data", [])]

    def create_subscription(self, *, customer_id: str, price_id: str, uid: str) -> Subscription:
        with self._call("subscriptions.create"):
            sub = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                metadata={"uid": uid},
                expand=["latest_invoice.payment_intent"],
                **self._opts,
            )
        return Subscription.model_validate(_plain(sub))

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Subscription:
        with self._call("subscriptions.update"):
            sub = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=cancel,
                expand=SUBSCRIPTION_EXPAND,
                **self._opts,
            )
        return Subscription.model_validate(_plain(sub))

    # ------------------------------------------------------------------
    # Payment method lookups
    # ------------------------------------------------------------------

    def retrieve_invoice(self, invoice_id: str) -> Invoice:
        with self._call("invoices.retrieve"):
            invoice = stripe.Invoice.retrieve(
                invoice_id, expand=["payment_intent.payment_method"], **self._opts
            )
        return Invoice.model_validate(_plain(invoice))

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        with self._call("payment_intents.retrieve"):
            intent = stripe.PaymentIntent.retrieve(
                payment_intent_id, expand=["payment_method"], **self._opts
            )
        return PaymentIntent.model_validate(_plain(intent))

    def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntent:
        with self._call("setup_intents.retrieve"):
            intent = stripe.SetupIntent.retrieve(
                setup_intent_id, expand=["payment_method"], **self._opts
            )
        return SetupIntent.model_validate(_plain(intent))

    def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethod:
        with self._call("payment_methods.retrieve"):
            pm = stripe.PaymentMethod.retrieve(payment_method_id, **self._opts)
        return PaymentMethod.model_validate(_plain(pm))

    # ------------------------------------------------------------------
    # Checkout, portal, payment sheet
    # ------------------------------------------------------------------

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        uid: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        with self._call("checkout.sessions.create"):
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=uid,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                **self._opts,
            )
        return CheckoutSession.model_validate(_plain(session))

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        with self._call("checkout.sessions.retrieve"):
            session = stripe.checkout.Session.retrieve(session_id, **self._opts)
        return CheckoutSession.model_validate(_plain(session))

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        with self._call("billing_portal.sessions.create"):
            session = stripe.billing_portal.Session.create(
                customer=customer_id, return_url=return_url, **self._opts
            )
        return str(_plain(session).get("url") or "")

    def create_ephemeral_key(self, *, customer_id: str, api_version: str) -> Dict[str, Any]:
        # Ephemeral keys must use the mobile SDK's API version, not ours.
        with self._call("ephemeral_keys.create"):
            key = stripe.EphemeralKey.create(
                customer=customer_id,
                api_key=self._api_key,
                stripe_version=api_version,
            )
        return _plain(key)

    def create_payment_intent(
        self,
        *,
        customer_id: str,
        amount: int,
        currency: str,
        uid: str,
        description: str,
    ) -> PaymentIntent:
        with self._call("payment_intents.create"):
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                customer=customer_id,
                description=description,
                automatic_payment_methods={"enabled": True},
                metadata={"uid": uid, "type": "payment_method_verification"},
                **self._opts,
            )
        return PaymentIntent.model_validate(_plain(intent))
