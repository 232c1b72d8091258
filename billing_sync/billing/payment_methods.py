"""Payment method labels for subscription records."""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Optional, Set, TypeVar, Union

from .errors import ProcessorError
from .stripe_gateway import StripeGateway
from .stripe_objects import (
    Invoice,
    PaymentIntent,
    PaymentMethod,
    PaymentMethodRef,
    SetupIntent,
    Subscription,
)

logger = logging.getLogger("billing.payment_methods")

T = TypeVar("T")


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


def describe_payment_method(payment_method: Optional[PaymentMethod]) -> Optional[str]:
    """Human-readable label, e.g. ``"Visa •••• 4242"`` or ``"Link"``."""
    if payment_method is None:
        return None

    card = payment_method.card
    if card is not None:
        brand_label = _capitalize(card.brand or "card")
        if card.last4:
            return f"{brand_label} •••• {card.last4}"
        return brand_label

    if payment_method.type:
        return _capitalize(payment_method.type)

    return None


class PaymentMethodResolver:
    """Finds the first describable payment method attached to a subscription.

    Candidates, in priority order:
        1. subscription.default_payment_method
        2. latest_invoice.payment_intent.payment_method
        3. latest_invoice.payment_method
        4. pending_setup_intent.payment_method

    Unexpanded references are fetched lazily, at most once per id per call.
    A failed fetch only drops that candidate.
    """

    def __init__(self, gateway: StripeGateway) -> None:
        self._gateway = gateway

    def resolve_label(self, subscription: Subscription) -> Optional[str]:
        visited: Set[str] = set()
        for candidate in self._candidates(subscription):
            payment_method = self._load_payment_method(candidate, visited)
            label = describe_payment_method(payment_method)
            if label:
                return label
        return None

    def _candidates(self, subscription: Subscription) -> Iterator[PaymentMethodRef]:
        # Generator: later candidates (and their fetches) only run when needed.
        if subscription.default_payment_method:
            yield subscription.default_payment_method

        invoice = self._load_invoice(subscription.latest_invoice)
        if invoice is not None:
            intent = self._load_payment_intent(invoice.payment_intent)
            if intent is not None and intent.payment_method:
                yield intent.payment_method
            if invoice.payment_method:
                yield invoice.payment_method

        setup_intent = self._load_setup_intent(subscription.pending_setup_intent)
        if setup_intent is not None and setup_intent.payment_method:
            yield setup_intent.payment_method

    def _load_payment_method(
        self, candidate: PaymentMethodRef, visited: Set[str]
    ) -> Optional[PaymentMethod]:
        if not candidate:
            return None
        if isinstance(candidate, PaymentMethod):
            return candidate
        if candidate in visited:
            return None
        visited.add(candidate)
        return self._soft_fetch(
            "payment method", candidate, self._gateway.retrieve_payment_method
        )

    def _load_invoice(self, invoice: Union[str, Invoice, None]) -> Optional[Invoice]:
        if isinstance(invoice, str):
            return self._soft_fetch("latest invoice", invoice, self._gateway.retrieve_invoice)
        return invoice

    def _load_payment_intent(
        self, intent: Union[str, PaymentIntent, None]
    ) -> Optional[PaymentIntent]:
        if isinstance(intent, str):
            return self._soft_fetch(
                "payment intent", intent, self._gateway.retrieve_payment_intent
            )
        return intent

    def _load_setup_intent(
        self, intent: Union[str, SetupIntent, None]
    ) -> Optional[SetupIntent]:
        if isinstance(intent, str):
            return self._soft_fetch(
                "pending setup intent", intent, self._gateway.retrieve_setup_intent
            )
        return intent

    @staticmethod
    def _soft_fetch(what: str, object_id: str, fetch: Callable[[str], T]) -> Optional[T]:
        if not object_id:
            return None
        try:
            return fetch(object_id)
        except ProcessorError as exc:
            logger.warning("Could not fetch %s %s from Stripe: %s", what, object_id, exc.message)
            return None
