"""Typed views of the Stripe objects this service reads.

Only the fields we use are declared; everything else is ignored. Expandable
relations are ``Union[str, Model, None]``: a bare id when Stripe did not
expand the relation, the object when it did.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def epoch_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert Stripe epoch seconds to an aware datetime; falsy values mean absent."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    """Id of an expandable relation, whether expanded or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return getattr(value, "id", None)


class Card(StripeModel):
    brand: Optional[str] = None
    last4: Optional[str] = None


class PaymentMethod(StripeModel):
    id: Optional[str] = None
    type: Optional[str] = None
    card: Optional[Card] = None


PaymentMethodRef = Union[str, PaymentMethod, None]


class PaymentIntent(StripeModel):
    id: str
    status: Optional[str] = None
    client_secret: Optional[str] = None
    payment_method: PaymentMethodRef = None


class SetupIntent(StripeModel):
    id: str
    status: Optional[str] = None
    payment_method: PaymentMethodRef = None


class Invoice(StripeModel):
    id: Optional[str] = None
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Union[str, PaymentIntent, None] = None
    payment_method: PaymentMethodRef = None


class Customer(StripeModel):
    id: str
    email: Optional[str] = None
    deleted: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)


class Price(StripeModel):
    id: str


class SubscriptionItem(StripeModel):
    id: Optional[str] = None
    price: Union[str, Price, None] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(StripeModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class Subscription(StripeModel):
    id: str
    customer: Union[str, Customer, None] = None
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at: Optional[int] = None
    cancel_at_period_end: bool = False
    default_payment_method: PaymentMethodRef = None
    latest_invoice: Union[str, Invoice, None] = None
    pending_setup_intent: Union[str, SetupIntent, None] = None
    items: Optional[SubscriptionItemList] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def customer_id(self) -> Optional[str]:
        return object_id(self.customer)

    @property
    def price_ids(self) -> List[str]:
        if not self.items:
            return []
        return [pid for pid in (object_id(item.price) for item in self.items.data) if pid]

    def _first_item_value(self, field_name: str) -> Optional[int]:
        if not self.items:
            return None
        for item in self.items.data:
            value = getattr(item, field_name)
            if value:
                return value
        return None

    # Newer API versions report billing periods on the items only.
    @property
    def period_start(self) -> Optional[int]:
        return self.current_period_start or self._first_item_value("current_period_start")

    @property
    def period_end(self) -> Optional[int]:
        return self.current_period_end or self._first_item_value("current_period_end")


class CustomerDetails(StripeModel):
    email: Optional[str] = None


class CheckoutSession(StripeModel):
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    url: Optional[str] = None
    customer: Union[str, Customer, None] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    client_reference_id: Optional[str] = None
    subscription: Union[str, Subscription, None] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def customer_id(self) -> Optional[str]:
        return object_id(self.customer)

    @property
    def subscription_id(self) -> Optional[str]:
        return object_id(self.subscription)

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class EventData(StripeModel):
    obj: Dict[str, Any] = Field(default_factory=dict, alias="object")


class StripeEvent(StripeModel):
    id: Optional[str] = None
    type: str
    data: EventData = Field(default_factory=EventData)
