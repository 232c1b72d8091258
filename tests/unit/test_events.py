"""
Unit tests for webhook event dispatch.
"""

import logging
from datetime import datetime, timezone

import pytest

from billing_sync.billing.errors import ProcessorError
from billing_sync.billing.events import HANDLED, IGNORED, UNRESOLVED
from billing_sync.billing.stripe_objects import StripeEvent

from tests.fakes import PERIOD_END, event_payload, make_subscription, subscription_payload


def _event(event_type, obj):
    return StripeEvent.model_validate(event_payload(event_type, obj))


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


@pytest.fixture
def active_user(db):
    db.users.docs["uid_1"] = {
        "email": "ana@example.com",
        "stripeCustomerId": "cus_123",
        "stripeSubscriptionId": "sub_old",
        "subscriptionStatus": "active",
        "subscription": {"status": "active", "paymentMethod": "Visa •••• 4242"},
        "entitlements": {"library": True},
    }
    return db.users.docs["uid_1"]


class TestSubscriptionEvents:

    @pytest.mark.parametrize("event_type", ["customer.subscription.created", "customer.subscription.updated"])
    def test_created_and_updated_reconcile(self, dispatcher, active_user, db, event_type):
        obj = subscription_payload(status="past_due")

        assert dispatcher.dispatch(_event(event_type, obj)) == HANDLED

        doc = db.users.docs["uid_1"]
        assert doc["stripeSubscriptionId"] == "sub_123"
        assert doc["subscriptionStatus"] == "past_due"
        assert doc["subscription"]["status"] == "pending"
        assert doc["entitlements"]["library"] is False

    def test_deleted_expires_and_clears_payment_method(self, dispatcher, active_user, db, gateway):
        obj = subscription_payload(
            status="canceled", cancel_at_period_end=True, default_payment_method="pm_1"
        )

        assert dispatcher.dispatch(_event("customer.subscription.deleted", obj)) == HANDLED

        doc = db.users.docs["uid_1"]
        assert doc["subscription"]["status"] == "expired"
        assert doc["entitlements"]["library"] is False
        assert doc["subscription"]["paymentMethod"] is None
        assert doc["subscription"]["graceEndsAt"] == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        assert gateway.calls == []

    def test_deleted_override_applies_even_if_stripe_says_active(self, dispatcher, active_user, db):
        obj = subscription_payload(status="active")

        dispatcher.dispatch(_event("customer.subscription.deleted", obj))

        assert db.users.docs["uid_1"]["subscription"]["status"] == "expired"

    def test_unknown_customer_is_dropped(self, dispatcher, db, gateway):
        obj = subscription_payload(customer="cus_unknown")

        assert dispatcher.dispatch(_event("customer.subscription.updated", obj)) == UNRESOLVED
        assert db.users.writes == []

    def test_logs_how_the_user_was_found(self, dispatcher, active_user, caplog):
        obj = subscription_payload(status="active")

        with caplog.at_level(logging.INFO, logger="billing.webhook"):
            dispatcher.dispatch(_event("customer.subscription.updated", obj))

        assert "resolved to uid=uid_1 via customer_id" in caplog.text


class TestPaymentFailed:

    def test_denies_access_without_touching_subscription_id(self, dispatcher, active_user, db):
        invoice = {"id": "in_1", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"}

        assert dispatcher.dispatch(_event("invoice.payment_failed", invoice)) == HANDLED

        doc = db.users.docs["uid_1"]
        assert doc["subscription"]["status"] == "pending"
        assert doc["entitlements"]["library"] is False
        assert doc["subscriptionStatus"] == "past_due"
        assert doc["stripeSubscriptionId"] == "sub_old"
        assert doc["subscription"]["paymentMethod"] == "Visa •••• 4242"

    def test_resolves_by_invoice_email(self, dispatcher, db, identity):
        identity.add_user("uid_2", "bo@example.com")
        invoice = {"id": "in_2", "customer": "cus_new", "customer_email": "Bo@example.com"}

        assert dispatcher.dispatch(_event("invoice.payment_failed", invoice)) == HANDLED
        assert db.users.docs["uid_2"]["entitlements"]["library"] is False

    def test_logs_identity_email_match(self, dispatcher, identity, caplog):
        identity.add_user("uid_2", "bo@example.com")
        invoice = {"id": "in_3", "customer": "cus_new", "customer_email": "bo@example.com"}

        with caplog.at_level(logging.INFO, logger="billing.webhook"):
            dispatcher.dispatch(_event("invoice.payment_failed", invoice))

        assert "resolved to uid=uid_2 via identity_email" in caplog.text


class TestCheckoutCompleted:

    def test_fetches_and_reconciles_subscription(self, dispatcher, db, gateway, identity):
        identity.add_user("uid_3", "cy@example.com")
        gateway.subscriptions["sub_9"] = make_subscription(sub_id="sub_9", customer="cus_9")
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": "cus_9",
            "subscription": "sub_9",
            "customer_details": {"email": "cy@example.com"},
        }

        assert dispatcher.dispatch(_event("checkout.session.completed", session)) == HANDLED

        doc = db.users.docs["uid_3"]
        assert doc["stripeCustomerId"] == "cus_9"
        assert doc["stripeSubscriptionId"] == "sub_9"
        assert doc["email"] == "cy@example.com"
        assert doc["entitlements"]["library"] is True

    def test_payment_mode_is_ignored(self, dispatcher, gateway):
        session = {"id": "cs_2", "mode": "payment", "customer": "cus_9"}

        assert dispatcher.dispatch(_event("checkout.session.completed", session)) == IGNORED
        assert gateway.calls == []

    def test_subscription_fetch_failure_propagates(self, dispatcher, db, gateway):
        db.users.docs["uid_4"] = {"stripeCustomerId": "cus_4"}
        gateway.failures["retrieve_subscription"] = ProcessorError(
            "subscriptions.retrieve", "api down", http_status=500
        )
        session = {"id": "cs_3", "mode": "subscription", "customer": "cus_4", "subscription": "sub_4"}

        with pytest.raises(ProcessorError):
            dispatcher.dispatch(_event("checkout.session.completed", session))


def test_unhandled_event_type_is_ignored(dispatcher, db):
    assert dispatcher.dispatch(_event("customer.created", {"id": "cus_1"})) == IGNORED
    assert db.users.writes == []
