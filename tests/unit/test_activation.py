"""
Unit tests for access activation and the manual fallback.
"""

from datetime import datetime, timedelta, timezone

import pytest

from billing_sync.billing.activation import (
    SubscriptionActivator,
    build_manual_activation,
    clamp_duration_days,
    pick_best_subscription,
    resolve_manual_status,
)
from billing_sync.billing.errors import ProcessorError
from billing_sync.billing.payment_methods import PaymentMethodResolver
from billing_sync.billing.reconciler import SubscriptionReconciler
from billing_sync.billing.stripe_objects import Customer
from billing_sync.billing.users import UserRecord

from tests.fakes import PERIOD_END, make_subscription

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def activator(store, gateway) -> SubscriptionActivator:
    reconciler = SubscriptionReconciler(store, PaymentMethodResolver(gateway))
    return SubscriptionActivator(gateway, store, reconciler, clock=lambda: NOW)


class TestDurationAndStatus:

    @pytest.mark.parametrize(
        "days, expected",
        [(None, 30), (0, 1), (-5, 1), (15, 15), (365, 365), (10_000, 365)],
    )
    def test_clamp_duration_days(self, days, expected):
        assert clamp_duration_days(days) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("grace", "grace"),
            (" Active ", "active"),
            ("pending", "pending"),
            ("manual_active", "manual_active"),
            ("expired", "manual_active"),
            ("", "manual_active"),
            (None, "manual_active"),
        ],
    )
    def test_resolve_manual_status(self, raw, expected):
        assert resolve_manual_status(raw) == expected

    def test_manual_window_is_exact(self):
        payload = build_manual_activation(
            now=NOW, duration_days=365, payment_method="Cash", status="manual_active"
        )

        doc = payload["subscription"]
        assert doc["startDate"] == NOW
        assert doc["endDate"] - doc["startDate"] == timedelta(days=365)
        assert doc["graceEndsAt"] is None
        assert payload["entitlements"] == {"library": True}


class TestPickBestSubscription:

    def test_granting_status_beats_later_period_end(self):
        active = make_subscription(sub_id="sub_a", status="active", current_period_end=100)
        canceled = make_subscription(sub_id="sub_c", status="canceled", current_period_end=999)

        best = pick_best_subscription([(canceled, "cus_1"), (active, "cus_1")])

        assert best[0].id == "sub_a"

    def test_later_period_end_breaks_ties(self):
        early = make_subscription(sub_id="sub_early", current_period_end=100)
        late = make_subscription(sub_id="sub_late", current_period_end=200)

        assert pick_best_subscription([(early, "cus_1"), (late, "cus_2")]) == (late, "cus_2")

    def test_no_candidates(self):
        assert pick_best_subscription([]) is None


class TestSubscriptionActivator:

    def test_manual_fallback_for_fifteen_days(self, activator, db):
        db.users.docs["uid_1"] = {"subscription": {"graceEndsAt": NOW}}

        result = activator.activate(uid="uid_1", email="ana@example.com", duration_days=15)

        assert result.source == "manual"
        assert result.status == "manual_active"
        assert result.access_granted is True
        assert result.expires_at == (NOW + timedelta(days=15)).isoformat()
        doc = db.users.docs["uid_1"]
        assert doc["subscription"]["status"] == "manual_active"
        assert doc["subscription"]["endDate"] == NOW + timedelta(days=15)
        assert doc["subscription"]["graceEndsAt"] is None
        assert doc["subscription"]["paymentMethod"] == "Manual activation"
        assert doc["entitlements"]["library"] is True

    def test_manual_pending_status_denies_access(self, activator, db):
        result = activator.activate(uid="uid_1", email="ana@example.com", status="pending")

        assert result.access_granted is False
        assert db.users.docs["uid_1"]["entitlements"]["library"] is False

    def test_reconciles_active_remote_subscription(self, activator, gateway, db):
        gateway.customers_by_email["ana@example.com"] = [Customer(id="cus_found", email="ana@example.com")]
        gateway.subscriptions_by_customer["cus_found"] = [
            make_subscription(sub_id="sub_live", customer="cus_found", status="active")
        ]

        result = activator.activate(uid="uid_1", email="Ana@Example.com")

        assert result.source == "stripe"
        assert result.subscription_id == "sub_live"
        assert result.status == "active"
        assert result.expires_at == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc).isoformat()
        assert db.users.docs["uid_1"]["stripeCustomerId"] == "cus_found"
        assert db.users.docs["uid_1"]["stripeSubscriptionId"] == "sub_live"

    def test_stored_customer_is_searched_first(self, activator, gateway):
        record = UserRecord(uid="uid_1", data={"stripeCustomerId": "cus_stored"})
        gateway.customers_by_email["ana@example.com"] = [Customer(id="cus_stored")]

        activator.activate(uid="uid_1", email="ana@example.com", record=record)

        searched = [c["customer_id"] for c in gateway.calls_to("list_subscriptions")]
        assert searched == ["cus_stored"]

    def test_non_granting_remote_subscription_falls_back(self, activator, gateway):
        gateway.customers_by_email["ana@example.com"] = [Customer(id="cus_1")]
        gateway.subscriptions_by_customer["cus_1"] = [make_subscription(customer="cus_1", status="canceled")]

        result = activator.activate(uid="uid_1", email="ana@example.com")

        assert result.source == "manual"

    def test_price_filter_skips_other_plans(self, activator, gateway):
        gateway.customers_by_email["ana@example.com"] = [Customer(id="cus_1")]
        gateway.subscriptions_by_customer["cus_1"] = [make_subscription(customer="cus_1")]

        result = activator.activate(uid="uid_1", email="ana@example.com", price_id="price_premium")

        assert result.source == "manual"

    def test_stripe_search_failure_is_soft(self, activator, gateway):
        gateway.failures["list_customers_by_email"] = ProcessorError("customers.list", "boom")

        result = activator.activate(uid="uid_1", email="ana@example.com")

        assert result.source == "manual"
        assert result.access_granted is True
