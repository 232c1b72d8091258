"""
Unit tests for the Firestore user store and Stripe-context user resolution.
"""

import pytest

from billing_sync.billing.errors import ProcessorError
from billing_sync.billing.stripe_objects import Customer
from billing_sync.billing.users import (
    ResolutionContext,
    UserResolver,
    first_match,
    normalize_email,
)


@pytest.fixture
def resolver(store, identity, gateway) -> UserResolver:
    return UserResolver(store, identity, gateway)


class TestNormalizeEmail:

    def test_trims_and_lowercases(self):
        assert normalize_email("  Ana@Example.COM ") == "ana@example.com"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_is_absent(self, value):
        assert normalize_email(value) is None


class TestUserStore:

    def test_merge_creates_then_merges_nested_fields(self, store, db):
        store.merge("uid_1", {"email": "a@example.com", "subscription": {"status": "active"}})
        store.merge("uid_1", {"subscription": {"paymentMethod": "Visa •••• 4242"}})

        assert db.users.docs["uid_1"] == {
            "email": "a@example.com",
            "subscription": {"status": "active", "paymentMethod": "Visa •••• 4242"},
        }
        assert all(merge for _, _, merge in db.users.writes)

    def test_get_missing_user(self, store):
        assert store.get("nobody") is None

    def test_find_by_customer_id(self, store, db):
        db.users.docs["uid_1"] = {"stripeCustomerId": "cus_1"}
        db.users.docs["uid_2"] = {"stripeCustomerId": "cus_2"}

        record = store.find_by_customer_id("cus_2")

        assert record.uid == "uid_2"
        assert record.stripe_customer_id == "cus_2"


class TestUserResolver:

    def test_customer_id_match_skips_email_lookups(self, resolver, db, identity, gateway):
        db.users.docs["uid_1"] = {"stripeCustomerId": "cus_1", "email": "Ana@example.com"}

        user = resolver.resolve(customer_id="cus_1")

        assert user.uid == "uid_1"
        assert user.matched_by == "customer_id"
        assert user.email == "ana@example.com"
        assert identity.lookups == []
        assert gateway.calls == []

    def test_fetches_customer_email_then_uses_identity_provider(self, resolver, identity, gateway):
        gateway.customers["cus_9"] = Customer(id="cus_9", email="Bo@Example.com")
        identity.add_user("uid_bo", "bo@example.com")

        user = resolver.resolve(customer_id="cus_9")

        assert user.uid == "uid_bo"
        assert user.matched_by == "identity_email"
        assert user.email == "bo@example.com"
        assert len(gateway.calls_to("retrieve_customer")) == 1

    def test_falls_back_to_stored_email(self, resolver, db, identity):
        db.users.docs["uid_legacy"] = {"email": "old@example.com"}

        user = resolver.resolve(email="OLD@example.com")

        assert user.uid == "uid_legacy"
        assert user.matched_by == "stored_email"
        assert identity.lookups == [("uid_for_email", "old@example.com")]

    def test_customer_email_fetched_once_across_strategies(self, resolver, gateway):
        gateway.customers["cus_9"] = Customer(id="cus_9", email="ghost@example.com")

        assert resolver.resolve(customer_id="cus_9") is None
        assert len(gateway.calls_to("retrieve_customer")) == 1

    def test_soft_failures_resolve_to_none(self, resolver, identity, gateway):
        gateway.failures["retrieve_customer"] = ProcessorError("customers.retrieve", "timeout")
        identity.fail_lookups = True

        assert resolver.resolve(customer_id="cus_missing") is None

    def test_identity_failure_still_tries_stored_email(self, resolver, db, identity):
        identity.fail_lookups = True
        db.users.docs["uid_1"] = {"email": "c@example.com"}

        user = resolver.resolve(email="c@example.com")

        assert user.uid == "uid_1"

    def test_deleted_customer_has_no_email(self, resolver, gateway, identity):
        gateway.customers["cus_del"] = Customer(id="cus_del", email="x@example.com", deleted=True)
        identity.add_user("uid_x", "x@example.com")

        assert resolver.resolve(customer_id="cus_del") is None

    def test_nothing_to_go_on(self, resolver, gateway):
        assert resolver.resolve() is None
        assert gateway.calls == []


class TestFirstMatch:

    def test_stops_at_first_hit(self):
        seen = []

        def miss(ctx):
            seen.append("miss")
            return None

        def hit(ctx):
            seen.append("hit")
            return "found"

        def never(ctx):
            seen.append("never")
            return "late"

        ctx = ResolutionContext(customer_id=None, email=None)
        assert first_match([miss, hit, never], ctx) == "found"
        assert seen == ["miss", "hit"]
