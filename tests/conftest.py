"""
Pytest configuration and shared fixtures for billing sync tests.
"""

import os
import tempfile

# Security log goes to a throwaway directory; must be set before the app is imported
os.environ.setdefault("SECURITY_LOG_DIR", tempfile.mkdtemp(prefix="billing-sync-logs-"))

import pytest
from fastapi.testclient import TestClient

from billing_sync.billing.config import BillingSettings
from billing_sync.billing.users import UserStore
from billing_sync.dependencies import BillingServices, get_billing_services
from billing_sync.main import app

from tests.fakes import WEBHOOK_SECRET, FakeFirestore, FakeIdentity, FakeStripeGateway


@pytest.fixture
def settings() -> BillingSettings:
    return BillingSettings(
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_basic",
        checkout_success_url="https://app.example.com/billing/success",
        checkout_cancel_url="https://app.example.com/billing/cancel",
        portal_return_url="https://app.example.com/account",
    )


@pytest.fixture
def db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def store(db) -> UserStore:
    return UserStore(db)


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def services(settings, gateway, store, identity) -> BillingServices:
    return BillingServices(
        settings=settings,
        gateway=gateway,
        store=store,
        identity=identity,
    )


@pytest.fixture
def client(services):
    """Test client wired to the in-memory services; lifespan is not run."""
    app.dependency_overrides[get_billing_services] = lambda: services
    app.state.limiter.reset()
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
