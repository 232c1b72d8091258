"""Stripe subscription state reconciliation into Firestore user records."""

from .activation import SubscriptionActivator
from .config import BillingSettings, load_settings
from .events import WebhookDispatcher
from .payment_methods import PaymentMethodResolver, describe_payment_method
from .reconciler import SubscriptionReconciler
from .status import normalize_stripe_status, should_grant_access
from .stripe_gateway import StripeGateway
from .users import FirebaseIdentity, UserResolver, UserStore

__all__ = [
    'BillingSettings',
    'FirebaseIdentity',
    'PaymentMethodResolver',
    'StripeGateway',
    'SubscriptionActivator',
    'SubscriptionReconciler',
    'UserResolver',
    'UserStore',
    'WebhookDispatcher',
    'describe_payment_method',
    'load_settings',
    'normalize_stripe_status',
    'should_grant_access',
]
