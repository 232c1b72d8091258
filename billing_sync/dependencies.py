"""FastAPI dependencies for authentication and shared billing components.

All endpoints use these dependencies for:
- Firebase Admin initialization
- The billing component container (built once at startup)
- Caller identity (Authorization header or inline token)
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import firebase_admin
from firebase_admin import credentials, firestore

from .billing.activation import SubscriptionActivator
from .billing.config import BillingSettings
from .billing.errors import CallableError, IdentityTokenError
from .billing.events import WebhookDispatcher
from .billing.payment_methods import PaymentMethodResolver
from .billing.reconciler import SubscriptionReconciler
from .billing.stripe_gateway import StripeGateway
from .billing.users import FirebaseIdentity, UserResolver, UserStore, normalize_email
from .utils.client_ip import get_client_ip
from .utils.security_logger import security_logger

# =============================================================================
# CONFIGURATION
# =============================================================================

# Service account; Application Default Credentials when unset or missing
SERVICE_ACCOUNT_PATH = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")

# Security settings
MAX_TOKEN_AGE_SECONDS = int(os.environ.get("MAX_TOKEN_AGE_SECONDS", 3600))  # Default 1 hour
CLOCK_SKEW_SECONDS = int(os.environ.get("CLOCK_SKEW_SECONDS", 300))  # Default 5 min
SKIP_TOKEN_AGE_CHECK = os.environ.get("SKIP_TOKEN_AGE_CHECK", "").lower() in ("1", "true")

# Reserved request-body field carrying a Firebase ID token for clients that
# cannot set the Authorization header.
INLINE_TOKEN_FIELD = "__authToken"

logger = logging.getLogger("api.dependencies")

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# FIREBASE INITIALIZATION
# =============================================================================

def init_firebase_app() -> firebase_admin.App:
    """Get or initialize the default Firebase Admin app."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    if SERVICE_ACCOUNT_PATH and Path(SERVICE_ACCOUNT_PATH).exists():
        app = firebase_admin.initialize_app(credentials.Certificate(SERVICE_ACCOUNT_PATH))
        logger.info("Firebase Admin initialized from service account")
    else:
        app = firebase_admin.initialize_app()
        logger.info("Firebase Admin initialized with application default credentials")
    return app


# =============================================================================
# BILLING COMPONENTS
# =============================================================================

@dataclass
class BillingServices:
    """Billing components wired together once per process."""
    settings: BillingSettings
    gateway: StripeGateway
    store: UserStore
    identity: FirebaseIdentity
    payment_methods: PaymentMethodResolver = field(init=False)
    resolver: UserResolver = field(init=False)
    reconciler: SubscriptionReconciler = field(init=False)
    activator: SubscriptionActivator = field(init=False)
    dispatcher: WebhookDispatcher = field(init=False)

    def __post_init__(self) -> None:
        self.payment_methods = PaymentMethodResolver(self.gateway)
        self.resolver = UserResolver(self.store, self.identity, self.gateway)
        self.reconciler = SubscriptionReconciler(self.store, self.payment_methods)
        self.activator = SubscriptionActivator(self.gateway, self.store, self.reconciler)
        self.dispatcher = WebhookDispatcher(
            self.resolver, self.reconciler, self.store, self.gateway
        )


def create_billing_services(settings: BillingSettings) -> BillingServices:
    """Build production components: Firebase Admin, Firestore, Stripe."""
    app = init_firebase_app()
    db = firestore.client(app)
    logger.info("Firestore client initialized")
    return BillingServices(
        settings=settings,
        gateway=StripeGateway(settings.stripe_secret_key, settings.stripe_api_version),
        store=UserStore(db),
        identity=FirebaseIdentity(app),
    )


def get_billing_services(request: Request) -> BillingServices:
    """Components created in the app lifespan."""
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise RuntimeError("Billing services are not initialized")
    return services


# =============================================================================
# AUTHENTICATION
# =============================================================================

@dataclass
class Caller:
    uid: str
    email: Optional[str]
    source: str  # 'header' or 'inline'


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Ambient ID token from the Authorization header, if any."""
    if credentials is None:
        return None
    return credentials.credentials or None


def authenticate_caller(
    request: Request,
    services: BillingServices,
    header_token: Optional[str],
    inline_token: Optional[str] = None,
) -> Caller:
    """Verify the caller's Firebase ID token.

    The Authorization header wins; the inline token is only consulted when
    no header was sent.

    Security checks:
    - Valid signature, not expired, not revoked
    - Token age < MAX_TOKEN_AGE_SECONDS
    - Not from the future (clock skew attack)

    Raises:
        CallableError('unauthenticated') on any auth failure
    """
    if header_token:
        token, source = header_token, "header"
    else:
        token, source = (inline_token or "").strip(), "inline"

    if not token:
        _log_auth_failure(request, "missing_token", source=source)
        raise CallableError("unauthenticated", "Authentication required")

    try:
        decoded = services.identity.verify_id_token(token)
    except IdentityTokenError as exc:
        _log_auth_failure(request, exc.reason, source=source)
        raise CallableError("unauthenticated", str(exc)) from exc

    uid = str(decoded.get("uid") or "").strip()
    if not uid:
        _log_auth_failure(request, "missing_uid", source=source)
        raise CallableError("unauthenticated", "Authentication required")

    if not SKIP_TOKEN_AGE_CHECK:
        now = datetime.now(timezone.utc).timestamp()
        issued_at = decoded.get("iat", 0)

        # Reject tokens issued too long ago
        if now - issued_at > MAX_TOKEN_AGE_SECONDS:
            _log_auth_failure(request, "token_too_old", uid=uid, source=source)
            raise CallableError("unauthenticated", "Token too old, please re-authenticate")

        # Reject tokens from the future
        if issued_at > now + CLOCK_SKEW_SECONDS:
            _log_auth_failure(request, "future_token", uid=uid, source=source)
            raise CallableError("unauthenticated", "Invalid token timestamp")

    return Caller(
        uid=uid,
        email=normalize_email(decoded.get("email")),
        source=source,
    )


def _log_auth_failure(request: Request, reason: str, **extra):
    """Log authentication failure for security monitoring."""
    security_logger.auth_failure(
        ip=get_client_ip(request),
        reason=reason,
        path=request.url.path,
        user_agent=request.headers.get("user-agent", "unknown"),
        **extra
    )
