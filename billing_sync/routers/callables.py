"""Billing callables router - customer, subscription and checkout operations.

Endpoints (all POST, all authenticated):
    /api/billing/createCustomer
    /api/billing/createEphemeralKey
    /api/billing/createSubscription
    /api/billing/createCheckoutSession
    /api/billing/confirmCheckoutSession
    /api/billing/activateSubscriptionAccess
    /api/billing/createPortalSession
    /api/billing/scheduleSubscriptionCancellation
    /api/billing/resumeSubscriptionCancellation
    /api/billing/createPaymentIntent
    /api/billing/ping

Callers authenticate with ``Authorization: Bearer <Firebase ID token>`` or,
when the client cannot set headers, the ``__authToken`` body field. Failures
are raised as ``CallableError`` and rendered by the app exception handler.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from google.cloud import firestore

from ..billing.errors import CallableError, IdentityLookupError, ProcessorError
from ..billing.reconciler import build_initial_subscription_record, grace_ends_at
from ..billing.stripe_objects import Invoice, PaymentIntent
from ..billing.users import UserRecord
from ..dependencies import (
    BillingServices,
    Caller,
    authenticate_caller,
    get_billing_services,
    get_bearer_token,
)
from ..middleware.rate_limit import rate_limit_callable
from ..models import (
    ActivateAccessRequest,
    ActivationResponse,
    CallableRequest,
    CancellationResponse,
    CheckoutConfirmResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    ConfirmCheckoutRequest,
    CustomerResponse,
    EphemeralKeyRequest,
    ErrorResponse,
    PaymentIntentResponse,
    PingResponse,
    PortalSessionResponse,
    SubscriptionCreateResponse,
)

router = APIRouter()
logger = logging.getLogger("api.billing")

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
PAYMENT_INTENT_DESCRIPTION = "Payment method verification"
PAID_SESSION_STATES = ("paid", "no_payment_required")

CALLABLE_RESPONSES: Dict[int, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# =============================================================================
# HELPERS
# =============================================================================

def _caller(
    request: Request,
    services: BillingServices,
    header_token: Optional[str],
    payload: Optional[CallableRequest],
) -> Caller:
    inline_token = payload.authToken if payload is not None else None
    return authenticate_caller(request, services, header_token, inline_token)


def _processor_failure(exc: ProcessorError, message: str, **details: Any) -> CallableError:
    """Hard Stripe failure -> not-found when Stripe says so, else internal."""
    details = {"reason": exc.message, **details}
    if exc.not_found:
        return CallableError("not-found", message, details)
    logger.error("%s: %s", message, exc)
    return CallableError("internal", message, details)


def _require_customer(record: Optional[UserRecord]) -> str:
    customer_id = record.stripe_customer_id if record else None
    if not customer_id:
        raise CallableError("failed-precondition", "Stripe customer does not exist")
    return customer_id


def _caller_email(services: BillingServices, caller: Caller, record: Optional[UserRecord]) -> Optional[str]:
    """Token email, then stored email, then Firebase Auth (best effort)."""
    if caller.email:
        return caller.email
    if record is not None and record.email:
        return record.email
    try:
        return services.identity.email_for_uid(caller.uid)
    except IdentityLookupError as exc:
        logger.warning("Email lookup for uid=%s failed: %s", caller.uid, exc)
        return None


def _ensure_customer(services: BillingServices, caller: Caller) -> Tuple[str, bool]:
    """Stored Stripe customer for the caller, creating one on first use.

    Returns ``(customer_id, existed)``.
    """
    record = services.store.get(caller.uid)
    if record is not None and record.stripe_customer_id:
        return record.stripe_customer_id, True

    email = _caller_email(services, caller, record)
    try:
        customer = services.gateway.create_customer(uid=caller.uid, email=email)
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create Stripe customer") from exc

    update: Dict[str, Any] = {
        "stripeCustomerId": customer.id,
        "updatedAt": firestore.SERVER_TIMESTAMP,
    }
    if email and not (record is not None and record.email):
        update["email"] = email
    services.store.merge(caller.uid, update)
    logger.info("Created Stripe customer %s for uid=%s", customer.id, caller.uid)
    return customer.id, False


def with_session_placeholder(url: str) -> str:
    """Append ``session_id={CHECKOUT_SESSION_ID}`` unless the URL already carries it."""
    if CHECKOUT_SESSION_PLACEHOLDER in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}"


def _client_secret(invoice: Any) -> Optional[str]:
    if not isinstance(invoice, Invoice):
        return None
    intent = invoice.payment_intent
    if isinstance(intent, PaymentIntent):
        return intent.client_secret
    return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# CUSTOMER & PAYMENT SHEET
# =============================================================================

@router.post(
    "/billing/createCustomer",
    response_model=CustomerResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_customer(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> CustomerResponse:
    caller = _caller(request, services, header_token, payload)
    customer_id, existed = _ensure_customer(services, caller)
    return CustomerResponse(customerId=customer_id, existed=existed)


@router.post(
    "/billing/createEphemeralKey",
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_ephemeral_key(
    request: Request,
    payload: Optional[EphemeralKeyRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> Dict[str, Any]:
    """Ephemeral key for the mobile PaymentSheet, returned as Stripe sends it."""
    caller = _caller(request, services, header_token, payload)
    api_version = (payload.api_version or "").strip() if payload else ""
    if not api_version:
        raise CallableError("invalid-argument", "api_version is required")

    customer_id = _require_customer(services.store.get(caller.uid))
    try:
        return services.gateway.create_ephemeral_key(
            customer_id=customer_id, api_version=api_version
        )
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create ephemeral key") from exc


@router.post(
    "/billing/createPaymentIntent",
    response_model=PaymentIntentResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_payment_intent(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> PaymentIntentResponse:
    """Fixed-amount PaymentIntent that verifies a payment method.

    Amount and currency come from server configuration only.
    """
    caller = _caller(request, services, header_token, payload)
    settings = services.settings
    customer_id, _ = _ensure_customer(services, caller)

    try:
        ephemeral_key = services.gateway.create_ephemeral_key(
            customer_id=customer_id, api_version=settings.stripe_api_version
        )
        intent = services.gateway.create_payment_intent(
            customer_id=customer_id,
            amount=settings.payment_intent_amount,
            currency=settings.payment_intent_currency,
            uid=caller.uid,
            description=PAYMENT_INTENT_DESCRIPTION,
        )
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create payment intent") from exc

    if not intent.client_secret or not ephemeral_key.get("secret"):
        raise CallableError("internal", "Stripe did not return payment sheet credentials")

    return PaymentIntentResponse(
        paymentIntent=intent.client_secret,
        customer=customer_id,
        ephemeralKey=ephemeral_key["secret"],
    )


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

@router.post(
    "/billing/createSubscription",
    response_model=SubscriptionCreateResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_subscription(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> SubscriptionCreateResponse:
    """Incomplete subscription whose first invoice the client pays in-app."""
    caller = _caller(request, services, header_token, payload)
    price_id = services.settings.stripe_price_id
    if not price_id:
        raise CallableError("failed-precondition", "STRIPE_PRICE_ID is not configured")

    customer_id = _require_customer(services.store.get(caller.uid))
    try:
        subscription = services.gateway.create_subscription(
            customer_id=customer_id, price_id=price_id, uid=caller.uid
        )
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create subscription") from exc

    client_secret = _client_secret(subscription.latest_invoice)
    if not client_secret:
        raise CallableError(
            "internal",
            "Stripe did not return a payment intent",
            {"subscriptionId": subscription.id},
        )

    services.store.merge(caller.uid, build_initial_subscription_record(subscription))
    logger.info(
        "Created subscription %s for uid=%s status=%s",
        subscription.id,
        caller.uid,
        subscription.status,
    )
    return SubscriptionCreateResponse(
        subscriptionId=subscription.id,
        clientSecret=client_secret,
        status=subscription.status,
    )


@router.post(
    "/billing/scheduleSubscriptionCancellation",
    response_model=CancellationResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def schedule_subscription_cancellation(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> CancellationResponse:
    caller = _caller(request, services, header_token, payload)
    return _set_cancel_at_period_end(services, caller, cancel=True)


@router.post(
    "/billing/resumeSubscriptionCancellation",
    response_model=CancellationResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def resume_subscription_cancellation(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> CancellationResponse:
    caller = _caller(request, services, header_token, payload)
    return _set_cancel_at_period_end(services, caller, cancel=False)


def _set_cancel_at_period_end(
    services: BillingServices,
    caller: Caller,
    *,
    cancel: bool,
) -> CancellationResponse:
    """Toggle end-of-period cancellation and mirror the result into the record."""
    record = services.store.get(caller.uid)
    subscription_id = record.stripe_subscription_id if record else None
    if not subscription_id:
        raise CallableError("failed-precondition", "No subscription on record")

    try:
        subscription = services.gateway.set_cancel_at_period_end(subscription_id, cancel)
    except ProcessorError as exc:
        raise _processor_failure(
            exc, "Failed to update subscription", subscriptionId=subscription_id
        ) from exc

    result = services.reconciler.reconcile(
        caller.uid,
        subscription,
        customer_id=subscription.customer_id,
        email=caller.email,
        existing=record,
    )
    logger.info(
        "%s cancellation for uid=%s subscription=%s",
        "Scheduled" if cancel else "Resumed",
        caller.uid,
        subscription.id,
    )
    return CancellationResponse(
        subscriptionId=subscription.id,
        status=result.status,
        cancelAtPeriodEnd=subscription.cancel_at_period_end,
        graceEndsAt=_iso(grace_ends_at(subscription)),
        accessGranted=result.access_granted,
    )


@router.post(
    "/billing/activateSubscriptionAccess",
    response_model=ActivationResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def activate_subscription_access(
    request: Request,
    payload: Optional[ActivateAccessRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> ActivationResponse:
    """Sync a real Stripe subscription if one exists, else grant manual access."""
    caller = _caller(request, services, header_token, payload)
    payload = payload or ActivateAccessRequest()
    record = services.store.get(caller.uid)

    email = _caller_email(services, caller, record)
    if not email:
        raise CallableError("failed-precondition", "An email address is required to activate access")

    result = services.activator.activate(
        uid=caller.uid,
        email=email,
        record=record,
        duration_days=payload.durationDays,
        payment_method=payload.paymentMethod,
        status=payload.status,
        price_id=payload.priceId,
    )
    return ActivationResponse(
        status=result.status,
        message=result.message,
        subscriptionId=result.subscription_id,
        expiresAt=result.expires_at,
        accessGranted=result.access_granted,
        source=result.source,
    )


# =============================================================================
# HOSTED CHECKOUT & PORTAL
# =============================================================================

@router.post(
    "/billing/createCheckoutSession",
    response_model=CheckoutSessionResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_checkout_session(
    request: Request,
    payload: Optional[CheckoutSessionRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> CheckoutSessionResponse:
    caller = _caller(request, services, header_token, payload)
    payload = payload or CheckoutSessionRequest()
    settings = services.settings

    price_id = (payload.priceId or "").strip() or settings.stripe_price_id
    if not price_id:
        raise CallableError("failed-precondition", "No price configured for checkout")
    success_url = (payload.successUrl or "").strip() or settings.checkout_success_url
    cancel_url = (payload.cancelUrl or "").strip() or settings.checkout_cancel_url
    if not success_url or not cancel_url:
        raise CallableError("failed-precondition", "Checkout return URLs are not configured")

    customer_id, _ = _ensure_customer(services, caller)
    metadata = {**payload.metadata, "uid": caller.uid}
    try:
        session = services.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=with_session_placeholder(success_url),
            cancel_url=cancel_url,
            uid=caller.uid,
            metadata=metadata,
        )
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create checkout session") from exc

    logger.info("Created checkout session %s for uid=%s", session.id, caller.uid)
    return CheckoutSessionResponse(sessionId=session.id, url=session.url, status=session.status)


@router.post(
    "/billing/confirmCheckoutSession",
    response_model=CheckoutConfirmResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def confirm_checkout_session(
    request: Request,
    payload: Optional[ConfirmCheckoutRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> CheckoutConfirmResponse:
    """Reconcile the subscription behind a finished checkout without waiting for the webhook."""
    caller = _caller(request, services, header_token, payload)
    session_id = (payload.sessionId or "").strip() if payload else ""
    if not session_id:
        raise CallableError("invalid-argument", "sessionId is required")

    try:
        session = services.gateway.retrieve_checkout_session(session_id)
    except ProcessorError as exc:
        raise _processor_failure(exc, "Checkout session not found", sessionId=session_id) from exc

    record = services.store.get(caller.uid)
    owner_uid = session.client_reference_id or session.metadata.get("uid")
    stored_customer = record.stripe_customer_id if record else None
    if owner_uid:
        owned = owner_uid == caller.uid
    else:
        owned = bool(stored_customer) and stored_customer == session.customer_id
    if not owned:
        logger.warning(
            "uid=%s tried to confirm checkout session %s owned by %s",
            caller.uid,
            session.id,
            owner_uid or session.customer_id,
        )
        raise CallableError("permission-denied", "Checkout session belongs to another user")

    if session.status == "expired":
        return CheckoutConfirmResponse(
            status="canceled",
            subscriptionId=None,
            message="Checkout session expired",
        )
    if session.status != "complete" or session.payment_status not in PAID_SESSION_STATES:
        return CheckoutConfirmResponse(
            status="pending",
            subscriptionId=session.subscription_id,
            message="Checkout session is not paid yet",
        )
    if not session.subscription_id:
        raise CallableError(
            "failed-precondition",
            "Checkout session has no subscription",
            {"sessionId": session.id},
        )

    try:
        subscription = services.gateway.retrieve_subscription(session.subscription_id)
    except ProcessorError as exc:
        raise _processor_failure(
            exc, "Failed to load subscription", subscriptionId=session.subscription_id
        ) from exc

    result = services.reconciler.reconcile(
        caller.uid,
        subscription,
        customer_id=subscription.customer_id or session.customer_id,
        email=caller.email or session.email,
        existing=record,
    )
    return CheckoutConfirmResponse(
        status=result.status,
        subscriptionId=subscription.id,
        message="Subscription synchronized with Stripe",
    )


@router.post(
    "/billing/createPortalSession",
    response_model=PortalSessionResponse,
    responses=CALLABLE_RESPONSES,
)
@rate_limit_callable
async def create_portal_session(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> PortalSessionResponse:
    caller = _caller(request, services, header_token, payload)
    customer_id = _require_customer(services.store.get(caller.uid))
    return_url = services.settings.portal_return_url
    if not return_url:
        raise CallableError("failed-precondition", "STRIPE_BILLING_PORTAL_RETURN_URL is not configured")

    try:
        url = services.gateway.create_portal_session(customer_id=customer_id, return_url=return_url)
    except ProcessorError as exc:
        raise _processor_failure(exc, "Failed to create portal session") from exc
    if not url:
        raise CallableError("internal", "Stripe portal session did not return a URL")
    return PortalSessionResponse(url=url)


# =============================================================================
# DIAGNOSTICS
# =============================================================================

@router.post(
    "/billing/ping",
    response_model=PingResponse,
    responses={401: {"model": ErrorResponse}},
)
@rate_limit_callable
async def ping(
    request: Request,
    payload: Optional[CallableRequest] = None,
    header_token: Optional[str] = Depends(get_bearer_token),
    services: BillingServices = Depends(get_billing_services),
) -> PingResponse:
    """Echo the identity the server resolved for this request."""
    caller = _caller(request, services, header_token, payload)
    return PingResponse(
        ok=True,
        uid=caller.uid,
        email=caller.email,
        authSource=caller.source,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
