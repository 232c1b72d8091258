"""Stripe webhook router.

Endpoints:
    POST /api/webhooks/stripe - Signed Stripe event delivery

Status codes tell Stripe what to do next:
    400 - signature or configuration problem; retrying will not help
    500 - unexpected failure while applying the event; Stripe retries
    200 - applied, ignored, or dropped because no user matches
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..billing.errors import SignatureVerificationFailed
from ..dependencies import BillingServices, get_billing_services
from ..middleware.rate_limit import rate_limit_exempt
from ..models import ErrorResponse, WebhookAck
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("billing.webhook")


def _error_response(
    status_code: int,
    *,
    error: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": error, "code": code}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


@router.post(
    "/webhooks/stripe",
    response_model=WebhookAck,
    responses={
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
@rate_limit_exempt
async def stripe_webhook(
    request: Request,
    services: BillingServices = Depends(get_billing_services),
):
    secret = services.settings.stripe_webhook_secret
    if not secret:
        logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
        return _error_response(
            400,
            error="Webhook Error: webhook secret is not configured",
            code="WEBHOOK_NOT_CONFIGURED",
        )

    # Signature covers the exact bytes Stripe sent
    body = await request.body()
    try:
        event = services.gateway.construct_event(
            body, request.headers.get("stripe-signature"), secret
        )
    except SignatureVerificationFailed as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        security_logger.webhook_signature_failure(
            ip=get_client_ip(request),
            path=request.url.path,
            reason=str(exc),
        )
        return _error_response(
            400,
            error=f"Webhook Error: {exc}",
            code="INVALID_SIGNATURE",
        )

    try:
        services.dispatcher.dispatch(event)
    except Exception:
        logger.exception("Webhook handler failed for event %s (%s)", event.id, event.type)
        return _error_response(
            500,
            error="Webhook handler failed",
            code="WEBHOOK_HANDLER_FAILED",
            details={"eventId": event.id, "eventType": event.type},
        )

    return WebhookAck(received=True)
