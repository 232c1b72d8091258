"""Health check router - service status and dependency reachability.

Endpoints:
    GET /api/health - Overall health status
    GET /api/health/firebase - Firestore connectivity
    GET /api/health/stripe - Stripe configuration presence (never the values)
"""

import os
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from ..dependencies import BillingServices, get_billing_services
from ..middleware.rate_limit import rate_limit_health

router = APIRouter()
logger = logging.getLogger(__name__)

# Only expose detailed errors in debug mode
DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"

API_VERSION = "1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
@rate_limit_health
async def health_check(request: Request) -> dict:
    """Basic health check - no auth required."""
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": API_VERSION,
    }


@router.get("/health/firebase")
@rate_limit_health
async def firebase_health(
    request: Request,
    services: BillingServices = Depends(get_billing_services),
) -> dict:
    """Firestore health check.

    Reads a user document that never exists; a missing doc still proves the
    connection works.
    """
    try:
        services.store.get("_health")
        return {
            "status": "healthy",
            "timestamp": _now(),
        }
    except Exception as e:
        logger.error("Firestore health check failed: %s", e)
        return {
            "status": "unhealthy",
            "error": str(e) if DEBUG_MODE else "Firestore connection failed",
            "timestamp": _now(),
        }


@router.get("/health/stripe")
@rate_limit_health
async def stripe_health(
    request: Request,
    services: BillingServices = Depends(get_billing_services),
) -> dict:
    """Which Stripe settings are present. No remote call is made."""
    settings = services.settings
    configured = {
        "secretKey": bool(settings.stripe_secret_key),
        "webhookSecret": bool(settings.stripe_webhook_secret),
        "priceId": bool(settings.stripe_price_id),
        "checkoutUrls": bool(settings.checkout_success_url and settings.checkout_cancel_url),
        "portalReturnUrl": bool(settings.portal_return_url),
    }
    return {
        "status": "healthy" if configured["secretKey"] and configured["webhookSecret"] else "degraded",
        "apiVersion": settings.stripe_api_version,
        "configured": configured,
        "timestamp": _now(),
    }
