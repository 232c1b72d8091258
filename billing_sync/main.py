"""Billing Sync API - Main Application.

FastAPI application that keeps Firestore user records in sync with Stripe.
Handles the Stripe webhook, the billing callables used by the mobile and web
clients, and health checks.

Security: Callables require a Firebase ID token; the webhook requires a valid
Stripe signature; /api/health* is open.

Usage:
    uvicorn billing_sync.main:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .billing.config import load_settings
from .billing.errors import CallableError
from .dependencies import create_billing_services
from .middleware.rate_limit import setup_rate_limiting
from .routers import callables, health, webhook

# =============================================================================
# CONFIGURATION
# =============================================================================

# Environment
DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"
API_VERSION = "1.0.0"
CALLABLE_PATH_PREFIX = "/api/billing/"

# CORS - strict origin allowlist
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,http://localhost:3000",
    ).split(",")
    if origin.strip()
]

# Logging setup
logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger("api.main")


# =============================================================================
# LIFESPAN (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    # Startup
    logger.info(f"Starting Billing Sync API v{API_VERSION}")
    logger.info(f"Debug mode: {DEBUG_MODE}")

    if getattr(app.state, "billing", None) is None:
        try:
            settings = load_settings()
            app.state.billing = create_billing_services(settings)
            logger.info("Billing services ready (Stripe API %s)", settings.stripe_api_version)
        except Exception as e:
            logger.error(f"Startup failed: {e}")
            raise

    yield

    # Shutdown
    logger.info("Shutting down Billing Sync API")


# =============================================================================
# APPLICATION
# =============================================================================

# Create app with conditional docs
if DEBUG_MODE:
    app = FastAPI(
        title="Billing Sync API",
        version=API_VERSION,
        lifespan=lifespan,
    )
else:
    # Production: disable docs endpoints
    app = FastAPI(
        title="Billing Sync API",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================

setup_rate_limiting(app)

# CORS - strict origins only
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    # Remove headers that reveal implementation
    if "server" in response.headers:
        del response.headers["server"]
    if "x-powered-by" in response.headers:
        del response.headers["x-powered-by"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests for debugging."""
    start_time = datetime.now(timezone.utc)

    response = await call_next(request)

    duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

    # Never log bodies: they carry tokens and webhook payloads
    logger.debug(
        "%s %s -> %s (%.0fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )

    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(CallableError)
async def callable_error_handler(request: Request, exc: CallableError):
    """Render callable failures as {error, code, details}."""
    if exc.status_code >= 500:
        logger.error("Callable %s failed: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed callable arguments are invalid-argument, not 422."""
    errors = [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    error = CallableError("invalid-argument", "Invalid request", {"errors": errors})
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions with generic error response."""
    # Log full error internally
    logger.exception(f"Unhandled exception on {request.url.path}")

    # Callables only ever answer with a callable error code
    if request.url.path.startswith(CALLABLE_PATH_PREFIX):
        details = {"reason": str(exc), "type": type(exc).__name__} if DEBUG_MODE else None
        error = CallableError("internal", "Internal server error", details)
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    # Return generic error to client (no stack traces)
    if DEBUG_MODE:
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "code": "INTERNAL_ERROR",
                "type": type(exc).__name__
            }
        )
    else:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": "INTERNAL_ERROR"
            }
        )


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(webhook.router, prefix="/api", tags=["Webhooks"])
app.include_router(callables.router, prefix="/api", tags=["Billing"])
app.include_router(health.router, prefix="/api", tags=["Health"])


# =============================================================================
# ROOT ENDPOINT
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": "Billing Sync API",
        "version": API_VERSION,
        "status": "running"
    }
