"""Rate limiting middleware using slowapi.

Default limits:
- Global: 100 req/min per IP
- Billing callables: 30 req/min (each one hits Stripe)
- Health endpoints: 120 req/min
- Stripe webhook: exempt (Stripe bursts deliveries and retries on 429)
"""

from __future__ import annotations

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

logger = logging.getLogger("api.rate_limit")


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri="memory://",
)

# Usage: @rate_limit_callable on billing callables (handler needs a `request` arg)
rate_limit_callable = limiter.limit("30/minute")
rate_limit_health = limiter.limit("120/minute")
rate_limit_exempt = limiter.exempt


def setup_rate_limiting(app):
    """Configure rate limiting on the FastAPI app.

    Call this in main.py after creating the app.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _custom_rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiting enabled")


async def _custom_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Log the event and return 429 with a Retry-After header."""
    ip = get_client_ip(request)
    security_logger.rate_limit_exceeded(ip=ip, path=request.url.path, limit=str(exc.detail))

    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "code": "RATE_LIMIT_EXCEEDED",
            "detail": str(exc.detail)
        },
        headers={"Retry-After": "60"}
    )
