"""Client IP extraction with trusted proxy support.

X-Forwarded-For is only honoured when TRUST_PROXY is "1" or "true", i.e.
when the API sits behind a load balancer that overwrites the header.
Otherwise the socket peer address is used, which prevents IP spoofing.
"""

from __future__ import annotations

import os

from fastapi import Request

TRUST_PROXY = os.environ.get("TRUST_PROXY", "").lower() in ("1", "true")


def get_client_ip(request: Request) -> str:
    """Get client IP address from request, used as the rate limit key."""
    if TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # First entry is the original client
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"
