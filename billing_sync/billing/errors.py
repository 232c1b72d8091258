"""Error types for the billing layer.

Failure policy
--------------
Remote failures are classified by the call site, not by the error:

    soft (log and continue)                hard (abort with a typed error)
    -------------------------------------  --------------------------------------
    payment method candidate fetch         checkout session fetch
    invoice / intent expansion for labels  subscription fetch after checkout
    customer email fetch (user lookup)     subscription create / update
    identity lookup by email (user lookup) customer create
    identity email lookup (customer create) ephemeral key / portal / payment intent
    subscription search (manual activation)

Soft sites catch ``ProcessorError`` (or ``IdentityLookupError``) and log at
WARNING. Hard sites let ``ProcessorError`` propagate to the router, which maps
it to a ``CallableError`` (callables) or a 500 (webhook, so Stripe retries).
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing errors."""


class ConfigurationError(BillingError):
    """Required configuration is missing or invalid."""


class ProcessorError(BillingError):
    """A Stripe API call failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.code = code
        self.http_status = http_status

    @property
    def not_found(self) -> bool:
        return self.code == "resource_missing" or self.http_status == 404


class SignatureVerificationFailed(BillingError):
    """A webhook payload failed signature verification or could not be parsed."""


class IdentityTokenError(BillingError):
    """A bearer token could not be verified by the identity provider."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class IdentityLookupError(BillingError):
    """The identity provider could not answer a lookup."""


# Callable error taxonomy -> HTTP status.
CALLABLE_ERROR_STATUS = {
    "unauthenticated": 401,
    "invalid-argument": 400,
    "failed-precondition": 400,
    "not-found": 404,
    "permission-denied": 403,
    "internal": 500,
}


class CallableError(BillingError):
    """Error reported back to a callable's caller."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if code not in CALLABLE_ERROR_STATUS:
            raise ValueError(f"Unknown callable error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return CALLABLE_ERROR_STATUS[self.code]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload
