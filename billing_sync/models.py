"""Pydantic models for the billing API.

Request bodies mirror the arguments the mobile and web clients send to each
callable. Every request accepts the reserved ``__authToken`` field for clients
that cannot set an Authorization header.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# REQUEST MODELS (Input Validation)
# =============================================================================

class CallableRequest(BaseModel):
    """Base body for every callable: optional inline ID token."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    authToken: Optional[str] = Field(default=None, alias="__authToken", max_length=8192)


class EphemeralKeyRequest(CallableRequest):
    api_version: Optional[str] = Field(default=None, max_length=32)


class CheckoutSessionRequest(CallableRequest):
    priceId: Optional[str] = Field(default=None, max_length=255)
    successUrl: Optional[str] = Field(default=None, max_length=2048)
    cancelUrl: Optional[str] = Field(default=None, max_length=2048)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator('metadata')
    @classmethod
    def validate_metadata(cls, v):
        # Stripe limits: 50 keys, 40 char keys, 500 char values
        if len(v) > 50:
            raise ValueError('metadata supports at most 50 keys')
        for key, value in v.items():
            if len(key) > 40 or len(value) > 500:
                raise ValueError('metadata key or value too long')
        return v


class ConfirmCheckoutRequest(CallableRequest):
    sessionId: Optional[str] = Field(default=None, max_length=255)


class ActivateAccessRequest(CallableRequest):
    """Clamped to [1, 365] days by the activator, not rejected here."""
    durationDays: Optional[int] = None
    paymentMethod: Optional[str] = Field(default=None, max_length=120)
    status: Optional[str] = Field(default=None, max_length=32)
    priceId: Optional[str] = Field(default=None, max_length=255)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CustomerResponse(BaseModel):
    customerId: str
    existed: bool


class SubscriptionCreateResponse(BaseModel):
    subscriptionId: str
    clientSecret: str
    status: Optional[str] = None


class CheckoutSessionResponse(BaseModel):
    sessionId: str
    url: Optional[str] = None
    status: Optional[str] = None


class CheckoutConfirmResponse(BaseModel):
    status: str
    subscriptionId: Optional[str] = None
    message: str


class ActivationResponse(BaseModel):
    status: str
    message: str
    subscriptionId: Optional[str] = None
    expiresAt: Optional[str] = None
    accessGranted: bool
    source: str  # 'stripe' or 'manual'


class PortalSessionResponse(BaseModel):
    url: str


class CancellationResponse(BaseModel):
    subscriptionId: str
    status: str
    cancelAtPeriodEnd: bool
    graceEndsAt: Optional[str] = None
    accessGranted: bool


class PingResponse(BaseModel):
    ok: bool
    uid: str
    email: Optional[str] = None
    authSource: str
    timestamp: str


class PaymentIntentResponse(BaseModel):
    paymentIntent: str
    customer: str
    ephemeralKey: str


class WebhookAck(BaseModel):
    received: bool


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
