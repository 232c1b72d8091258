"""Billing configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_STRIPE_API_VERSION = "2024-06-20"


def _str_env(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = str(environ.get(name, "")).strip()
    return value or None


def _number_env(environ: Mapping[str, str], name: str, default, cast):
    raw = str(environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be numeric, got {raw!r}") from exc


@dataclass(frozen=True)
class BillingSettings:
    stripe_secret_key: str
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_api_version: str = DEFAULT_STRIPE_API_VERSION
    checkout_success_url: Optional[str] = None
    checkout_cancel_url: Optional[str] = None
    portal_return_url: Optional[str] = None
    payment_intent_amount: int = 1000
    payment_intent_currency: str = "mxn"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> BillingSettings:
    """Build settings from the environment.

    Raises:
        ConfigurationError: STRIPE_SECRET_KEY is missing or a numeric value is malformed.
    """
    env = os.environ if environ is None else environ

    secret_key = _str_env(env, "STRIPE_SECRET_KEY")
    if not secret_key:
        raise ConfigurationError(
            "Missing Stripe secret. Set the STRIPE_SECRET_KEY environment variable."
        )

    amount = _number_env(env, "PAYMENT_INTENT_AMOUNT", 1000, int)
    if amount <= 0:
        raise ConfigurationError("PAYMENT_INTENT_AMOUNT must be positive")

    return BillingSettings(
        stripe_secret_key=secret_key,
        stripe_webhook_secret=_str_env(env, "STRIPE_WEBHOOK_SECRET"),
        stripe_price_id=_str_env(env, "STRIPE_PRICE_ID"),
        stripe_api_version=_str_env(env, "STRIPE_API_VERSION") or DEFAULT_STRIPE_API_VERSION,
        checkout_success_url=_str_env(env, "STRIPE_CHECKOUT_SUCCESS_URL"),
        checkout_cancel_url=_str_env(env, "STRIPE_CHECKOUT_CANCEL_URL"),
        portal_return_url=_str_env(env, "STRIPE_BILLING_PORTAL_RETURN_URL"),
        payment_intent_amount=amount,
        payment_intent_currency=(_str_env(env, "PAYMENT_INTENT_CURRENCY") or "mxn").lower(),
    )
