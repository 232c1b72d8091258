"""Billing Sync - Stripe subscription state mirrored into Firestore user records.

Package layout:
    billing/     Domain core: status rules, Stripe gateway, user resolution,
                 reconciliation, manual activation, webhook dispatch
    routers/     FastAPI routers (webhook, callables, health)
    middleware/  Rate limiting
    utils/       Client IP extraction, security event log
"""
