"""User records and mapping Stripe context back to a user.

Users live in the Firestore ``users`` collection keyed by Firebase UID.
Webhooks only carry Stripe identifiers, so ``UserResolver`` walks an ordered
list of strategies until one produces a user:

    1. stored stripeCustomerId match
    2. Firebase Auth account with the event email
    3. stored email field match

If the event has a customer id but no email, the customer's email is fetched
from Stripe once, before the email based strategies run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from firebase_admin import auth
from firebase_admin import exceptions as firebase_exceptions
from google.cloud import firestore

from .errors import IdentityLookupError, IdentityTokenError, ProcessorError
from .stripe_gateway import StripeGateway

logger = logging.getLogger("billing.users")

USERS_COLLECTION = "users"


def normalize_email(value: Any) -> Optional[str]:
    email = str(value or "").strip().lower()
    return email or None


# =============================================================================
# USER STORE (Firestore)
# =============================================================================

@dataclass
class UserRecord:
    uid: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        return normalize_email(self.data.get("email"))

    @property
    def stripe_customer_id(self) -> Optional[str]:
        return str(self.data.get("stripeCustomerId") or "").strip() or None

    @property
    def stripe_subscription_id(self) -> Optional[str]:
        return str(self.data.get("stripeSubscriptionId") or "").strip() or None

    @property
    def subscription(self) -> Dict[str, Any]:
        sub = self.data.get("subscription")
        return sub if isinstance(sub, dict) else {}


class UserStore:
    """Reads and merge-writes documents in the ``users`` collection."""

    def __init__(self, db: firestore.Client) -> None:
        self._db = db

    def _users(self):
        return self._db.collection(USERS_COLLECTION)

    def get(self, uid: str) -> Optional[UserRecord]:
        doc = self._users().document(uid).get()
        if not doc.exists:
            return None
        return UserRecord(uid=doc.id, data=doc.to_dict() or {})

    def find_by_customer_id(self, customer_id: str) -> Optional[UserRecord]:
        return self._find_one("stripeCustomerId", customer_id)

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        return self._find_one("email", email)

    def _find_one(self, field_name: str, value: str) -> Optional[UserRecord]:
        for doc in self._users().where(field_name, "==", value).limit(1).stream():
            return UserRecord(uid=doc.id, data=doc.to_dict() or {})
        return None

    def merge(self, uid: str, payload: Dict[str, Any]) -> None:
        """Merge-write: only the given field paths change; the doc is created if absent."""
        self._users().document(uid).set(payload, merge=True)


# =============================================================================
# IDENTITY PROVIDER (Firebase Auth)
# =============================================================================

class FirebaseIdentity:
    """Token verification and UID <-> email lookups against Firebase Auth."""

    def __init__(self, app=None) -> None:
        self._app = app

    def verify_id_token(self, token: str) -> Dict[str, Any]:
        """Verify an ID token (signature, expiry, revocation).

        Raises:
            IdentityTokenError: with a short machine-readable reason.
        """
        try:
            return auth.verify_id_token(token, app=self._app, check_revoked=True)
        except auth.RevokedIdTokenError as exc:
            raise IdentityTokenError("revoked_token", "Token has been revoked") from exc
        except auth.ExpiredIdTokenError as exc:
            raise IdentityTokenError("expired_token", "Token has expired") from exc
        except auth.InvalidIdTokenError as exc:
            raise IdentityTokenError("invalid_token", "Invalid token") from exc
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise IdentityTokenError("auth_error", "Authentication failed") from exc

    def uid_for_email(self, email: str) -> Optional[str]:
        try:
            return auth.get_user_by_email(email, app=self._app).uid
        except auth.UserNotFoundError:
            return None
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise IdentityLookupError(f"Lookup by email failed: {exc}") from exc

    def email_for_uid(self, uid: str) -> Optional[str]:
        try:
            return normalize_email(auth.get_user(uid, app=self._app).email)
        except auth.UserNotFoundError:
            return None
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise IdentityLookupError(f"Lookup by uid failed: {exc}") from exc


# =============================================================================
# RESOLUTION
# =============================================================================

@dataclass
class ResolvedUser:
    uid: str
    email: Optional[str]
    matched_by: str
    record: Optional[UserRecord] = None

    @property
    def stored_customer_id(self) -> Optional[str]:
        return self.record.stripe_customer_id if self.record else None


@dataclass
class ResolutionContext:
    customer_id: Optional[str]
    email: Optional[str]
    customer_email_fetched: bool = False


Strategy = Callable[[ResolutionContext], Optional[ResolvedUser]]


def first_match(strategies: Sequence[Strategy], ctx: ResolutionContext) -> Optional[ResolvedUser]:
    for strategy in strategies:
        found = strategy(ctx)
        if found is not None:
            return found
    return None


class UserResolver:
    def __init__(
        self,
        store: UserStore,
        identity: FirebaseIdentity,
        gateway: StripeGateway,
    ) -> None:
        self._store = store
        self._identity = identity
        self._gateway = gateway

    @property
    def strategies(self) -> List[Strategy]:
        return [self.match_customer_id, self.match_identity_email, self.match_stored_email]

    def resolve(
        self,
        *,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[ResolvedUser]:
        ctx = ResolutionContext(
            customer_id=str(customer_id or "").strip() or None,
            email=normalize_email(email),
        )
        resolved = first_match(self.strategies, ctx)
        if resolved is None:
            logger.info(
                "No user matches customer=%s email=%s", ctx.customer_id, ctx.email
            )
        return resolved

    def match_customer_id(self, ctx: ResolutionContext) -> Optional[ResolvedUser]:
        if not ctx.customer_id:
            return None
        record = self._store.find_by_customer_id(ctx.customer_id)
        if record is None:
            return None
        return ResolvedUser(
            uid=record.uid,
            email=ctx.email or record.email,
            matched_by="customer_id",
            record=record,
        )

    def match_identity_email(self, ctx: ResolutionContext) -> Optional[ResolvedUser]:
        email = self._known_email(ctx)
        if not email:
            return None
        try:
            uid = self._identity.uid_for_email(email)
        except IdentityLookupError as exc:
            logger.warning("Identity lookup for %s failed: %s", email, exc)
            return None
        if not uid:
            return None
        return ResolvedUser(
            uid=uid,
            email=email,
            matched_by="identity_email",
            record=self._store.get(uid),
        )

    def match_stored_email(self, ctx: ResolutionContext) -> Optional[ResolvedUser]:
        email = self._known_email(ctx)
        if not email:
            return None
        record = self._store.find_by_email(email)
        if record is None:
            return None
        return ResolvedUser(uid=record.uid, email=email, matched_by="stored_email", record=record)

    def _known_email(self, ctx: ResolutionContext) -> Optional[str]:
        if ctx.email or not ctx.customer_id or ctx.customer_email_fetched:
            return ctx.email
        ctx.customer_email_fetched = True
        try:
            customer = self._gateway.retrieve_customer(ctx.customer_id)
        except ProcessorError as exc:
            logger.warning("Could not fetch customer %s: %s", ctx.customer_id, exc.message)
            return None
        if not customer.deleted:
            ctx.email = normalize_email(customer.email)
        return ctx.email
