from typing import Dict, Any, Optional
from urllib.parse import urljoin
from flask import current_app
from stripe import StripeClient
import hashlib, json

from autoflow.errors import ConfigurationError


def build_client(secret_key: Optional[str]) -> Optional[StripeClient]:
    """Called once from create_app(); the handle lives in app.extensions."""
    if not secret_key:
        return None
    return StripeClient(secret_key)


def get_client() -> StripeClient:
    client = current_app.extensions.get("stripe_client")
    if client is None:
        raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
    return client


def to_plain(obj: Any) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if obj is None:
        return {}
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _absolute_url(path: str) -> str:
    base = (current_app.config.get("APP_BASE_URL") or "").rstrip("/") + "/"
    return urljoin(base, path.lstrip("/"))


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "checkout:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _params_hash(d: Dict[str, Any]) -> str:
    # Stable across runs if params identical; changes when you change fields
    return hashlib.sha256(json.dumps(d, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()[:16]


def find_or_create_customer(*, email: str, user_id: str) -> str:
    """Reuse the Stripe customer registered under ``email`` or create one."""
    client = get_client()
    existing = client.customers.list(params={"email": email, "limit": 1})
    data = getattr(existing, "data", None) or []
    if data:
        return data[0].id
    customer = client.customers.create(params={"email": email, "metadata": {"user_id": str(user_id)}})
    return customer.id


def create_checkout_session(*, price_id: str, user_id: str, email: str, tier: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a Stripe Checkout Session for a subscription to the given Price.
    Returns: {"id": <session_id>, "url": <redirect_url or None>}
    """
    client = get_client()
    customer_id = find_or_create_customer(email=email, user_id=user_id)
    metadata = {"user_id": str(user_id)}
    params: Dict[str, Any] = {
        "mode": "subscription",
        "customer": customer_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": _absolute_url("pricing?success=true&session_id={CHECKOUT_SESSION_ID}"),
        "cancel_url": _absolute_url("pricing?canceled=true"),
        "allow_promotion_codes": True,
        "billing_address_collection": "auto",
        # Webhook context: user id rides on both the session and the subscription
        "metadata": metadata,
        "subscription_data": {"metadata": {**metadata, **({"tier": tier} if tier else {})}},
    }
    # Param-aware idempotency: new key whenever Checkout params change
    idem = make_idempotency_key(
        "checkout", "v1",
        user_id, price_id,
        _params_hash(params),
    )
    session = client.checkout.sessions.create(params=params, options={"idempotency_key": idem})
    return {"id": session.id, "url": getattr(session, "url", None)}


def create_portal_session(*, stripe_customer_id: str) -> Dict[str, Any]:
    """Create a Stripe Customer Portal session for an existing Customer."""
    client = get_client()
    params = {
        "customer": stripe_customer_id,
        "return_url": _absolute_url("pricing"),
    }
    session = client.billing_portal.sessions.create(params)
    return {"url": session.url}


def find_entitled_subscription(email: str) -> Optional[Dict[str, Any]]:
    """
    Look up an active or trialing subscription for the Stripe customer with
    ``email``. Used only when no reconciled local record exists.
    """
    client = get_client()
    customers = client.customers.list(params={"email": email, "limit": 1})
    data = getattr(customers, "data", None) or []
    if not data:
        return None
    customer_id = data[0].id
    for status in ("active", "trialing"):
        subs = client.subscriptions.list(params={"customer": customer_id, "status": status, "limit": 1})
        found = getattr(subs, "data", None) or []
        if found:
            return to_plain(found[0])
    return None
