import stripe
from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from autoflow.errors import UpstreamError, ValidationError
from autoflow.extensions import db, limiter
from autoflow.models import CustomerRecord
from autoflow.services import billing as billing_service
from . import bp


def _known_prices():
    cfg = current_app.config
    return {cfg.get("STRIPE_PRICE_PRO_MONTHLY"), cfg.get("STRIPE_PRICE_PRO_ANNUAL")} - {None, ""}


@bp.post("/checkout")
@limiter.limit("10 per minute")
@login_required
def checkout():
    """Create a Checkout Session; the client redirects to the returned url."""
    data = request.get_json(silent=True) or {}
    price_id = (data.get("priceId") or "").strip()
    email = (data.get("email") or getattr(current_user, "email", None) or "").strip()
    if not price_id or not email:
        raise ValidationError("priceId and email are required", code="missing_fields")
    if price_id not in _known_prices():
        raise ValidationError(f"unknown price {price_id!r}", code="unknown_price")

    try:
        session = billing_service.create_checkout_session(
            price_id=price_id,
            user_id=current_user.id,
            email=email,
            tier=data.get("tier") or "pro",
        )
    except stripe.StripeError as exc:
        current_app.logger.exception(
            "billing.checkout.session_create_failed",
            extra={"user_id": current_user.id, "price_id": price_id},
        )
        raise UpstreamError(f"checkout session failed: {exc}", code="checkout_failed") from exc

    return jsonify({"sessionId": session["id"], "url": session["url"]})


@bp.post("/portal")
@limiter.limit("10 per minute")
@login_required
def portal():
    customer = db.session.query(CustomerRecord).filter_by(user_id=current_user.id).one_or_none()
    if customer is None:
        return jsonify({"error": "no_subscription"}), 404

    try:
        session = billing_service.create_portal_session(stripe_customer_id=customer.billing_customer_id)
    except stripe.StripeError as exc:
        current_app.logger.exception("billing.portal.session_create_failed", extra={"user_id": current_user.id})
        raise UpstreamError(f"portal session failed: {exc}", code="portal_failed") from exc
    return jsonify({"url": session["url"]})
