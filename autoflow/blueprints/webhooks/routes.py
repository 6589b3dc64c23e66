from flask import current_app, jsonify, request

from autoflow.billing import events
from autoflow.errors import SignatureError
from autoflow.extensions import csrf
from . import bp


@csrf.exempt
@bp.post("/webhook")
def stripe_webhook():
    """
    Stripe -> /api/stripe/webhook

    400 when the signature cannot be verified, 200 once the event is applied
    (or ignored), 500 when a handler fails so Stripe redelivers.
    """
    raw = request.get_data(cache=False, as_text=False) or b""
    try:
        event = events.verify_event(
            raw,
            request.headers.get("Stripe-Signature"),
            current_app.config.get("STRIPE_WEBHOOK_SECRET"),
        )
    except SignatureError as exc:
        # Nothing in an unverified body is trusted, not even its event id
        current_app.logger.warning(
            "billing.webhook.signature_invalid",
            extra={"reason": exc.code, "remote_addr": request.remote_addr, "bytes": len(raw)},
        )
        raise

    outcome = events.process_event(event)
    body = {"received": True}
    if outcome is events.Outcome.DUPLICATE:
        body["duplicate"] = True
    return jsonify(body), 200
