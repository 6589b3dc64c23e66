from flask import abort, current_app, jsonify, redirect, request
from flask_login import current_user, login_required

from autoflow.errors import ValidationError
from autoflow.extensions import limiter
from autoflow.oauth import store
from autoflow.oauth.connector import connector_for, outcome_redirect_url
from autoflow.oauth.providers import PROVIDERS
from . import bp


def _connector_or_404(provider: str):
    connector = connector_for(provider)
    if connector is None:
        abort(404)
    return connector


@bp.get("/<provider>/authorize")
@limiter.limit("20 per minute")
def authorize(provider):
    connector = _connector_or_404(provider)
    user_id = current_user.id if current_user.is_authenticated else None
    # AuthenticationError / ConfigurationError render as JSON 401 / 500
    url = connector.authorize_url(user_id)
    current_app.logger.info("oauth.authorize.redirect", extra={"provider": provider, "user_id": user_id})
    return redirect(url, code=302)


@bp.get("/<provider>/callback")
@limiter.limit("20 per minute")
def callback(provider):
    connector = _connector_or_404(provider)
    outcome = connector.handle_callback(
        code=request.args.get("code"),
        state=request.args.get("state"),
        provider_error=request.args.get("error"),
    )
    return redirect(outcome_redirect_url(outcome), code=302)


@bp.get("/status")
@login_required
def status():
    return jsonify({"statuses": store.statuses_for(current_user.id)})


@bp.delete("/status")
@login_required
def disconnect():
    data = request.get_json(silent=True) or {}
    provider = data.get("provider")
    if provider not in PROVIDERS:
        raise ValidationError(f"invalid provider {provider!r}", code="invalid_provider")
    store.delete_record(current_user.id, provider)
    return jsonify({"success": True})
