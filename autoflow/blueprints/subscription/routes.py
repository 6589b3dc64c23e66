from flask import jsonify, request
from flask_login import current_user, login_required

from autoflow.billing import entitlements
from autoflow.errors import ValidationError
from . import bp


def _email():
    return getattr(current_user, "email", None)


@bp.get("")
@login_required
def get_status():
    status = entitlements.get_status(current_user.id, email_fallback=_email())
    return jsonify(status.to_dict())


@bp.post("")
@login_required
def check_action():
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if not action:
        raise ValidationError("action is required", code="action_required")

    current_steps = data.get("currentSteps")
    if current_steps is not None and (not isinstance(current_steps, int) or isinstance(current_steps, bool)):
        raise ValidationError("currentSteps must be an integer")

    result = entitlements.check_action(
        current_user.id,
        action,
        current_steps=current_steps,
        email_fallback=_email(),
    )
    return jsonify(result)
