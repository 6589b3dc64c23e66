from flask import Blueprint

from autoflow.blueprints import protect_cookie_sessions

bp = Blueprint("integrations", __name__)
bp.before_request(protect_cookie_sessions)

from . import routes  # noqa: E402,F401
