from flask import current_app, request
from flask_login import current_user

from autoflow.extensions import csrf
from autoflow.identity import USER_ID_HEADER


def protect_cookie_sessions():
    """
    CSRF check for requests authenticated by the session cookie. Calls that
    identify the caller with the X-User-Id header cannot be forged
    cross-site without a CORS preflight and skip the token check.
    """
    if not current_app.config.get("WTF_CSRF_ENABLED", True):
        return
    if request.headers.get(USER_ID_HEADER):
        return
    if getattr(current_user, "is_authenticated", False):
        csrf.protect()
