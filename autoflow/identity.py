"""
Caller identity for the API.

Users are managed by the auth service in front of this one; requests carry
the user id in ``X-User-Id`` (and optionally ``X-User-Email``). The OAuth
authorize step is a browser navigation, so it also accepts ``?userId=``.
"""
from typing import Optional

from flask_login import UserMixin

from autoflow.errors import AuthenticationError
from autoflow.extensions import login_manager

USER_ID_HEADER = "X-User-Id"
USER_EMAIL_HEADER = "X-User-Email"

# Endpoints reached by top-level navigation rather than fetch()
QUERY_IDENTITY_ENDPOINTS = frozenset({"integrations.authorize"})


class CallerIdentity(UserMixin):
    def __init__(self, user_id: str, email: Optional[str] = None):
        self.id = str(user_id)
        self.email = email

    def __repr__(self) -> str:
        return f"<CallerIdentity id={self.id!r}>"


@login_manager.user_loader
def load_user(user_id: str):
    return CallerIdentity(user_id) if user_id else None


@login_manager.request_loader
def load_user_from_request(req):
    user_id = (req.headers.get(USER_ID_HEADER) or "").strip()
    if not user_id and req.endpoint in QUERY_IDENTITY_ENDPOINTS:
        user_id = (req.args.get("userId") or "").strip()
    if not user_id:
        return None
    email = (req.headers.get(USER_EMAIL_HEADER) or "").strip() or None
    return CallerIdentity(user_id, email=email)


@login_manager.unauthorized_handler
def unauthorized():
    # JSON 401 instead of a login redirect
    raise AuthenticationError("user id required")
