import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time

import pytest
from autoflow import create_app
from autoflow.extensions import db

WEBHOOK_SECRET = "whsec_test_x"

@pytest.fixture(scope="session")
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "APP_BASE_URL": "http://example.test",
        "OAUTH_RETURN_PATH": "/workflows/new",
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "STRIPE_SECRET_KEY": None,
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "STRIPE_PRICE_PRO_MONTHLY": "price_pro_monthly",
        "STRIPE_PRICE_PRO_ANNUAL": "price_pro_annual",
        "GOOGLE_CLIENT_ID": "google-client",
        "GOOGLE_CLIENT_SECRET": "google-secret",
        "SLACK_CLIENT_ID": "slack-client",
        "SLACK_CLIENT_SECRET": "slack-secret",
        "NOTION_CLIENT_ID": "notion-client",
        "NOTION_CLIENT_SECRET": "notion-secret",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


# ── Fakes ───────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeHttp:
    """Stands in for the app's requests.Session; records every call."""

    def __init__(self):
        self.posts = []
        self.gets = []
        self.post_responses = []
        self.get_responses = []

    def queue_post(self, response):
        self.post_responses.append(response)

    def queue_get(self, response):
        self.get_responses.append(response)

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        resp = self.post_responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def get(self, url, **kwargs):
        self.gets.append((url, kwargs))
        resp = self.get_responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


@pytest.fixture()
def fake_http(app, monkeypatch):
    http = FakeHttp()
    monkeypatch.setitem(app.extensions, "oauth_http", http)
    return http


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header value for ``payload``, computed the way Stripe does."""
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def post_event(client):
    def _post(event, secret=WEBHOOK_SECRET, headers=None):
        body = json.dumps(event)
        hdrs = {"Stripe-Signature": stripe_signature(body, secret), "Content-Type": "application/json"}
        if headers is not None:
            hdrs = headers
        return client.post("/api/stripe/webhook", data=body, headers=hdrs)
    return _post
