import pytest
import stripe

from autoflow.extensions import db
from autoflow.models import CustomerRecord
from autoflow.services import billing as billing_service

H = {"X-User-Id": "u1", "X-User-Email": "buyer@example.com"}


def test_checkout_returns_session(client, monkeypatch):
    calls = {}

    def _fake_checkout_session(*, price_id, user_id, email, tier=None):
        calls.update(price_id=price_id, user_id=user_id, email=email, tier=tier)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    monkeypatch.setattr(billing_service, "create_checkout_session", _fake_checkout_session)

    resp = client.post("/api/stripe/checkout", json={"priceId": "price_pro_monthly"}, headers=H)
    assert resp.status_code == 200
    assert resp.get_json() == {"sessionId": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    assert calls == {"price_id": "price_pro_monthly", "user_id": "u1", "email": "buyer@example.com", "tier": "pro"}


def test_checkout_requires_identity(client):
    assert client.post("/api/stripe/checkout", json={"priceId": "price_pro_monthly"}).status_code == 401


def test_checkout_requires_price_and_email(client):
    resp = client.post("/api/stripe/checkout", json={}, headers={"X-User-Id": "u1"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "missing_fields"}


def test_checkout_rejects_unknown_price(client):
    resp = client.post("/api/stripe/checkout", json={"priceId": "price_free_lunch"}, headers=H)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "unknown_price"}


def test_checkout_stripe_failure_is_502(client, monkeypatch):
    def _fail(**kwargs):
        raise stripe.APIConnectionError("network")
    monkeypatch.setattr(billing_service, "create_checkout_session", _fail)
    resp = client.post("/api/stripe/checkout", json={"priceId": "price_pro_monthly"}, headers=H)
    assert resp.status_code == 502
    assert resp.get_json() == {"error": "checkout_failed"}


def test_checkout_session_params_carry_user_metadata(app, monkeypatch):
    created = {}

    class _Obj:
        def __init__(self, **kw):
            self.__dict__.update(kw)

    class _Customers:
        def list(self, params):
            return _Obj(data=[])

        def create(self, params):
            created["customer"] = params
            return _Obj(id="cus_new")

    class _Sessions:
        def create(self, params, options):
            created["session"] = params
            created["options"] = options
            return _Obj(id="cs_1", url="https://checkout.stripe.test/cs_1")

    class _Checkout:
        sessions = _Sessions()

    class _FakeClient:
        customers = _Customers()
        checkout = _Checkout()

    monkeypatch.setitem(app.extensions, "stripe_client", _FakeClient())
    with app.test_request_context():
        out = billing_service.create_checkout_session(price_id="price_pro_monthly", user_id="u1", email="b@example.com")

    assert out == {"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
    params = created["session"]
    assert params["customer"] == "cus_new"
    assert params["mode"] == "subscription"
    assert params["metadata"] == {"user_id": "u1"}
    assert params["subscription_data"]["metadata"]["user_id"] == "u1"
    assert params["success_url"].startswith("http://example.test/pricing?success=true")
    assert created["customer"]["metadata"] == {"user_id": "u1"}
    assert created["options"]["idempotency_key"].startswith("checkout:")


def test_portal_without_customer_is_404(client):
    resp = client.post("/api/stripe/portal", headers={"X-User-Id": "u1"})
    assert resp.status_code == 404


def test_portal_returns_url(app, client, monkeypatch):
    with app.app_context():
        db.session.add(CustomerRecord(user_id="u1", billing_customer_id="cus_1"))
        db.session.commit()

    seen = {}

    def _portal(*, stripe_customer_id):
        seen["customer"] = stripe_customer_id
        return {"url": "https://billing.stripe.test/p/1"}
    monkeypatch.setattr(billing_service, "create_portal_session", _portal)

    resp = client.post("/api/stripe/portal", headers={"X-User-Id": "u1"})
    assert resp.status_code == 200
    assert resp.get_json() == {"url": "https://billing.stripe.test/p/1"}
    assert seen["customer"] == "cus_1"


def test_services_require_configured_client(app):
    from autoflow.errors import ConfigurationError
    with app.app_context():
        with pytest.raises(ConfigurationError):
            billing_service.get_client()
