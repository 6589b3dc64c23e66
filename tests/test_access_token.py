from datetime import datetime, timedelta, timezone

import requests

from autoflow.extensions import db
from autoflow.models import IntegrationRecord
from autoflow.oauth.tokens import force_refresh, get_access_token
from autoflow.utils.helpers import as_utc
from conftest import FakeResponse

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _seed(provider="google", expires_at=None, refresh_token="r1", access_token="a1"):
    db.session.add(IntegrationRecord(
        user_id="u1",
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        token_expires_at=expires_at,
        provider_data={},
    ))
    db.session.commit()


def _reload(provider="google"):
    db.session.expire_all()
    return db.session.query(IntegrationRecord).filter_by(user_id="u1", provider=provider).one()


def test_not_connected_returns_none(app, fake_http):
    with app.app_context():
        assert get_access_token("u1", "google", now=NOW) is None


def test_fresh_token_is_returned_without_refresh(app, fake_http):
    with app.app_context():
        _seed(expires_at=NOW + timedelta(hours=1))
        assert get_access_token("u1", "google", now=NOW) == "a1"
    assert fake_http.posts == []


def test_token_inside_margin_is_refreshed(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "a2", "expires_in": 3600}))
    with app.app_context():
        _seed(expires_at=NOW + timedelta(seconds=120))
        assert get_access_token("u1", "google", now=NOW) == "a2"

        rec = _reload()
        assert rec.access_token == "a2"
        assert as_utc(rec.token_expires_at) == NOW + timedelta(seconds=3600)
        # Not rotated by the provider, so kept
        assert rec.refresh_token == "r1"

    _, kwargs = fake_http.posts[0]
    assert kwargs["data"]["grant_type"] == "refresh_token"
    assert kwargs["data"]["refresh_token"] == "r1"


def test_rotated_refresh_token_is_stored(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "a2", "refresh_token": "r2", "expires_in": 60}))
    with app.app_context():
        _seed(expires_at=NOW - timedelta(minutes=5))
        assert get_access_token("u1", "google", now=NOW) == "a2"
        assert _reload().refresh_token == "r2"


def test_failed_refresh_returns_none_and_leaves_record(app, fake_http):
    fake_http.queue_post(FakeResponse(400, {"error": "invalid_grant"}))
    expired = NOW - timedelta(minutes=1)
    with app.app_context():
        _seed(expires_at=expired)
        assert get_access_token("u1", "google", now=NOW) is None

        rec = _reload()
        assert rec.access_token == "a1"
        assert rec.refresh_token == "r1"
        assert as_utc(rec.token_expires_at) == expired


def test_transport_error_during_refresh_returns_none(app, fake_http):
    fake_http.queue_post(requests.ConnectionError("reset"))
    with app.app_context():
        _seed(expires_at=NOW - timedelta(minutes=1))
        assert get_access_token("u1", "google", now=NOW) is None


def test_expired_without_refresh_token_returns_none(app, fake_http):
    with app.app_context():
        _seed(expires_at=NOW - timedelta(minutes=1), refresh_token=None)
        assert get_access_token("u1", "google", now=NOW) is None
    assert fake_http.posts == []


def test_provider_without_refresh_returns_stored_token(app, fake_http):
    with app.app_context():
        # Even a past expiry is ignored for non-refreshing providers
        _seed(provider="slack", expires_at=NOW - timedelta(days=1), refresh_token=None, access_token="xoxb")
        assert get_access_token("u1", "slack", now=NOW) == "xoxb"
    assert fake_http.posts == []


def test_force_refresh_ignores_expiry(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "a3", "expires_in": 3600}))
    with app.app_context():
        _seed(expires_at=NOW + timedelta(days=1))
        assert force_refresh("u1", "google", now=NOW) == "a3"
        assert force_refresh("u1", "slack", now=NOW) is None


def test_unparseable_expires_in_on_refresh_stores_no_expiry(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "new", "expires_in": "soon"}))
    with app.app_context():
        _seed(expires_at=NOW - timedelta(seconds=5))
        assert get_access_token("u1", "google", now=NOW) == "new"

        rec = _reload()
        assert rec.access_token == "new"
        assert rec.token_expires_at is None
