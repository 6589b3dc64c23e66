from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from autoflow.errors import AuthenticationError, ConfigurationError
from autoflow.extensions import db
from autoflow.models import IntegrationRecord
from autoflow.oauth import state
from autoflow.oauth.connector import OAuthConnector, OAuthPhase, connector_for
from autoflow.oauth.providers import GOOGLE, NOTION, SLACK
from conftest import FakeResponse

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _record(user_id, provider):
    return db.session.query(IntegrationRecord).filter_by(user_id=user_id, provider=provider).one_or_none()


# ── authorize ───────────────────────────────────────────────────────────

def test_google_authorize_url_carries_offline_consent_and_state(app):
    with app.app_context():
        url = connector_for("google").authorize_url("u1", now=T0)
    assert url.startswith(GOOGLE.authorize_url + "?")
    q = _query(url)
    assert q["client_id"] == "google-client"
    assert q["redirect_uri"] == "http://example.test/api/integrations/google/callback"
    assert q["response_type"] == "code"
    assert q["access_type"] == "offline"
    assert q["prompt"] == "consent"
    assert "spreadsheets" in q["scope"]
    assert state.decode(q["state"], T0).user_id == "u1"


def test_slack_scopes_are_comma_separated(app):
    with app.app_context():
        q = _query(connector_for("slack").authorize_url("u1", now=T0))
    assert q["scope"] == ",".join(SLACK.scopes)


def test_notion_requests_user_owner(app):
    with app.app_context():
        q = _query(connector_for("notion").authorize_url("u1", now=T0))
    assert q["owner"] == "user"
    assert "scope" not in q


def test_authorize_requires_identity(app):
    with app.app_context():
        with pytest.raises(AuthenticationError):
            connector_for("google").authorize_url(None)


def test_authorize_without_client_id_is_configuration_error():
    connector = OAuthConnector(GOOGLE, {"APP_BASE_URL": "http://x"}, http=None)
    with pytest.raises(ConfigurationError):
        connector.authorize_url("u1")


def test_unknown_provider_has_no_connector(app):
    with app.app_context():
        assert connector_for("dropbox") is None


# ── callback ────────────────────────────────────────────────────────────

def test_google_callback_persists_tokens_and_profile(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {
        "access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3599,
        "scope": "s", "token_type": "Bearer",
    }))
    fake_http.queue_get(FakeResponse(200, {"id": "g-123", "email": "ada@example.com"}))

    with app.app_context():
        token = state.encode("u1", T0)
        outcome = connector_for("google").handle_callback("code-1", token, now=T0 + timedelta(seconds=10))

        assert outcome.succeeded
        assert outcome.history[-3:] == [OAuthPhase.TOKEN_EXCHANGED, OAuthPhase.PROFILE_FETCHED, OAuthPhase.PERSISTED]
        rec = _record("u1", "google")
        assert rec.access_token == "ya29.a"
        assert rec.refresh_token == "1//r"
        assert rec.provider_user_id == "g-123"
        assert rec.provider_email == "ada@example.com"

    url, kwargs = fake_http.posts[0]
    assert url == GOOGLE.token_url
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["data"]["code"] == "code-1"
    assert kwargs["data"]["client_secret"] == "google-secret"
    assert kwargs["data"]["redirect_uri"] == "http://example.test/api/integrations/google/callback"


def test_profile_failure_still_persists_tokens(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "ya29.b", "expires_in": 3600}))
    fake_http.queue_get(requests.ConnectionError("down"))

    with app.app_context():
        outcome = connector_for("google").handle_callback("c", state.encode("u1", T0), now=T0)
        assert outcome.succeeded
        assert OAuthPhase.PROFILE_FETCHED not in outcome.history
        rec = _record("u1", "google")
        assert rec.access_token == "ya29.b"
        assert rec.provider_email is None


def test_slack_callback_stores_team_data(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {
        "ok": True, "access_token": "xoxb-1", "bot_user_id": "B1",
        "team": {"id": "T1", "name": "Acme"}, "scope": "chat:write",
    }))
    with app.app_context():
        outcome = connector_for("slack").handle_callback("c", state.encode("u1", T0), now=T0)
        assert outcome.succeeded
        rec = _record("u1", "slack")
        assert rec.provider_data["team_name"] == "Acme"
        assert rec.token_expires_at is None
    # Slack exposes no profile endpoint here
    assert fake_http.gets == []


def test_slack_ok_false_is_reported_with_provider_reason(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"ok": False, "error": "invalid_code"}))
    with app.app_context():
        outcome = connector_for("slack").handle_callback("c", state.encode("u1", T0), now=T0)
        assert outcome.phase is OAuthPhase.ERROR_TERMINAL
        assert outcome.reason == "invalid_code"
        assert _record("u1", "slack") is None


def test_notion_uses_basic_auth_and_version_header(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {
        "access_token": "secret_n", "bot_id": "bot-1", "workspace_id": "w1",
        "workspace_name": "Docs",
        "owner": {"type": "user", "user": {"person": {"email": "ada@example.com"}}},
    }))
    with app.app_context():
        outcome = connector_for("notion").handle_callback("c", state.encode("u1", T0), now=T0)
        assert outcome.succeeded
        assert _record("u1", "notion").provider_email == "ada@example.com"

    url, kwargs = fake_http.posts[0]
    assert url == NOTION.token_url
    assert kwargs["auth"] == ("notion-client", "notion-secret")
    assert kwargs["json"]["grant_type"] == "authorization_code"
    assert kwargs["headers"]["Notion-Version"] == "2022-06-28"


def test_provider_error_param_is_passed_through(app, fake_http):
    with app.app_context():
        outcome = connector_for("google").handle_callback(None, None, provider_error="access_denied")
    assert outcome.reason == "access_denied"
    assert fake_http.posts == []


def test_missing_code_or_state(app, fake_http):
    with app.app_context():
        assert connector_for("google").handle_callback(None, "s").reason == "missing_code"
        assert connector_for("google").handle_callback("c", None).reason == "missing_code"
    assert fake_http.posts == []


def test_expired_state_never_reaches_token_endpoint(app, fake_http):
    with app.app_context():
        token = state.encode("u1", T0)
        outcome = connector_for("google").handle_callback("c", token, now=T0 + timedelta(seconds=301))
    assert outcome.reason == "state_expired"
    assert fake_http.posts == []


def test_garbage_state_is_invalid(app, fake_http):
    with app.app_context():
        outcome = connector_for("google").handle_callback("c", "@@@", now=T0)
    assert outcome.reason == "invalid_state"
    assert fake_http.posts == []


def test_token_endpoint_failure(app, fake_http):
    fake_http.queue_post(FakeResponse(400, {"error": "invalid_grant"}))
    with app.app_context():
        outcome = connector_for("google").handle_callback("c", state.encode("u1", T0), now=T0)
        assert outcome.reason == "token_exchange_failed"
        assert _record("u1", "google") is None


def test_token_endpoint_unreachable(app, fake_http):
    fake_http.queue_post(requests.Timeout("slow"))
    with app.app_context():
        outcome = connector_for("google").handle_callback("c", state.encode("u1", T0), now=T0)
    assert outcome.reason == "token_exchange_failed"


def test_missing_secret_is_not_configured(app, fake_http, monkeypatch):
    monkeypatch.setitem(app.config, "SLACK_CLIENT_SECRET", None)
    with app.app_context():
        outcome = connector_for("slack").handle_callback("c", state.encode("u1", T0), now=T0)
    assert outcome.reason == "not_configured"
    assert fake_http.posts == []


def test_reconnect_replaces_every_column(app, fake_http):
    fake_http.queue_post(FakeResponse(200, {"access_token": "a1", "refresh_token": "r1", "expires_in": 3600}))
    fake_http.queue_get(FakeResponse(200, {"id": "g1", "email": "old@example.com"}))
    fake_http.queue_post(FakeResponse(200, {"access_token": "a2", "expires_in": 3600}))
    fake_http.queue_get(FakeResponse(500, None, text="boom"))

    with app.app_context():
        connector = connector_for("google")
        assert connector.handle_callback("c1", state.encode("u1", T0), now=T0).succeeded
        assert connector.handle_callback("c2", state.encode("u1", T0), now=T0).succeeded

        db.session.expire_all()
        rows = db.session.query(IntegrationRecord).filter_by(user_id="u1", provider="google").all()
        assert len(rows) == 1
        assert rows[0].access_token == "a2"
        # Absent values overwrite, they do not inherit
        assert rows[0].refresh_token is None
        assert rows[0].provider_email is None


def test_redirect_params():
    from autoflow.oauth.connector import CallbackOutcome
    ok = CallbackOutcome(provider="slack")
    ok.advance(OAuthPhase.PERSISTED)
    assert ok.redirect_params() == {"integration_success": "slack"}
    failed = CallbackOutcome(provider="slack")
    failed.advance(OAuthPhase.ERROR_TERMINAL)
    assert failed.redirect_params() == {"integration_error": "callback_failed"}
