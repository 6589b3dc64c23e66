"""
Generic OAuth2 authorization-code driver.

One ``OAuthConnector`` serves every provider in ``providers.PROVIDERS``;
per-provider behaviour comes only from the ``ProviderConfig`` it is built
with. A callback attempt moves through::

    Init -> AuthorizationRequested -> CallbackReceived
         -> TokenExchanged -> ProfileFetched (optional) -> Persisted
         | ErrorTerminal

The state token is decoded before any request reaches the provider, so an
invalid or expired state never triggers a token exchange.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import requests
from flask import current_app

from autoflow.errors import (
    AuthenticationError,
    AutoflowError,
    ConfigurationError,
    ProviderDeniedError,
    TokenExchangeError,
    ValidationError,
)
from autoflow.oauth import state as state_codec
from autoflow.oauth import store
from autoflow.oauth.providers import CREDENTIALS_BASIC, Grant, ProviderConfig, get_provider
from autoflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class OAuthPhase(enum.Enum):
    INIT = "init"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    PERSISTED = "persisted"
    ERROR_TERMINAL = "error_terminal"


@dataclass
class CallbackOutcome:
    provider: str
    phase: OAuthPhase = OAuthPhase.INIT
    history: List[OAuthPhase] = field(default_factory=list)
    user_id: Optional[str] = None
    error: Optional[AutoflowError] = None

    def advance(self, phase: OAuthPhase) -> None:
        self.phase = phase
        self.history.append(phase)

    @property
    def succeeded(self) -> bool:
        return self.phase is OAuthPhase.PERSISTED

    @property
    def reason(self) -> Optional[str]:
        return self.error.code if self.error else None

    def redirect_params(self) -> Dict[str, str]:
        if self.succeeded:
            return {"integration_success": self.provider}
        return {"integration_error": self.reason or "callback_failed"}


class OAuthConnector:
    def __init__(
        self,
        provider: ProviderConfig,
        config: Mapping[str, Any],
        http: requests.Session,
        timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.config = config
        self.http = http
        self.timeout = timeout if timeout is not None else config.get("OAUTH_HTTP_TIMEOUT", 15)

    # ── Configuration ───────────────────────────────────────────────────

    @property
    def client_id(self) -> Optional[str]:
        return self.config.get(self.provider.client_id_key)

    @property
    def client_secret(self) -> Optional[str]:
        return self.config.get(self.provider.client_secret_key)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def redirect_uri(self) -> str:
        base = (self.config.get("APP_BASE_URL") or "").rstrip("/")
        return f"{base}{self.provider.callback_path()}"

    # ── Authorize ───────────────────────────────────────────────────────

    def authorize_url(self, user_id: Optional[str], now: Optional[datetime] = None) -> str:
        """Consent URL for ``user_id`` with a freshly issued state token."""
        if not user_id:
            raise AuthenticationError("please log in first")
        if not self.client_id:
            raise ConfigurationError(
                f"{self.provider.display_name} OAuth not configured; set {self.provider.client_id_key}"
            )

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
        }
        if self.provider.scopes:
            params["scope"] = self.provider.scope_separator.join(self.provider.scopes)
        params.update(self.provider.extra_authorize_params)
        params["state"] = state_codec.encode(user_id, now or utcnow())
        return f"{self.provider.authorize_url}?{urlencode(params)}"

    # ── Callback ────────────────────────────────────────────────────────

    def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CallbackOutcome:
        """
        Run one callback attempt to completion. Never raises; failures are
        reported through ``outcome.error`` and ``outcome.phase``.
        """
        now = now or utcnow()
        outcome = CallbackOutcome(provider=self.provider.name)
        outcome.advance(OAuthPhase.AUTHORIZATION_REQUESTED)
        try:
            self._run_callback(outcome, code, state, provider_error, now)
        except AutoflowError as exc:
            outcome.error = exc
            outcome.advance(OAuthPhase.ERROR_TERMINAL)
            logger.warning(
                "oauth.callback.failed",
                extra={"provider": self.provider.name, "reason": exc.code, "detail": str(exc)},
            )
        except Exception as exc:
            outcome.error = AutoflowError(str(exc), code="callback_failed")
            outcome.advance(OAuthPhase.ERROR_TERMINAL)
            logger.exception("oauth.callback.crashed", extra={"provider": self.provider.name})
        return outcome

    def _run_callback(self, outcome, code, state, provider_error, now) -> None:
        outcome.advance(OAuthPhase.CALLBACK_RECEIVED)
        if provider_error:
            raise ProviderDeniedError(f"provider returned {provider_error!r}", code=provider_error)
        if not code or not state:
            raise ValidationError("callback without code or state", code="missing_code")

        max_age = self.config.get("OAUTH_STATE_MAX_AGE", state_codec.DEFAULT_MAX_AGE_SECONDS)
        decoded = state_codec.decode(state, now, max_age_seconds=max_age)
        outcome.user_id = decoded.user_id

        if not self.is_configured():
            raise ConfigurationError(f"{self.provider.display_name} client credentials missing")

        grant = self.exchange_code(code)
        outcome.advance(OAuthPhase.TOKEN_EXCHANGED)

        if self.provider.profile_url and self._apply_profile(grant):
            outcome.advance(OAuthPhase.PROFILE_FETCHED)

        store.save_grant(decoded.user_id, self.provider.name, grant, now)
        outcome.advance(OAuthPhase.PERSISTED)
        logger.info(
            "oauth.callback.connected",
            extra={"provider": self.provider.name, "user_id": decoded.user_id},
        )

    # ── Token endpoint ──────────────────────────────────────────────────

    def _token_request(self, params: Dict[str, str]) -> Mapping[str, Any]:
        headers = {"Accept": "application/json", **self.provider.token_headers}
        if self.provider.credentials == CREDENTIALS_BASIC:
            kwargs = {"json": params, "auth": (self.client_id, self.client_secret)}
        else:
            kwargs = {"data": {**params, "client_id": self.client_id, "client_secret": self.client_secret}}

        try:
            resp = self.http.post(self.provider.token_url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise TokenExchangeError(f"{self.provider.name} token endpoint unreachable: {exc}") from exc

        if not resp.ok:
            logger.error(
                "oauth.token_endpoint.error",
                extra={"provider": self.provider.name, "status": resp.status_code, "body": resp.text[:500]},
            )
            raise TokenExchangeError(f"{self.provider.name} token endpoint returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenExchangeError(f"{self.provider.name} token endpoint returned non-JSON") from exc
        if not isinstance(data, dict):
            raise TokenExchangeError(f"{self.provider.name} token endpoint returned {type(data).__name__}")

        body_error = self.provider.body_error(data)
        if body_error:
            raise ProviderDeniedError(f"{self.provider.name} reported {body_error!r}", code=body_error)
        return data

    def exchange_code(self, code: str) -> Grant:
        data = self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })
        try:
            return self.provider.shape_grant(data)
        except KeyError as exc:
            raise TokenExchangeError(f"{self.provider.name} token response missing {exc}") from exc

    def refresh(self, refresh_token: str) -> Mapping[str, Any]:
        if not self.provider.supports_refresh:
            raise ConfigurationError(f"{self.provider.name} does not issue refresh tokens")
        if not self.is_configured():
            raise ConfigurationError(f"{self.provider.display_name} client credentials missing")
        data = self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        if not data.get("access_token"):
            raise TokenExchangeError(f"{self.provider.name} refresh response missing access_token")
        return data

    # ── Profile ─────────────────────────────────────────────────────────

    def _apply_profile(self, grant: Grant) -> bool:
        """Fill profile fields on ``grant``. A failure leaves them empty."""
        try:
            resp = self.http.get(
                self.provider.profile_url,
                headers={"Authorization": f"Bearer {grant.access_token}"},
                timeout=self.timeout,
            )
            if not resp.ok:
                logger.warning(
                    "oauth.profile.unavailable",
                    extra={"provider": self.provider.name, "status": resp.status_code},
                )
                return False
            profile = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("oauth.profile.unavailable", extra={"provider": self.provider.name, "detail": str(exc)})
            return False

        if not isinstance(profile, dict):
            return False
        if profile.get("id") is not None:
            grant.provider_user_id = str(profile["id"])
        grant.provider_email = profile.get("email") or grant.provider_email
        return True


def connector_for(provider_name: str) -> Optional[OAuthConnector]:
    """Connector bound to the current app's config and shared HTTP session."""
    provider = get_provider(provider_name)
    if provider is None:
        return None
    return OAuthConnector(
        provider,
        current_app.config,
        current_app.extensions["oauth_http"],
    )


def outcome_redirect_url(outcome: CallbackOutcome) -> str:
    cfg = current_app.config
    base = (cfg.get("APP_BASE_URL") or "").rstrip("/")
    path = cfg.get("OAUTH_RETURN_PATH") or "/"
    return f"{base}{path}?{urlencode(outcome.redirect_params())}"
