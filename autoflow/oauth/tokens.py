"""
Access token resolver: the single entry point feature code uses to get a
usable token for a (user, provider) pair.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from autoflow.errors import AutoflowError
from autoflow.models import IntegrationRecord
from autoflow.oauth import store
from autoflow.oauth.connector import OAuthConnector, connector_for
from autoflow.oauth.providers import expires_in_seconds
from autoflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def _needs_refresh(expires_at: Optional[datetime], now: datetime, margin_seconds: int) -> bool:
    if expires_at is None:
        return False
    return as_utc(expires_at) - now < timedelta(seconds=margin_seconds)


def _refresh(record: IntegrationRecord, connector: OAuthConnector, now: datetime) -> Optional[str]:
    extra = {"provider": record.provider, "user_id": record.user_id}
    if not record.refresh_token:
        logger.warning("oauth.token.expired_without_refresh", extra=extra)
        return None

    try:
        data = connector.refresh(record.refresh_token)
    except AutoflowError as exc:
        # Leave the stored grant untouched; the refresh token may still be good
        logger.warning("oauth.token.refresh_failed", extra={**extra, "reason": exc.code, "detail": str(exc)})
        return None

    # An unparseable expires_in is stored as no expiry
    expires_in = expires_in_seconds(data)
    expires_at = now + timedelta(seconds=expires_in) if expires_in else None
    try:
        store.update_access_token(record, data["access_token"], expires_at, data.get("refresh_token"))
    except AutoflowError as exc:
        logger.error("oauth.token.persist_failed", extra={**extra, "detail": str(exc)})
        return None

    logger.info("oauth.token.refreshed", extra=extra)
    return data["access_token"]


def get_access_token(user_id: str, provider: str, now: Optional[datetime] = None) -> Optional[str]:
    """
    Return a currently valid access token, or None when the user is not
    connected or a required refresh failed.
    """
    now = as_utc(now) if now else utcnow()
    record = store.get_record(user_id, provider)
    if record is None:
        return None

    connector = connector_for(provider)
    if connector is None or not connector.provider.supports_refresh:
        # Tokens from providers without refresh are treated as non-expiring
        return record.access_token

    margin = int(current_app.config.get("TOKEN_REFRESH_MARGIN_SECONDS", 300))
    if not _needs_refresh(record.token_expires_at, now, margin):
        return record.access_token
    return _refresh(record, connector, now)


def force_refresh(user_id: str, provider: str, now: Optional[datetime] = None) -> Optional[str]:
    """Refresh regardless of expiry. None when not connected or refresh is unsupported."""
    now = as_utc(now) if now else utcnow()
    record = store.get_record(user_id, provider)
    connector = connector_for(provider)
    if record is None or connector is None or not connector.provider.supports_refresh:
        return None
    return _refresh(record, connector, now)
