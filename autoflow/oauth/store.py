"""
Integration record store: one OAuth grant per (user, provider).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from autoflow.errors import PersistenceError
from autoflow.extensions import db
from autoflow.models import IntegrationRecord
from autoflow.oauth.providers import PROVIDERS, Grant
from autoflow.services.persistence import upsert

logger = logging.getLogger(__name__)


def save_grant(user_id: str, provider: str, grant: Grant, now: datetime) -> None:
    """Create or fully replace the user's grant for ``provider``."""
    expires_at = now + timedelta(seconds=grant.expires_in) if grant.expires_in else None
    # Every column is written so a reconnect never inherits stale values
    upsert(
        IntegrationRecord,
        {
            "user_id": user_id,
            "provider": provider,
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token,
            "token_expires_at": expires_at,
            "provider_user_id": grant.provider_user_id,
            "provider_email": grant.provider_email,
            "provider_data": grant.provider_data or {},
        },
        conflict_columns=("user_id", "provider"),
    )
    logger.info("integration.saved", extra={"user_id": user_id, "provider": provider})


def get_record(user_id: str, provider: str) -> Optional[IntegrationRecord]:
    return (
        db.session.query(IntegrationRecord)
        .filter_by(user_id=user_id, provider=provider)
        .one_or_none()
    )


def update_access_token(
    record: IntegrationRecord,
    access_token: str,
    expires_at: Optional[datetime],
    refresh_token: Optional[str] = None,
) -> None:
    record.access_token = access_token
    record.token_expires_at = expires_at
    if refresh_token:
        record.refresh_token = refresh_token
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"token update failed: {exc}") from exc


def delete_record(user_id: str, provider: str) -> bool:
    """Remove the user's grant for ``provider``. Returns False when none existed."""
    try:
        deleted = (
            db.session.query(IntegrationRecord)
            .filter_by(user_id=user_id, provider=provider)
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"disconnect failed: {exc}") from exc
    if deleted:
        logger.info("integration.disconnected", extra={"user_id": user_id, "provider": provider})
    return bool(deleted)


def _status(provider: str, record: Optional[IntegrationRecord]) -> Dict:
    if record is None:
        return {"connected": False, "provider": provider}
    return {
        "connected": True,
        "provider": provider,
        "providerEmail": record.provider_email,
        "providerData": record.provider_data or {},
        "connectedAt": record.created_at.isoformat() if record.created_at else None,
    }


def statuses_for(user_id: str) -> Dict[str, Dict]:
    """Connected/disconnected map covering every known provider."""
    rows = db.session.query(IntegrationRecord).filter_by(user_id=user_id).all()
    by_provider = {r.provider: r for r in rows}
    return {name: _status(name, by_provider.get(name)) for name in PROVIDERS}
