"""
Usage counters read by the entitlement evaluator.

Workflows and context documents are counted from their own tables; AI
executions are metered per calendar month in ``usage_records``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from autoflow.errors import PersistenceError, ValidationError
from autoflow.extensions import db
from autoflow.models import ContextDocument, UsageRecord, Workflow
from autoflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

FEATURE_AI_CALLS = "ai_calls"


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """[first of this month, first of next month) in UTC."""
    now = as_utc(now)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def current_usage(user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    start, end = month_bounds(now or utcnow())
    workflows = db.session.query(func.count(Workflow.id)).filter(Workflow.user_id == user_id).scalar()
    contexts = db.session.query(func.count(ContextDocument.id)).filter(ContextDocument.user_id == user_id).scalar()
    ai_calls = (
        db.session.query(func.coalesce(func.sum(UsageRecord.count), 0))
        .filter(
            UsageRecord.user_id == user_id,
            UsageRecord.feature == FEATURE_AI_CALLS,
            UsageRecord.period_start >= start,
            UsageRecord.period_start < end,
        )
        .scalar()
    )
    return {
        "workflows": int(workflows or 0),
        "contexts": int(contexts or 0),
        "aiExecutions": int(ai_calls or 0),
    }


def record_usage(user_id: str, feature: str, count: int = 1, now: Optional[datetime] = None) -> None:
    """Add ``count`` to the user's counter for ``feature`` in the current month."""
    if not user_id:
        raise ValidationError("usage requires a user id")
    if count < 1:
        raise ValidationError("usage count must be positive")

    start, end = month_bounds(now or utcnow())
    try:
        updated = (
            db.session.query(UsageRecord)
            .filter_by(user_id=user_id, feature=feature, period_start=start)
            .update({UsageRecord.count: UsageRecord.count + count}, synchronize_session=False)
        )
        if not updated:
            db.session.add(UsageRecord(
                user_id=user_id,
                feature=feature,
                count=count,
                period_start=start,
                period_end=end,
            ))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"usage update failed: {exc}") from exc
    logger.debug("usage.recorded", extra={"user_id": user_id, "feature": feature, "count": count})
