"""
Tier limits and per-action checks on top of the reconciled billing state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from flask import current_app

from autoflow.billing import usage as usage_counters
from autoflow.errors import AutoflowError, ValidationError
from autoflow.extensions import db
from autoflow.models import SubscriptionRecord
from autoflow.models.subscription import ENTITLED_STATUSES
from autoflow.services import billing as billing_service
from autoflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_PRO = "pro"

UNLIMITED = -1

# Canonical limit keys
TIERS: Dict[str, Dict[str, Any]] = {
    TIER_FREE: {
        "name": "Free",
        "limits": {
            "workflows": 1,
            "aiExecutions": 50,
            "contexts": 1,
            "maxSteps": 1,
            "integrations": 2,
            "templates": 5,
        },
    },
    TIER_PRO: {
        "name": "Pro",
        "limits": {
            "workflows": UNLIMITED,
            "aiExecutions": UNLIMITED,
            "contexts": UNLIMITED,
            "maxSteps": UNLIMITED,
            "integrations": UNLIMITED,
            "templates": UNLIMITED,
        },
    },
}

ACTIONS = frozenset({
    "create_workflow",
    "run_ai",
    "create_context",
    "add_step",
    "use_schedule",
    "use_integration",
})


def tier_for_price(price_id: Optional[str]) -> str:
    """Keyed off the configured Price IDs; anything else is free."""
    if not price_id:
        return TIER_FREE
    cfg = current_app.config
    pro_prices = {cfg.get("STRIPE_PRICE_PRO_MONTHLY"), cfg.get("STRIPE_PRICE_PRO_ANNUAL")} - {None, ""}
    if price_id in pro_prices:
        return TIER_PRO
    return TIER_FREE


def limits_for(tier: str) -> Dict[str, int]:
    return dict(TIERS[tier]["limits"])


@dataclass
class EntitlementStatus:
    tier: str = TIER_FREE
    is_active: bool = True
    usage: Dict[str, int] = field(default_factory=dict)
    subscription: Optional[Dict[str, Any]] = None

    @property
    def limits(self) -> Dict[str, int]:
        return limits_for(self.tier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "isActive": self.is_active,
            "limits": self.limits,
            "usage": dict(self.usage),
            "subscription": self.subscription,
        }


def _latest_entitled(user_id: str) -> Optional[SubscriptionRecord]:
    rows = (
        db.session.query(SubscriptionRecord)
        .filter(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.status.in_(ENTITLED_STATUSES),
        )
        .all()
    )
    if not rows:
        return None
    floor = datetime.min.replace(tzinfo=timezone.utc)
    # Most recent period end wins; updated_at breaks ties
    return max(rows, key=lambda r: (as_utc(r.current_period_end) or floor, as_utc(r.updated_at) or floor))


def _stripe_fallback(email: str) -> Optional[Dict[str, Any]]:
    try:
        return billing_service.find_entitled_subscription(email)
    except (stripe.StripeError, AutoflowError) as exc:
        logger.warning("entitlements.stripe_lookup_failed", extra={"detail": str(exc)})
        return None


def get_status(user_id: str, email_fallback: Optional[str] = None, now: Optional[datetime] = None) -> EntitlementStatus:
    """
    Tier from the most recent active or trialing local subscription. With no
    such record, ask Stripe about ``email_fallback``; any failure there
    leaves the user on free.
    """
    now = now or utcnow()
    status = EntitlementStatus(usage=usage_counters.current_usage(user_id, now))

    record = _latest_entitled(user_id)
    if record is not None:
        status.tier = tier_for_price(record.price_id)
        status.subscription = record.to_dict()
        return status

    if email_fallback:
        remote = _stripe_fallback(email_fallback)
        if remote:
            # The only paid plan on offer; any live subscription is pro
            status.tier = TIER_PRO
            status.subscription = {
                "billing_subscription_id": remote.get("id"),
                "status": remote.get("status"),
                "source": "stripe",
            }
    return status


def _over_limit(limit: int, current: int) -> bool:
    return limit != UNLIMITED and current >= limit


def evaluate_action(status: EntitlementStatus, action: str, current_steps: Optional[int] = None) -> Dict[str, Any]:
    """Pure check of ``action`` against ``status``."""
    if action not in ACTIONS:
        raise ValidationError(f"unknown action {action!r}", code="unknown_action")

    limits = status.limits
    plan = TIERS[status.tier]["name"]
    use = status.usage

    if action == "create_workflow":
        limit, current = limits["workflows"], use.get("workflows", 0)
        if _over_limit(limit, current):
            return {
                "allowed": False,
                "reason": f"You've reached the maximum of {limit} workflows on the {plan} plan",
                "limit": limit,
                "current": current,
            }
    elif action == "run_ai":
        limit, current = limits["aiExecutions"], use.get("aiExecutions", 0)
        if _over_limit(limit, current):
            return {
                "allowed": False,
                "reason": f"You've used all {limit} AI executions for this month on the {plan} plan",
                "limit": limit,
                "current": current,
            }
    elif action == "create_context":
        limit, current = limits["contexts"], use.get("contexts", 0)
        if _over_limit(limit, current):
            return {
                "allowed": False,
                "reason": f"You've reached the maximum of {limit} context documents on the {plan} plan",
                "limit": limit,
                "current": current,
            }
    elif action == "add_step":
        limit, current = limits["maxSteps"], int(current_steps or 0)
        if _over_limit(limit, current):
            return {
                "allowed": False,
                "reason": f"The {plan} plan is limited to {limit} step per workflow",
                "limit": limit,
                "current": current,
            }
    elif action == "use_schedule":
        if status.tier != TIER_PRO:
            return {"allowed": False, "reason": "Scheduled runs are a Pro feature"}
    # use_integration: connections are not metered

    return {"allowed": True}


def check_action(
    user_id: str,
    action: str,
    current_steps: Optional[int] = None,
    email_fallback: Optional[str] = None,
) -> Dict[str, Any]:
    if action not in ACTIONS:
        raise ValidationError(f"unknown action {action!r}", code="unknown_action")
    return evaluate_action(get_status(user_id, email_fallback=email_fallback), action, current_steps)
