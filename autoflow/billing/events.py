"""
Stripe webhook reconciliation.

Deliveries are verified against the shared secret before anything in them
is read, filtered against ``RELEVANT_EVENTS`` and dispatched to handlers
that write local state through natural-key upserts (customer id,
subscription id). Each handler applies the event's full snapshot, so a
replay of the same event converges on the same rows. Delivery order is
assumed to follow Stripe's: there is no version field to reject stale
snapshots with.

Any handler failure propagates so the route answers 500 and Stripe
redelivers.
"""
from __future__ import annotations

import enum
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
from sqlalchemy.exc import SQLAlchemyError

from autoflow.errors import ConfigurationError, PersistenceError, SignatureError
from autoflow.extensions import db
from autoflow.models import BillingEventLog, CustomerRecord, SubscriptionRecord
from autoflow.models.subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    SUBSCRIPTION_STATUSES,
)
from autoflow.services import billing as billing_service
from autoflow.services.persistence import upsert
from autoflow.utils.helpers import from_unix, object_id, utcnow

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

RELEVANT_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_SUCCEEDED,
    INVOICE_PAYMENT_FAILED,
})

USER_METADATA_KEY = "user_id"


class Outcome(enum.Enum):
    HANDLED = "handled"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"


def verify_event(raw_body: bytes, sig_header: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """
    Check the Stripe-Signature header over the raw body and return the parsed
    event. Nothing in the body is trusted before this succeeds.
    """
    if not secret:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise SignatureError("missing Stripe-Signature header", code="missing_signature")

    try:
        payload = raw_body.decode("utf-8")
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        raise SignatureError(f"signature verification failed: {exc}") from exc

    event = json.loads(payload)
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise SignatureError("verified body is not an event", code="malformed_event")
    return event


# ── Helpers ─────────────────────────────────────────────────────────────


def _metadata_user_id(obj: Mapping[str, Any]) -> Optional[str]:
    value = (obj.get("metadata") or {}).get(USER_METADATA_KEY)
    return str(value) if value else None


def _first_item(sub: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_bound(sub: Mapping[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions report billing periods per subscription item
    return from_unix(sub.get(key) or _first_item(sub).get(key))


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return object_id(details.get("subscription"))


def _commit(action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"{action} failed: {exc}") from exc


def _user_for_customer(customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    row = db.session.query(CustomerRecord).filter_by(billing_customer_id=customer_id).one_or_none()
    return row.user_id if row else None


# ── Handlers ────────────────────────────────────────────────────────────


def handle_checkout_completed(session: Mapping[str, Any], now: datetime) -> None:
    """Link the buyer's user id to the Stripe customer."""
    if session.get("mode") != "subscription":
        return

    user_id = _metadata_user_id(session)
    sub_id = object_id(session.get("subscription"))
    if not user_id and sub_id:
        try:
            client = billing_service.get_client()
        except ConfigurationError:
            # Redelivery cannot fix a missing key
            logger.warning(
                "billing.checkout.no_user",
                extra={"session_id": session.get("id"), "reason": "stripe_not_configured"},
            )
            return
        sub = billing_service.to_plain(client.subscriptions.retrieve(sub_id))
        user_id = _metadata_user_id(sub)

    if not user_id:
        # customer.subscription.updated will be skipped too until linked; Stripe's
        # later lifecycle events carry the same customer, so this self-heals once linked
        logger.warning("billing.checkout.no_user", extra={"session_id": session.get("id")})
        return

    customer_id = object_id(session.get("customer"))
    if not customer_id:
        return

    upsert(
        CustomerRecord,
        {"user_id": user_id, "billing_customer_id": customer_id},
        conflict_columns=("user_id",),
    )
    logger.info("billing.customer.linked", extra={"user_id": user_id, "customer_id": customer_id})


def _known_status(sub: Mapping[str, Any]) -> str:
    status = sub.get("status")
    if status in SUBSCRIPTION_STATUSES:
        return status
    logger.warning(
        "billing.subscription.unknown_status",
        extra={"subscription_id": sub.get("id"), "status": status},
    )
    return STATUS_INCOMPLETE


def _snapshot_values(sub: Mapping[str, Any], user_id: str, customer_id: str) -> Dict[str, Any]:
    price_id = (_first_item(sub).get("price") or {}).get("id")
    return {
        "user_id": user_id,
        "billing_subscription_id": sub["id"],
        "billing_customer_id": customer_id,
        "price_id": price_id or "",
        "status": _known_status(sub),
        "current_period_start": _period_bound(sub, "current_period_start"),
        "current_period_end": _period_bound(sub, "current_period_end"),
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
        "canceled_at": from_unix(sub.get("canceled_at")),
        "trial_start": from_unix(sub.get("trial_start")),
        "trial_end": from_unix(sub.get("trial_end")),
    }


def upsert_subscription(sub: Mapping[str, Any], now: datetime) -> None:
    """Overwrite the local record with the event's full snapshot."""
    customer_id = object_id(sub.get("customer"))
    user_id = _user_for_customer(customer_id)
    if not user_id:
        # Checkout linkage has not landed yet; a later event will carry the snapshot
        logger.warning(
            "billing.subscription.customer_unknown",
            extra={"customer_id": customer_id, "subscription_id": sub.get("id")},
        )
        return

    upsert(
        SubscriptionRecord,
        _snapshot_values(sub, user_id, customer_id),
        conflict_columns=("billing_subscription_id",),
        # canceled is terminal: never overwrite it
        where=SubscriptionRecord.__table__.c.status != STATUS_CANCELED,
    )
    logger.info(
        "billing.subscription.upserted",
        extra={"user_id": user_id, "subscription_id": sub.get("id"), "status": sub.get("status")},
    )


def handle_subscription_deleted(sub: Mapping[str, Any], now: datetime) -> None:
    record = (
        db.session.query(SubscriptionRecord)
        .filter_by(billing_subscription_id=sub.get("id"))
        .one_or_none()
    )
    if record is None:
        customer_id = object_id(sub.get("customer"))
        user_id = _user_for_customer(customer_id)
        if not user_id:
            logger.warning("billing.subscription.delete_unknown", extra={"subscription_id": sub.get("id")})
            return
        values = _snapshot_values(sub, user_id, customer_id)
        values.update(status=STATUS_CANCELED, canceled_at=now)
        upsert(SubscriptionRecord, values, conflict_columns=("billing_subscription_id",))
        return

    record.status = STATUS_CANCELED
    # Processing time, not Stripe's canceled_at
    record.canceled_at = now
    _commit("subscription cancel")
    logger.info("billing.subscription.canceled", extra={"subscription_id": record.billing_subscription_id})


def _transition(sub_id: Optional[str], to_status: str, only_from: Optional[str] = None) -> int:
    if not sub_id:
        return 0
    query = db.session.query(SubscriptionRecord).filter(
        SubscriptionRecord.billing_subscription_id == sub_id,
        SubscriptionRecord.status != STATUS_CANCELED,
    )
    if only_from:
        query = query.filter(SubscriptionRecord.status == only_from)
    try:
        changed = query.update({"status": to_status}, synchronize_session=False)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(f"status transition failed: {exc}") from exc
    _commit("status transition")
    return changed


def handle_payment_succeeded(invoice: Mapping[str, Any], now: datetime) -> None:
    sub_id = _invoice_subscription_id(invoice)
    if _transition(sub_id, STATUS_ACTIVE, only_from=STATUS_PAST_DUE):
        logger.info("billing.subscription.recovered", extra={"subscription_id": sub_id})


def handle_payment_failed(invoice: Mapping[str, Any], now: datetime) -> None:
    sub_id = _invoice_subscription_id(invoice)
    if _transition(sub_id, STATUS_PAST_DUE):
        logger.info("billing.subscription.past_due", extra={"subscription_id": sub_id})


HANDLERS: Dict[str, Callable[[Mapping[str, Any], datetime], None]] = {
    CHECKOUT_COMPLETED: handle_checkout_completed,
    SUBSCRIPTION_CREATED: upsert_subscription,
    SUBSCRIPTION_UPDATED: upsert_subscription,
    SUBSCRIPTION_DELETED: handle_subscription_deleted,
    INVOICE_PAYMENT_SUCCEEDED: handle_payment_succeeded,
    INVOICE_PAYMENT_FAILED: handle_payment_failed,
}


# ── Processor ───────────────────────────────────────────────────────────


def _log_attempt(event: Mapping[str, Any]) -> BillingEventLog:
    log = db.session.query(BillingEventLog).filter_by(stripe_event_id=event["id"]).one_or_none()
    if log is None:
        log = BillingEventLog(stripe_event_id=event["id"], type=event["type"], payload=dict(event), attempts=0)
        db.session.add(log)
    log.attempts = (log.attempts or 0) + 1
    _commit("event log")
    return log


def process_event(event: Mapping[str, Any], now: Optional[datetime] = None) -> Outcome:
    """Apply one verified event. Raises on handler failure."""
    now = now or utcnow()
    ev_type = event.get("type")
    if ev_type not in RELEVANT_EVENTS:
        logger.debug("billing.event.ignored", extra={"event_type": ev_type})
        return Outcome.IGNORED

    log = _log_attempt(event)
    if log.processed_at is not None:
        return Outcome.DUPLICATE

    obj = (event.get("data") or {}).get("object") or {}
    try:
        HANDLERS[ev_type](obj, now)
    except Exception as exc:
        db.session.rollback()
        log.notes = f"handler_error:{type(exc).__name__}"[:255]
        _commit("event log")
        logger.exception("billing.event.handler_failed", extra={"event_id": event.get("id"), "event_type": ev_type})
        raise

    log.processed_at = now
    log.notes = None
    _commit("event log")
    return Outcome.HANDLED
