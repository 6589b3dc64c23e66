from sqlalchemy import func
from autoflow.extensions import db

STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_INCOMPLETE = "incomplete"
STATUS_INCOMPLETE_EXPIRED = "incomplete_expired"
STATUS_UNPAID = "unpaid"
STATUS_PAUSED = "paused"

SUBSCRIPTION_STATUSES = frozenset({
    STATUS_PAUSED,
    STATUS_TRIALING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
    STATUS_INCOMPLETE,
    STATUS_INCOMPLETE_EXPIRED,
    STATUS_UNPAID,
})

# Statuses that grant paid entitlements
ENTITLED_STATUSES = frozenset({STATUS_ACTIVE, STATUS_TRIALING})

class SubscriptionRecord(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)

    billing_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    billing_customer_id = db.Column(db.String(64), nullable=False, index=True)
    price_id = db.Column(db.String(64), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, default=STATUS_INCOMPLETE)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    def to_dict(self) -> dict:
        def _iso(dt):
            return dt.isoformat() if dt else None
        return {
            "billing_subscription_id": self.billing_subscription_id,
            "billing_customer_id": self.billing_customer_id,
            "price_id": self.price_id,
            "status": self.status,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": _iso(self.canceled_at),
            "trial_start": _iso(self.trial_start),
            "trial_end": _iso(self.trial_end),
        }

    def __repr__(self) -> str:
        return f"<SubscriptionRecord id={self.id} user_id={self.user_id!r} status={self.status!r} price_id={self.price_id!r}>"
