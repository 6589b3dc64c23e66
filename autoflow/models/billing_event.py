from sqlalchemy import func
from autoflow.extensions import db
from .types import JSONType

class BillingEventLog(db.Model):
    """Audit row per verified webhook delivery of an allow-listed type."""
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    payload = db.Column(JSONType, nullable=False, default=dict)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
