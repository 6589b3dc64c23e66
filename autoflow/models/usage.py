from sqlalchemy import func
from autoflow.extensions import db

class UsageRecord(db.Model):
    """Metered counter for one feature over one calendar month."""
    __tablename__ = "usage_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    feature = db.Column(db.String(64), nullable=False)
    count = db.Column(db.Integer, nullable=False, default=1)
    period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    period_end = db.Column(db.DateTime(timezone=True), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        db.Index("ix_usage_records_period", "period_start", "period_end"),
    )


# Workflows and context documents are owned by the editor service; only
# the columns needed for usage counting are mapped here.
class Workflow(db.Model):
    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False, default="Untitled")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())


class ContextDocument(db.Model):
    __tablename__ = "contexts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False, default="Untitled")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
