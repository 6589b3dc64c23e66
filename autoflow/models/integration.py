from sqlalchemy import func, UniqueConstraint
from autoflow.extensions import db
from .types import JSONType

class IntegrationRecord(db.Model):
    """Stored OAuth grant for one (user, provider) pair."""
    __tablename__ = "user_integrations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False, index=True)

    access_token = db.Column(db.Text, nullable=False)
    refresh_token = db.Column(db.Text, nullable=True)
    token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    provider_user_id = db.Column(db.String(255), nullable=True)
    provider_email = db.Column(db.String(255), nullable=True)
    provider_data = db.Column(JSONType, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_integrations_user_provider"),
    )

    def __repr__(self) -> str:
        return f"<IntegrationRecord id={self.id} user_id={self.user_id!r} provider={self.provider!r}>"
