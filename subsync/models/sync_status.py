from sqlalchemy import func, text
from subsync.extensions import db
from subsync.models.types import JSONType
from subsync.utils.helpers import isoformat, utcnow

SYNC_STATUSES = ("synced", "pending", "failed", "retry_needed")
PAYMENT_METHOD_STATUSES = ("valid", "requires_action", "declined", "unknown")

class SubscriptionSyncStatus(db.Model):
    """Freshness of the cached subscription, separate from its business fields."""

    __tablename__ = "subscription_enhanced_status"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)

    subscription_status = db.Column(db.String(32), nullable=False, server_default=text("'trialing'"))
    subscription_metadata = db.Column(JSONType, nullable=False, default=dict)

    last_sync_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sync_status = db.Column(db.String(16), nullable=False, index=True, server_default=text("'synced'"))
    payment_method_status = db.Column(db.String(32), nullable=False, server_default=text("'valid'"))
    retry_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "subscription_status": self.subscription_status,
            "subscription_metadata": dict(self.subscription_metadata or {}),
            "last_sync_at": isoformat(self.last_sync_at),
            "sync_status": self.sync_status,
            "payment_method_status": self.payment_method_status,
            "retry_count": self.retry_count or 0,
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<SubscriptionSyncStatus user_id={self.user_id!r} sync_status={self.sync_status!r} retry_count={self.retry_count}>"
