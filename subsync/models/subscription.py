from sqlalchemy import func, text
from subsync.extensions import db
from subsync.models.types import JSONType
from subsync.utils.helpers import isoformat, utcnow

# Mirrors the provider's subscription lifecycle; never invented locally
SUBSCRIPTION_STATUSES = (
    "trialing",
    "active",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
)

class UserSubscription(db.Model):
    __tablename__ = "user_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    plan_id = db.Column(db.String(64), nullable=False, server_default=text("'free_trial'"))
    status = db.Column(db.String(32), nullable=False, index=True, server_default=text("'trialing'"))

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    # Independent of status: a subscription may be active and flagged to cancel
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=text("false"))
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", JSONType, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "trial_start": isoformat(self.trial_start),
            "trial_end": isoformat(self.trial_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": isoformat(self.canceled_at),
            "metadata": dict(self.meta or {}),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<UserSubscription id={self.id} user_id={self.user_id!r} status={self.status!r} plan_id={self.plan_id!r}>"
