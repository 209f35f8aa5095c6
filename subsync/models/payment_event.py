import uuid
from sqlalchemy import func, text
from subsync.extensions import db
from subsync.models.types import JSONType
from subsync.utils.helpers import isoformat, utcnow

PROCESSING_STATUSES = ("pending", "processed", "failed", "skipped")

def _new_event_id() -> str:
    return str(uuid.uuid4())

class PaymentEventLog(db.Model):
    __tablename__ = "payment_event_log"

    event_id = db.Column(db.String(36), primary_key=True, default=_new_event_id)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    event_data = db.Column(JSONType, nullable=False, default=dict)

    processing_status = db.Column(db.String(16), nullable=False, index=True, server_default=text("'pending'"))
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    error_details = db.Column(JSONType, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0, server_default=text("0"))

    # Filled once the owning user is resolved; NULL for unresolvable events
    user_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    def to_dict(self, include_payload: bool = False) -> dict:
        out = {
            "event_id": self.event_id,
            "stripe_event_id": self.stripe_event_id,
            "event_type": self.event_type,
            "processing_status": self.processing_status,
            "processed_at": isoformat(self.processed_at),
            "error_details": self.error_details,
            "retry_count": self.retry_count or 0,
            "created_at": isoformat(self.created_at),
        }
        if include_payload:
            out["event_data"] = self.event_data
        return out

    def __repr__(self) -> str:
        return f"<PaymentEventLog {self.stripe_event_id!r} type={self.event_type!r} status={self.processing_status!r}>"
