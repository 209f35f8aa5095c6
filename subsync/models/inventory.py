from sqlalchemy import func, text
from subsync.extensions import db
from subsync.utils.helpers import utcnow

class InventoryItem(db.Model):
    """Only the columns the inventory-limit check reads."""

    __tablename__ = "inventory_items"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    is_sold = db.Column(db.Boolean, nullable=True, default=False, server_default=text("false"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
