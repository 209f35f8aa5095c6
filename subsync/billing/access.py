from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_

from subsync.billing.plans import get_plan
from subsync.models import InventoryItem, UserSubscription
from subsync.utils.helpers import as_utc, isoformat, utcnow

ACCESS_STATUSES = ("active", "trialing")


def check_access(sub: UserSubscription, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Authoritative access check used by the client cache."""
    now = now or utcnow()
    period_end = as_utc(sub.current_period_end)
    has_access = sub.status in ACCESS_STATUSES and (period_end is None or period_end > now)
    return {
        "has_access": bool(has_access),
        "plan_id": sub.plan_id,
        "status": sub.status,
        "trial_end": isoformat(sub.trial_end),
        "current_period_end": isoformat(sub.current_period_end),
        "max_inventory_items": get_plan(sub.plan_id).max_inventory_items,
    }


def inventory_count(session, user_id: str) -> int:
    return (
        session.query(InventoryItem)
        .filter(InventoryItem.user_id == user_id)
        .filter(or_(InventoryItem.is_sold.is_(False), InventoryItem.is_sold.is_(None)))
        .count()
    )


def inventory_limit(session, sub: UserSubscription) -> Dict[str, Any]:
    limit = get_plan(sub.plan_id).max_inventory_items
    count = inventory_count(session, sub.user_id)
    return {
        "max_inventory_items": limit,
        "inventory_count": count,
        "can_add": limit is None or count < limit,
    }
