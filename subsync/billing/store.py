import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from subsync.billing.plans import TRIAL_PLAN
from subsync.models import UserSubscription, SubscriptionSyncStatus
from subsync.utils.helpers import advance, utcnow

log = logging.getLogger(__name__)

# Fields the reducer/reconciler may overwrite on the subscription row
SUBSCRIPTION_FIELDS = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "plan_id",
    "status",
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "cancel_at_period_end",
    "canceled_at",
    "metadata",
)

SYNC_FIELDS = (
    "stripe_subscription_id",
    "subscription_status",
    "subscription_metadata",
    "last_sync_at",
    "sync_status",
    "payment_method_status",
    "retry_count",
)


def get_subscription(session, user_id: str) -> Optional[UserSubscription]:
    return session.query(UserSubscription).filter_by(user_id=user_id).one_or_none()


def find_by_stripe_subscription_id(session, stripe_subscription_id: Optional[str]) -> Optional[UserSubscription]:
    if not stripe_subscription_id:
        return None
    return session.query(UserSubscription).filter_by(stripe_subscription_id=stripe_subscription_id).one_or_none()


def get_sync_status(session, user_id: str) -> Optional[SubscriptionSyncStatus]:
    return session.query(SubscriptionSyncStatus).filter_by(user_id=user_id).one_or_none()


def trial_defaults(trial_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    end = now + timedelta(days=trial_days)
    return {
        "plan_id": TRIAL_PLAN,
        "status": "trialing",
        "trial_start": now,
        "trial_end": end,
        "current_period_start": now,
        "current_period_end": end,
        "cancel_at_period_end": False,
    }


def get_or_create_subscription(session, user_id: str, trial_days: int = 30) -> UserSubscription:
    """Return the user's row, creating it with trial defaults on first need."""
    sub = get_subscription(session, user_id)
    if sub is not None:
        return sub

    now = utcnow()
    sub = UserSubscription(user_id=user_id, meta={}, created_at=now, updated_at=now, **trial_defaults(trial_days, now))
    try:
        with session.begin_nested():
            session.add(sub)
    except IntegrityError:
        existing = get_subscription(session, user_id)
        if existing is None:
            raise
        return existing

    log.info("subscription.created", extra={"user_id": user_id, "plan_id": sub.plan_id})
    _mirror(session, sub, now)
    return sub


def apply_patch(session, sub: UserSubscription, patch: Dict[str, Any], now: Optional[datetime] = None) -> UserSubscription:
    """Overwrite the owned fields named in ``patch`` and advance ``updated_at``."""
    unknown = set(patch) - set(SUBSCRIPTION_FIELDS)
    if unknown:
        raise ValueError(f"not a subscription field: {sorted(unknown)}")

    for key, value in patch.items():
        if key == "metadata":
            sub.meta = dict(value or {})
        else:
            setattr(sub, key, value)

    now = now or utcnow()
    sub.updated_at = advance(sub.updated_at, now)
    session.flush()
    _mirror(session, sub, now)
    return sub


def _mirror(session, sub: UserSubscription, now: datetime) -> SubscriptionSyncStatus:
    # Every subscription write is fresh truth for the enhanced status
    return upsert_sync_status(
        session,
        sub.user_id,
        now=now,
        stripe_subscription_id=sub.stripe_subscription_id,
        subscription_status=sub.status,
        last_sync_at=now,
        sync_status="synced",
    )


def upsert_sync_status(session, user_id: str, *, now: Optional[datetime] = None, **fields: Any) -> SubscriptionSyncStatus:
    """
    Single-row upsert keyed by user id. ``last_sync_at`` never moves backwards;
    a lost insert race falls through to an update of the winner's row.
    """
    unknown = set(fields) - set(SYNC_FIELDS)
    if unknown:
        raise ValueError(f"not a sync status field: {sorted(unknown)}")

    now = now or utcnow()
    row = get_sync_status(session, user_id)
    if row is None:
        row = SubscriptionSyncStatus(
            user_id=user_id,
            subscription_status="trialing",
            subscription_metadata={},
            sync_status="synced",
            payment_method_status="valid",
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():
                session.add(row)
        except IntegrityError:
            row = get_sync_status(session, user_id)
            if row is None:
                raise

    for key, value in fields.items():
        if key == "last_sync_at":
            value = advance(row.last_sync_at, value) if value is not None else row.last_sync_at
        elif key == "subscription_metadata":
            value = dict(value or {})
        setattr(row, key, value)

    row.updated_at = advance(row.updated_at, now)
    session.flush()
    return row


def sync_statuses_for_retry(session, max_retries: int = 3, delay_minutes: int = 5, limit: int = 10, now: Optional[datetime] = None) -> List[SubscriptionSyncStatus]:
    """Rows marked ``retry_needed`` below the retry cap whose last attempt is older than the delay."""
    cutoff = (now or utcnow()) - timedelta(minutes=delay_minutes)
    return (
        session.query(SubscriptionSyncStatus)
        .filter(
            SubscriptionSyncStatus.sync_status == "retry_needed",
            SubscriptionSyncStatus.retry_count < max_retries,
            SubscriptionSyncStatus.updated_at < cutoff,
        )
        .order_by(SubscriptionSyncStatus.updated_at.asc())
        .limit(limit)
        .all()
    )
