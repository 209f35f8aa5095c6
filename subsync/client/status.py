"""
Pure derivations over cached subscription data.

Subscription and enhanced-status values are the JSON dicts served by the
read API (ISO timestamps). ``now`` is injectable everywhere for tests.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from subsync.utils.helpers import parse_iso, utcnow

ACCESS_STATUSES = ("active", "trialing")
CRITICAL_STATUSES = ("past_due", "canceled", "incomplete", "incomplete_expired", "unpaid")

STATUS_LABELS = {
    "active": "Active",
    "trialing": "Trial Period",
    "past_due": "Payment Overdue",
    "canceled": "Canceled",
    "incomplete": "Incomplete Setup",
    "incomplete_expired": "Setup Expired",
    "unpaid": "Payment Required",
}

SYNC_STATUS_LABELS = {
    "synced": "Synced",
    "pending": "Syncing...",
    "failed": "Sync Failed",
    "retry_needed": "Retry Pending",
}

RETRY_SYNC_STATUSES = ("failed", "retry_needed")

EXPIRING_SOON_DAYS = 3
HEALTHY_SYNC_AGE_HOURS = 24


@dataclass(frozen=True)
class BackoffPolicy:
    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    multiplier: float = 2.0

    def delay(self, retry_count: int) -> float:
        return min(self.base_delay_s * (self.multiplier ** max(0, retry_count)), self.max_delay_s)


RETRY_POLICY = BackoffPolicy()


def backoff_delay(retry_count: int, policy: BackoffPolicy = RETRY_POLICY) -> float:
    return policy.delay(retry_count)


def _retry_wait(sync_status: str | None, retry_count: int, last_sync_at: Any, now: datetime | None, policy: BackoffPolicy) -> float | None:
    if sync_status not in RETRY_SYNC_STATUSES or retry_count >= policy.max_retries:
        return None
    last = parse_iso(last_sync_at)
    if last is None:
        return 0.0
    elapsed = ((now or utcnow()) - last).total_seconds()
    return max(0.0, policy.delay(retry_count) - elapsed)


def needs_sync_retry(sync_status: str, retry_count: int, last_sync_at: Any, now: datetime | None = None, policy: BackoffPolicy = RETRY_POLICY) -> bool:
    return _retry_wait(sync_status, retry_count, last_sync_at, now, policy) == 0.0


def sync_retry_delay(enhanced: Mapping[str, Any] | None, now: datetime | None = None, policy: BackoffPolicy = RETRY_POLICY) -> float | None:
    """Seconds until a re-sync is due (0 when overdue), or None when none is wanted."""
    if not enhanced:
        return None
    return _retry_wait(enhanced.get("sync_status"), enhanced.get("retry_count") or 0, enhanced.get("last_sync_at"), now, policy)


def is_sync_stale(enhanced: Mapping[str, Any] | None) -> bool:
    return bool(enhanced) and (enhanced.get("sync_status") or "synced") != "synced"


def has_access(subscription: Mapping[str, Any] | None, access: Mapping[str, Any] | None = None, *, loading: bool = False, now: datetime | None = None) -> bool:
    """
    Fail-open while loading. Once loaded, the server's access check wins;
    without it: active or trialing, or past_due with the period still running.
    """
    if loading:
        return True
    if access is not None and "has_access" in access:
        return bool(access["has_access"])
    if not subscription:
        return False
    status = subscription.get("status")
    if status in ACCESS_STATUSES:
        return True
    if status == "past_due":
        period_end = parse_iso(subscription.get("current_period_end"))
        return period_end is not None and period_end > (now or utcnow())
    return False


def is_trialing(subscription: Mapping[str, Any] | None) -> bool:
    return bool(subscription) and subscription.get("status") == "trialing"


def days_until_expiry(subscription: Mapping[str, Any] | None, now: datetime | None = None) -> int | None:
    if not subscription:
        return None
    end = parse_iso(subscription.get("current_period_end"))
    if end is None and is_trialing(subscription):
        end = parse_iso(subscription.get("trial_end"))
    if end is None:
        return None
    seconds = (end - (now or utcnow())).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def is_critical(status: str | None) -> bool:
    return status in CRITICAL_STATUSES


def status_label(subscription: Mapping[str, Any] | None, now: datetime | None = None) -> str:
    if not subscription:
        return "No Subscription"
    status = subscription.get("status")
    if status == "active" and subscription.get("cancel_at_period_end"):
        return "Canceling at Period End"
    if status in ACCESS_STATUSES:
        days = days_until_expiry(subscription, now)
        if days is not None and days <= EXPIRING_SOON_DAYS:
            return "Trial Ending Soon" if status == "trialing" else "Expiring Soon"
    return STATUS_LABELS.get(status, status or "Unknown")


def sync_status_label(sync_status: str | None) -> str:
    return SYNC_STATUS_LABELS.get(sync_status or "", sync_status or "Unknown")


def is_sync_healthy(enhanced: Mapping[str, Any] | None, now: datetime | None = None) -> bool:
    """Synced within the last day with at most two retries."""
    if not enhanced:
        return False
    last = parse_iso(enhanced.get("last_sync_at"))
    if last is None:
        return False
    age_h = ((now or utcnow()) - last).total_seconds() / 3600
    return (
        enhanced.get("sync_status") == "synced"
        and age_h <= HEALTHY_SYNC_AGE_HOURS
        and (enhanced.get("retry_count") or 0) <= 2
    )


def consistency_issues(subscription: Mapping[str, Any] | None, enhanced: Mapping[str, Any] | None) -> list[str]:
    if not subscription or not enhanced:
        return []
    issues = []
    if subscription.get("status") != enhanced.get("subscription_status"):
        issues.append(f"Status mismatch: {subscription.get('status')} vs {enhanced.get('subscription_status')}")
    if subscription.get("stripe_subscription_id") != enhanced.get("stripe_subscription_id"):
        issues.append(
            f"Stripe ID mismatch: {subscription.get('stripe_subscription_id')} vs {enhanced.get('stripe_subscription_id')}"
        )
    return issues
