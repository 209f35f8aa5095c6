"""
Idempotent payment event log.

One row per provider event id (first write wins). Status only moves forward:
pending -> processed | failed | skipped, and failed entries may be re-attempted
by the retry command until they land in processed or skipped. Pending entries
older than the retry delay are ones whose outcome write was lost; the retry
command picks those up too.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from subsync.billing.errors import InvalidTransition
from subsync.models import PaymentEventLog, PROCESSING_STATUSES
from subsync.utils.helpers import advance, utcnow

log = logging.getLogger(__name__)

_TRANSITIONS = {
    "pending": {"processed", "failed", "skipped"},
    "failed": {"processed", "failed", "skipped"},
    "processed": set(),
    "skipped": set(),
}


@dataclass(frozen=True)
class RecordResult:
    entry: PaymentEventLog
    is_duplicate: bool

    @property
    def log_id(self) -> str:
        return self.entry.event_id


def find(session, stripe_event_id: str) -> Optional[PaymentEventLog]:
    return session.query(PaymentEventLog).filter_by(stripe_event_id=stripe_event_id).one_or_none()


def record(session, stripe_event_id: str, event_type: str, payload: Dict[str, Any]) -> RecordResult:
    """Insert a pending entry, or report the existing one as a duplicate."""
    existing = find(session, stripe_event_id)
    if existing is not None:
        return RecordResult(existing, True)

    entry = PaymentEventLog(
        stripe_event_id=stripe_event_id,
        event_type=event_type,
        event_data=payload or {},
        processing_status="pending",
        retry_count=0,
    )
    try:
        with session.begin_nested():
            session.add(entry)
    except IntegrityError:
        # Lost the insert race to a concurrent delivery of the same id
        existing = find(session, stripe_event_id)
        if existing is None:
            raise
        log.info("event_log.duplicate_race", extra={"stripe_event_id": stripe_event_id})
        return RecordResult(existing, True)
    return RecordResult(entry, False)


def update_status(session, entry: PaymentEventLog, status: str, error_detail: Optional[Dict[str, Any]] = None, *, user_id: Optional[str] = None) -> PaymentEventLog:
    if status not in PROCESSING_STATUSES:
        raise ValueError(f"unknown processing status: {status!r}")
    current = entry.processing_status or "pending"
    if status not in _TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, status)

    now = utcnow()
    entry.processing_status = status
    entry.error_details = error_detail
    if status == "processed":
        entry.processed_at = now
    elif status == "failed":
        entry.retry_count = (entry.retry_count or 0) + 1
    if user_id:
        entry.user_id = user_id
    entry.updated_at = advance(entry.updated_at, now)
    session.flush()
    return entry


def events_for_retry(session, max_retries: int = 3, delay_minutes: int = 5, limit: int = 10, now: Optional[datetime] = None) -> List[PaymentEventLog]:
    """
    Failed entries below the retry cap, and pending entries whose outcome was
    never recorded, when their last write is older than the delay.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=delay_minutes)
    return (
        session.query(PaymentEventLog)
        .filter(
            or_(
                PaymentEventLog.processing_status == "pending",
                (PaymentEventLog.processing_status == "failed") & (PaymentEventLog.retry_count < max_retries),
            ),
            PaymentEventLog.updated_at < cutoff,
        )
        .order_by(PaymentEventLog.updated_at.asc())
        .limit(limit)
        .all()
    )


def event_stats(session, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Dict[str, Any]:
    q = session.query(
        PaymentEventLog.processing_status,
        func.count(PaymentEventLog.event_id),
        func.coalesce(func.sum(PaymentEventLog.retry_count), 0),
    )
    if since is not None:
        q = q.filter(PaymentEventLog.created_at >= since)
    if until is not None:
        q = q.filter(PaymentEventLog.created_at <= until)
    rows = q.group_by(PaymentEventLog.processing_status).all()

    counts = {status: 0 for status in PROCESSING_STATUSES}
    retries = 0
    for status, count, retry_sum in rows:
        counts[status] = int(count)
        retries += int(retry_sum or 0)
    total = sum(counts.values())

    def _pct(n: int) -> float:
        return round(n * 100.0 / total, 2) if total else 0.0

    return {
        "total": total,
        **counts,
        "success_rate": _pct(counts["processed"]),
        "failure_rate": _pct(counts["failed"]),
        "average_retry_count": round(retries / total, 2) if total else 0.0,
    }


def recent_events_for_user(session, user_id: str, limit: int = 50) -> List[PaymentEventLog]:
    return (
        session.query(PaymentEventLog)
        .filter_by(user_id=user_id)
        .order_by(PaymentEventLog.created_at.desc())
        .limit(limit)
        .all()
    )
