"""
On-demand reconciliation against the provider.

Reads the subscription straight from the provider, overwrites the local row
when it drifted and records the outcome on the enhanced status row. Provider
failures are recorded and then re-raised: transient ones as ``retry_needed``
(picked up by ``flask subscriptions retry``), the rest as ``failed``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from subsync.billing import reducer, store
from subsync.billing.errors import ProviderError
from subsync.models import SubscriptionSyncStatus
from subsync.utils.helpers import as_utc, from_epoch, isoformat, utcnow

log = logging.getLogger(__name__)

NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
UPDATED = "updated"
SYNCHRONIZED = "synchronized"


@dataclass(frozen=True)
class ReconcileResult:
    result: str
    enhanced_status: SubscriptionSyncStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"result": self.result, "enhancedStatus": self.enhanced_status.to_dict()}


def _invoice_payment_intent(invoice: Mapping[str, Any]) -> Any:
    intent = invoice.get("payment_intent")
    if intent:
        return intent
    # Newer API versions list payments instead: payments.data[].payment.payment_intent
    payments = invoice.get("payments")
    rows = payments.get("data") if isinstance(payments, dict) else None
    for row in rows or []:
        payment = row.get("payment") if isinstance(row, dict) else None
        if isinstance(payment, dict) and payment.get("payment_intent"):
            intent = payment["payment_intent"]
    return intent


def payment_method_status(provider, subscription: Mapping[str, Any]) -> str:
    """Classify from the latest invoice's payment intent."""
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return "valid"
    intent = _invoice_payment_intent(invoice)
    if isinstance(intent, str) and intent:
        intent = provider.fetch_payment_intent(intent)
    return reducer.payment_method_status_for_intent(intent if isinstance(intent, dict) else None)


def has_drifted(sub, fetched: Mapping[str, Any]) -> bool:
    return (
        sub.status != fetched.get("status")
        or bool(sub.cancel_at_period_end) != bool(fetched.get("cancel_at_period_end"))
        or as_utc(sub.canceled_at) != from_epoch(fetched.get("canceled_at"))
    )


def reconcile_patch(fetched: Mapping[str, Any]) -> Dict[str, Any]:
    patch = {
        "status": fetched.get("status"),
        "metadata": dict(fetched.get("metadata") or {}),
    }
    patch.update(reducer.period_fields(fetched))
    patch.update(reducer.cancellation_fields(fetched))
    return patch


def reconcile(session, provider, user_id: str) -> ReconcileResult:
    """
    Bring the user's subscription row in line with the provider.

    Safe to call repeatedly: with no provider-side change the second call
    reports ``synchronized`` and leaves the subscription row untouched.
    Commits on success and on the recorded failure path.
    """
    sub = store.get_subscription(session, user_id)
    now = utcnow()

    if sub is None or not sub.stripe_subscription_id:
        enhanced = store.upsert_sync_status(
            session,
            user_id,
            now=now,
            stripe_subscription_id=None,
            subscription_status="trialing",
            subscription_metadata={"sync_source": "manual_sync_no_subscription", "sync_timestamp": isoformat(now)},
            last_sync_at=now,
            sync_status="synced",
            payment_method_status="valid",
            retry_count=0,
        )
        session.commit()
        log.info("sync.no_active_subscription", extra={"user_id": user_id})
        return ReconcileResult(NO_ACTIVE_SUBSCRIPTION, enhanced)

    sub_id = sub.stripe_subscription_id
    try:
        fetched = provider.fetch_subscription(sub_id, expand_invoice=True)
        pm_status = payment_method_status(provider, fetched)
    except ProviderError as exc:
        session.rollback()
        _record_failure(session, user_id, sub_id, exc)
        raise

    result = SYNCHRONIZED
    if has_drifted(sub, fetched):
        store.apply_patch(session, sub, reconcile_patch(fetched), now=now)
        result = UPDATED

    enhanced = store.upsert_sync_status(
        session,
        user_id,
        now=now,
        stripe_subscription_id=fetched.get("id") or sub_id,
        subscription_status=fetched.get("status"),
        subscription_metadata={
            **(fetched.get("metadata") or {}),
            "stripe_price_id": reducer.price_id_of(fetched),
            "cancel_at_period_end": bool(fetched.get("cancel_at_period_end")),
            "canceled_at": fetched.get("canceled_at"),
            "sync_source": "manual_sync",
            "sync_timestamp": isoformat(now),
        },
        last_sync_at=now,
        sync_status="synced",
        payment_method_status=pm_status,
        retry_count=0,
    )
    session.commit()
    log.info("sync.completed", extra={"user_id": user_id, "result": result, "subscription_id": sub_id})
    return ReconcileResult(result, enhanced)


def _record_failure(session, user_id: str, sub_id: Optional[str], exc: ProviderError) -> None:
    now = utcnow()
    current = store.get_sync_status(session, user_id)
    sub = store.get_subscription(session, user_id)
    store.upsert_sync_status(
        session,
        user_id,
        now=now,
        stripe_subscription_id=sub_id,
        subscription_status=sub.status if sub is not None else "trialing",
        subscription_metadata={
            "sync_error": str(exc),
            "sync_source": "manual_sync_failed",
            "sync_timestamp": isoformat(now),
        },
        last_sync_at=now,
        sync_status="retry_needed" if exc.retryable else "failed",
        payment_method_status="unknown",
        retry_count=(current.retry_count or 0) + 1 if current is not None else 1,
    )
    session.commit()
    log.warning(
        "sync.provider_failed",
        extra={"user_id": user_id, "subscription_id": sub_id, "error": str(exc), "retryable": exc.retryable},
    )
