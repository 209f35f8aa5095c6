"""
Subscription state reducer.

Pure functions: (event type, event object, current row, price table) -> Decision.
Nothing here touches the database or the network; the processor fetches what
the reducer needs and applies what it decides.

Ordering: provider events can arrive out of order and carry no sequence
numbers, so the latest delivered event always overwrites. A stale delivery
is corrected by the next event or by a manual reconcile.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from subsync.billing.errors import OwnerResolutionError
from subsync.billing.plans import TRIAL_PLAN
from subsync.utils.helpers import from_epoch

log = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_ACTION_REQUIRED = "invoice.payment_action_required"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

SUBSCRIPTION_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED)
INVOICE_EVENTS = {
    INVOICE_PAYMENT_FAILED: "declined",
    INVOICE_ACTION_REQUIRED: "requires_action",
    INVOICE_PAYMENT_SUCCEEDED: "valid",
}
HANDLED_EVENTS = (CHECKOUT_COMPLETED,) + SUBSCRIPTION_EVENTS + tuple(INVOICE_EVENTS)


@dataclass(frozen=True)
class Decision:
    """What to do with one event.

    ``action`` is "apply" (write ``patch`` / ``sync_patch`` for ``user_id``)
    or "skip" (nothing to write; ``reason`` says why).
    """

    action: str
    user_id: Optional[str] = None
    patch: Dict[str, Any] = field(default_factory=dict)
    sync_patch: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.action == "skip"


def skip(reason: str) -> Decision:
    return Decision("skip", reason=reason)


def id_of(value: Any) -> Optional[str]:
    # Expandable fields come back either as an id or as the full object
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(sub: Mapping[str, Any]) -> Dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def price_id_of(sub: Mapping[str, Any]) -> Optional[str]:
    price = _first_item(sub).get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sid = id_of(invoice.get("subscription"))
    if sid:
        return sid
    # Newer API versions nest it under the invoice parent
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return id_of(details.get("subscription"))


def resolve_checkout_owner(session_obj: Mapping[str, Any], subscription: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """client_reference_id, then session metadata, then subscription metadata."""
    candidates = (
        session_obj.get("client_reference_id"),
        (session_obj.get("metadata") or {}).get("user_id"),
        ((subscription or {}).get("metadata") or {}).get("user_id"),
    )
    for value in candidates:
        if value:
            return str(value)
    return None


def plan_for_price(price_id: Optional[str], table: Mapping[str, str]) -> Tuple[str, bool]:
    """Map a provider price id to a plan id. Returns (plan_id, known)."""
    if price_id and price_id in table:
        return table[price_id], True
    return TRIAL_PLAN, False


def _plan_or_warn(sub: Mapping[str, Any], table: Mapping[str, str]) -> str:
    price_id = price_id_of(sub)
    plan_id, known = plan_for_price(price_id, table)
    if not known:
        log.warning("reducer.unknown_price", extra={"price_id": price_id, "subscription_id": sub.get("id")})
    return plan_id


def period_fields(sub: Mapping[str, Any]) -> Dict[str, Any]:
    """Period and trial timestamps; periods fall back to the first item."""
    item = _first_item(sub)
    return {
        "current_period_start": from_epoch(sub.get("current_period_start") or item.get("current_period_start")),
        "current_period_end": from_epoch(sub.get("current_period_end") or item.get("current_period_end")),
        "trial_start": from_epoch(sub.get("trial_start")),
        "trial_end": from_epoch(sub.get("trial_end")),
    }


def cancellation_fields(sub: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
        "canceled_at": from_epoch(sub.get("canceled_at")),
    }


def checkout_patch(session_obj: Mapping[str, Any], subscription: Mapping[str, Any], table: Mapping[str, str]) -> Dict[str, Any]:
    patch = {
        "plan_id": _plan_or_warn(subscription, table),
        "status": subscription.get("status"),
        "stripe_customer_id": id_of(subscription.get("customer")) or id_of(session_obj.get("customer")),
        "stripe_subscription_id": subscription.get("id") or id_of(session_obj.get("subscription")),
        "metadata": dict(subscription.get("metadata") or {}),
    }
    patch.update(period_fields(subscription))
    patch.update(cancellation_fields(subscription))
    return patch


def subscription_patch(subscription: Mapping[str, Any], table: Mapping[str, str]) -> Dict[str, Any]:
    """Patch for updated/deleted events. Never touches the customer id."""
    status = subscription.get("status")
    patch = {
        "status": status,
        "plan_id": _plan_or_warn(subscription, table) if status == "active" else TRIAL_PLAN,
        "metadata": dict(subscription.get("metadata") or {}),
    }
    patch.update(period_fields(subscription))
    patch.update(cancellation_fields(subscription))
    return patch


def payment_method_status_for_invoice_event(event_type: str) -> Optional[str]:
    return INVOICE_EVENTS.get(event_type)


def payment_method_status_for_intent(intent: Optional[Mapping[str, Any]]) -> str:
    """Classify the latest payment intent: requires_action, declined or valid."""
    if not intent:
        return "valid"
    status = intent.get("status")
    if status in ("requires_action", "requires_confirmation"):
        return "requires_action"
    if status == "requires_payment_method" or (status == "canceled" and intent.get("last_payment_error")):
        return "declined"
    return "valid"


def reduce(event_type: str, obj: Mapping[str, Any], current=None, price_table: Optional[Mapping[str, str]] = None, fetched: Optional[Mapping[str, Any]] = None) -> Decision:
    """
    Decide the effect of one event.

    ``current`` is the stored row linked to the event (subscription and invoice
    events) and ``fetched`` the full subscription read from the provider
    (checkout completion). Raises ``OwnerResolutionError`` when a checkout
    cannot be attributed to a user.
    """
    table = price_table or {}

    if event_type == CHECKOUT_COMPLETED:
        if obj.get("mode") and obj.get("mode") != "subscription":
            return skip("one_time_checkout")
        owner = resolve_checkout_owner(obj, fetched)
        if not owner:
            raise OwnerResolutionError(f"no owner for checkout session {obj.get('id')!r}")
        if not fetched:
            return skip("no_subscription_on_session")
        return Decision("apply", user_id=owner, patch=checkout_patch(obj, fetched, table))

    if event_type in SUBSCRIPTION_EVENTS:
        if current is None:
            return skip("no_linked_subscription")
        return Decision("apply", user_id=current.user_id, patch=subscription_patch(obj, table))

    if event_type in INVOICE_EVENTS:
        if current is None:
            return skip("no_linked_subscription")
        return Decision(
            "apply",
            user_id=current.user_id,
            sync_patch={"payment_method_status": payment_method_status_for_invoice_event(event_type)},
        )

    log.info("reducer.unhandled_event", extra={"event_type": event_type})
    return skip("unhandled_event_type")
