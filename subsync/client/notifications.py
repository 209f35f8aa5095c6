from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from subsync.client.status import STATUS_LABELS

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: str
    title: str
    message: str
    level: str = "info"


Sink = Callable[[Notification], None]

_TRANSITIONS = {
    "past_due": ("payment_overdue", "Payment overdue", "Your last payment failed. Update your payment method to keep access.", "warning"),
    "unpaid": ("payment_required", "Payment required", "Your subscription is unpaid. Update your payment method.", "error"),
    "canceled": ("canceled", "Subscription canceled", "Your subscription has been canceled.", "info"),
    "incomplete_expired": ("setup_expired", "Setup expired", "Your subscription setup expired. Please start checkout again.", "warning"),
    "trialing": ("trial_started", "Trial started", "Your free trial is active.", "info"),
}


class TransitionNotifier:
    """
    One notification per observed status change, and exactly one activation
    notification per provider subscription id however many paths report it.
    """

    def __init__(self, sink: Sink) -> None:
        self._sink = sink
        self._activated: set[str] = set()

    def _emit(self, notification: Notification) -> Notification:
        self._sink(notification)
        return notification

    def notify_activation(self, stripe_subscription_id: str | None, plan_id: str | None = None) -> Notification | None:
        key = stripe_subscription_id or ""
        if not key or key in self._activated:
            return None
        self._activated.add(key)
        plan = f" ({plan_id})" if plan_id else ""
        return self._emit(Notification("activated", "Subscription active", f"Your subscription{plan} is now active.", "success"))

    def observe(self, previous: Mapping[str, Any] | None, current: Mapping[str, Any] | None) -> Notification | None:
        if not current:
            return None
        status = current.get("status")
        if previous is None:
            # Initial load is a baseline, not a transition
            if status == "active" and current.get("stripe_subscription_id"):
                self._activated.add(current["stripe_subscription_id"])
            return None
        if previous.get("status") == status:
            return None

        log.info("subscription.transition", extra={"from": previous.get("status"), "to": status})
        if status == "active":
            return self.notify_activation(current.get("stripe_subscription_id"), current.get("plan_id"))
        known = _TRANSITIONS.get(status)
        if known is None:
            kind, title = "status_changed", "Subscription updated"
            return self._emit(Notification(kind, title, f"Status is now {STATUS_LABELS.get(status, status)}."))
        return self._emit(Notification(*known))
