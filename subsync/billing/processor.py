import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from subsync.billing import reducer, store
from subsync.billing.errors import BillingError, OwnerResolutionError, ProviderError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    """Result of processing one event, in event-log terms."""

    status: str  # processed | skipped | failed
    user_id: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None


class EventProcessor:
    """Loads what the reducer needs, asks it for a decision and applies it.

    Writes are flushed, not committed; the caller commits them together with
    the event log status. Every failure is turned into an ``Outcome``.
    """

    def __init__(self, session, provider, price_table: Mapping[str, str], trial_days: int = 30):
        self.session = session
        self.provider = provider
        self.price_table = dict(price_table or {})
        self.trial_days = trial_days

    def _provider(self):
        if self.provider is None:
            raise ProviderError("billing provider is not configured", operation="configure", retryable=False)
        return self.provider

    def decide(self, event_type: str, obj: Mapping[str, Any]) -> reducer.Decision:
        if event_type == reducer.CHECKOUT_COMPLETED:
            if obj.get("mode") and obj.get("mode") != "subscription":
                return reducer.skip("one_time_checkout")
            fetched = None
            sub_id = reducer.id_of(obj.get("subscription"))
            if sub_id:
                # The webhook payload is not trusted to be complete
                fetched = self._provider().fetch_subscription(sub_id)
            return reducer.reduce(event_type, obj, price_table=self.price_table, fetched=fetched)

        if event_type in reducer.SUBSCRIPTION_EVENTS:
            current = store.find_by_stripe_subscription_id(self.session, obj.get("id"))
            return reducer.reduce(event_type, obj, current=current, price_table=self.price_table)

        if event_type in reducer.INVOICE_EVENTS:
            current = store.find_by_stripe_subscription_id(self.session, reducer.invoice_subscription_id(obj))
            return reducer.reduce(event_type, obj, current=current, price_table=self.price_table)

        return reducer.reduce(event_type, obj, price_table=self.price_table)

    def apply(self, decision: reducer.Decision) -> None:
        if decision.patch:
            sub = store.get_or_create_subscription(self.session, decision.user_id, self.trial_days)
            store.apply_patch(self.session, sub, decision.patch)
        if decision.sync_patch:
            store.upsert_sync_status(self.session, decision.user_id, **decision.sync_patch)

    def process(self, event_type: str, obj: Mapping[str, Any]) -> Outcome:
        ctx = {"event_type": event_type}
        try:
            decision = self.decide(event_type, obj or {})
            if decision.skipped:
                log.info("webhook.event_skipped", extra={**ctx, "reason": decision.reason})
                return Outcome("skipped", detail={"reason": decision.reason})
            self.apply(decision)
            log.info("webhook.event_processed", extra={**ctx, "user_id": decision.user_id})
            return Outcome("processed", user_id=decision.user_id)
        except OwnerResolutionError as exc:
            self.session.rollback()
            log.warning("webhook.owner_unresolved", extra={**ctx, "error": str(exc)})
            return Outcome("skipped", detail={"reason": "owner_unresolved", "error": exc.detail()})
        except BillingError as exc:
            self.session.rollback()
            log.warning("webhook.event_failed", extra={**ctx, "error": str(exc)})
            return Outcome("failed", detail=exc.detail())
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.exception("webhook.store_failed", extra=ctx)
            return Outcome("failed", detail={"type": type(exc).__name__, "message": str(exc)})
        except Exception as exc:
            self.session.rollback()
            log.exception("webhook.handler_error", extra=ctx)
            return Outcome("failed", detail={"type": type(exc).__name__, "message": str(exc)})
