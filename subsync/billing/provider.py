import logging
from typing import Any, Callable, Dict, Optional

import stripe
from flask import current_app
from stripe import StripeClient

from subsync.billing.errors import ConfigurationError, ProviderError

log = logging.getLogger(__name__)

# Transient failures; everything else (bad request, auth, card) will not heal on retry
_RETRYABLE = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

DEFAULT_API_VERSION = "2023-10-16"


def _as_dict(obj: Any) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict_recursive") and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeProvider:
    """Thin, explicitly constructed handle over the Stripe API.

    Every call returns plain dicts and raises ``ProviderError`` on failure.
    """

    def __init__(self, client: StripeClient):
        self._client = client

    def _call(self, operation: str, fn: Callable[[], Any]) -> Dict[str, Any]:
        try:
            return _as_dict(fn())
        except stripe.StripeError as exc:
            retryable = isinstance(exc, _RETRYABLE)
            log.warning(
                "provider.call_failed",
                extra={"operation": operation, "error": type(exc).__name__, "retryable": retryable},
            )
            raise ProviderError(
                getattr(exc, "user_message", None) or str(exc) or type(exc).__name__,
                operation=operation,
                retryable=retryable,
                code=getattr(exc, "code", None),
            ) from exc

    def fetch_subscription(self, subscription_id: str, *, expand_invoice: bool = False) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if expand_invoice:
            params["expand"] = ["latest_invoice"]
        return self._call(
            "subscriptions.retrieve",
            lambda: self._client.subscriptions.retrieve(subscription_id, params=params or None),
        )

    def fetch_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._call("payment_intents.retrieve", lambda: self._client.payment_intents.retrieve(payment_intent_id))

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return self._call("customers.retrieve", lambda: self._client.customers.retrieve(customer_id))

    def create_customer(self, *, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": {"user_id": str(user_id)}}
        if email:
            params["email"] = email
        return self._call("customers.create", lambda: self._client.customers.create(params=params))

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        params = {"customer": customer_id, "return_url": return_url}
        return self._call("billing_portal.sessions.create", lambda: self._client.billing_portal.sessions.create(params=params))

    def create_checkout_session(self, *, customer_id: str, price_id: str, user_id: str, success_url: str, cancel_url: str) -> Dict[str, Any]:
        # Owner id on the session and on the subscription it creates
        owner = {"user_id": str(user_id)}
        params = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": str(user_id),
            "metadata": owner,
            "subscription_data": {"metadata": dict(owner)},
            "allow_promotion_codes": True,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        return self._call("checkout.sessions.create", lambda: self._client.checkout.sessions.create(params=params))


def make_provider(config=None) -> StripeProvider:
    """Build a provider for the current request/command from app config."""
    cfg = config if config is not None else current_app.config
    key = cfg.get("STRIPE_SECRET_KEY")
    if not key:
        raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
    return StripeProvider(StripeClient(key, stripe_version=cfg.get("STRIPE_API_VERSION") or DEFAULT_API_VERSION))
