from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing-core failures."""

    def detail(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


class ConfigurationError(BillingError):
    """A required setting (secret key, webhook secret) is missing."""


class ProviderError(BillingError):
    """Wraps a failed call to the billing provider.

    ``retryable`` is True for timeouts, rate limits, connection problems and
    provider-side 5xx; the caller decides whether to retry.
    """

    def __init__(self, message: str, *, operation: Optional[str] = None, retryable: bool = True, code: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable
        self.code = code

    def detail(self) -> Dict[str, Any]:
        out = super().detail()
        out.update({"operation": self.operation, "retryable": self.retryable})
        if self.code:
            out["code"] = self.code
        return out


class OwnerResolutionError(BillingError):
    """The owning user of an event cannot be determined. Fatal for that event."""


class InvalidTransition(BillingError):
    """An event log entry was asked to move backwards or out of a terminal status."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"cannot move event from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested
