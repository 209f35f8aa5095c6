from __future__ import annotations

from typing import Any


class CacheError(RuntimeError):
    """Base class for client-side subscription cache failures."""

    retryable = False


class NetworkError(CacheError):
    """Transport failure (connection refused, reset, DNS). Auto-retried once."""

    retryable = True


class RequestTimeout(NetworkError):
    """A call exceeded the timeout budget of its call class."""

    def __init__(self, kind: str, timeout_s: float) -> None:
        super().__init__(f"{kind} request timed out after {timeout_s:g}s")
        self.kind = kind
        self.timeout_s = timeout_s


class ApiError(CacheError):
    """The server answered with an error status. Never auto-retried."""

    def __init__(self, status_code: int, message: str, payload: Any = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.payload = payload


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CacheError) and exc.retryable


def user_message(exc: BaseException) -> str:
    """Short text for the user: retry for transient failures, support otherwise."""
    if isinstance(exc, RequestTimeout):
        return "The request took too long. Please try again."
    if isinstance(exc, NetworkError):
        return "We couldn't reach the server. Check your connection and try again."
    if isinstance(exc, ApiError):
        if exc.status_code == 401:
            return "Your session has expired. Please sign in again."
        if exc.status_code == 429:
            return "Too many requests. Please wait a moment and try again."
    return "Something went wrong with your subscription. Please contact support if this continues."
