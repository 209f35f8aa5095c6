"""Async client-side cache for a user's subscription state."""
from .api import SubscriptionApi
from .bus import ChangeEvent, Debouncer, EventBus, PushChannelAdapter, RealtimeChannel
from .cache import CacheState, Snapshot, SubscriptionCache
from .errors import ApiError, CacheError, NetworkError, RequestTimeout, user_message
from .notifications import Notification, TransitionNotifier

__all__ = [
    "SubscriptionApi",
    "ChangeEvent",
    "Debouncer",
    "EventBus",
    "PushChannelAdapter",
    "RealtimeChannel",
    "CacheState",
    "Snapshot",
    "SubscriptionCache",
    "ApiError",
    "CacheError",
    "NetworkError",
    "RequestTimeout",
    "user_message",
    "Notification",
    "TransitionNotifier",
]
