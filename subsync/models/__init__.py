from .user import User
from .inventory import InventoryItem
from .subscription import UserSubscription, SUBSCRIPTION_STATUSES
from .sync_status import SubscriptionSyncStatus, SYNC_STATUSES, PAYMENT_METHOD_STATUSES
from .payment_event import PaymentEventLog, PROCESSING_STATUSES

__all__ = [
    "User",
    "InventoryItem",
    "UserSubscription",
    "SubscriptionSyncStatus",
    "PaymentEventLog",
    "SUBSCRIPTION_STATUSES",
    "SYNC_STATUSES",
    "PAYMENT_METHOD_STATUSES",
    "PROCESSING_STATUSES",
]
