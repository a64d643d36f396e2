"""CRUD 操作模块"""
from .recurring_item import get_for_user as get_recurring_item_for_user
from .recurring_item import list_confirmations, list_past_due
from .subscription import get_by_customer_ref as get_subscription_by_customer_ref
from .subscription import get_by_provider_ref as get_subscription_by_provider_ref
from .subscription import get_current as get_current_subscription
from .subscription import lock as lock_subscription

__all__ = [
    "get_recurring_item_for_user",
    "list_confirmations",
    "list_past_due",
    "get_subscription_by_customer_ref",
    "get_subscription_by_provider_ref",
    "get_current_subscription",
    "lock_subscription",
]
