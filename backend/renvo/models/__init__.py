"""
数据库模型定义模块

本模块使用 SQLModel 定义所有数据库表结构。

模型按功能拆分：
- user.py: 用户模型
- subscription.py: 订阅模型
- payment_event.py: Webhook 事件（幂等键）
- transaction.py: 交易流水
- recurring_item.py: 跟踪账单与逾期确认记录
- deletion.py: 账号软删除标记
- pending_receipt.py: 待重试收据
"""
from sqlmodel import SQLModel

from .base import as_utc, utc_now
from .deletion import DeletionRecord
from .payment_event import PaymentEvent
from .pending_receipt import PendingReceipt
from .recurring_item import PaymentConfirmation, RecurringItem
from .subscription import Subscription
from .transaction import Transaction
from .user import User

__all__ = [
    "SQLModel",
    "utc_now",
    "as_utc",
    "User",
    "Subscription",
    "PaymentEvent",
    "Transaction",
    "RecurringItem",
    "PaymentConfirmation",
    "DeletionRecord",
    "PendingReceipt",
]
