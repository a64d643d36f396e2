"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
这些模型不是数据库表，只用于 API 数据交换。
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from renvo.enums import (
    ConfirmationOutcome,
    Provider,
    RecurringItemStatus,
    RepeatInterval,
    SubscriptionStatus,
    Tier,
)

# ============================================================
# 通用响应模型
# ============================================================


class Message(BaseModel):
    message: str


class TokenPayload(BaseModel):
    """
    JWT Token 载荷模型

    sub 存储用户 ID。
    """
    sub: str | None = None


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    - code: 0 表示成功，非 0 表示错误
    - message: 成功时为 "success"，错误时为错误描述
    - data: 业务数据

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 400101, "message": "Could not verify purchase", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# Webhook
# ============================================================


class WebhookAckData(BaseModel):
    received: bool = True
    duplicate: bool = False


# ============================================================
# 订阅
# ============================================================


class SubscriptionStatusData(BaseModel):
    """
    订阅状态响应模型

    grace_period_ends_at 仅在扣款失败（past_due）时有值。
    """
    tier: Tier
    status: SubscriptionStatus
    provider: Provider
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    grace_period_ends_at: datetime | None = None


class ReceiptSubmitRequest(BaseModel):
    """购买时提交的收据"""
    provider: Provider
    receipt: str = Field(min_length=1, max_length=200_000)


class ReceiptSubmitData(BaseModel):
    status: str  # verified / pending
    products: list[dict[str, Any]] = []


class CancelRequest(BaseModel):
    at_period_end: bool = True


class CancelData(BaseModel):
    requested: bool = True
    provider: Provider
    at_period_end: bool


# ============================================================
# 逾期账单
# ============================================================


class PastDueItemData(BaseModel):
    """逾期队列中的一项"""
    id: int
    name: str
    amount: Decimal | None = None
    currency: str | None = None
    due_date: date
    interval: RepeatInterval
    is_recurring: bool
    days_past_due: int


class PastDueQueueData(BaseModel):
    data: list[PastDueItemData]
    count: int


class PastDueNextData(BaseModel):
    """
    当前应展示的确认弹窗

    item 为空表示没有逾期账单；delay_ms 是两次弹窗之间客户端需要等待的时间。
    """
    item: PastDueItemData | None = None
    remaining: int = 0
    delay_ms: int


class ConfirmRequest(BaseModel):
    """
    确认逾期账单

    expected_due_date 为客户端展示弹窗时看到的到期日，用于防止重复提交。
    """
    outcome: ConfirmationOutcome
    expected_due_date: date | None = None


class RecurringItemData(BaseModel):
    id: int
    name: str
    due_date: date
    interval: RepeatInterval
    status: RecurringItemStatus


class ConfirmationData(BaseModel):
    id: int
    due_date: date
    outcome: ConfirmationOutcome
    confirmed_at: datetime


class ConfirmResultData(BaseModel):
    item: RecurringItemData
    confirmation: ConfirmationData


class ConfirmationHistoryData(BaseModel):
    data: list[ConfirmationData]
    count: int


# ============================================================
# 账号
# ============================================================


class AccountDeleteRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class AccountStatusData(BaseModel):
    pending_deletion: bool
    deleted_at: datetime | None = None
    purge_at: datetime | None = None
    days_remaining: int | None = None
