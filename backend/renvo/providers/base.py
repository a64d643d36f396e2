"""
支付通道能力接口

两个支付通道（卡支付网关、移动端应用内购买）实现同一组能力，
按订阅记录上的 provider 标签选择实现，而不是在各处按平台分支。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from renvo.enums import EventKind, Provider, SubscriptionStatus


@dataclass
class NormalizedEvent:
    """
    归一化后的支付事件

    两个通道的原始事件都转换成这个结构后再交给状态机，状态机不关心原始格式。
    """
    provider: Provider
    event_id: str
    event_type: str
    kind: EventKind
    occurred_at: datetime
    user_id: int | None = None
    customer_ref: str | None = None
    subscription_ref: str | None = None
    transaction_ref: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    product_id: str | None = None
    billing_cycle: str | None = None
    trial: bool = False
    cancel_at_period_end: bool | None = None
    paused_until: datetime | None = None
    provider_status: SubscriptionStatus | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSnapshot:
    """支付通道返回的订阅权威状态（对账使用）"""
    subscription_ref: str
    status: SubscriptionStatus
    customer_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    paused_until: datetime | None = None
    product_id: str | None = None
    billing_cycle: str | None = None
    created_at: datetime | None = None
    user_id: int | None = None


@dataclass
class ValidatedProduct:
    """收据中的一个商品"""
    product_id: str
    transaction_id: str
    purchase_at: datetime | None
    expires_at: datetime | None
    original_transaction_id: str | None = None
    trial: bool = False
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "transaction_id": self.transaction_id,
            "purchase_at": self.purchase_at.isoformat() if self.purchase_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class ValidatedReceipt:
    """收据校验结果"""
    products: list[ValidatedProduct]
    environment: str
    customer_ref: str | None = None
    user_id: int | None = None


class PaymentProviderAdapter(Protocol):
    """
    支付通道能力接口

    单次调用不做重试：瞬时故障抛出 TransientNetworkFailure，
    由调用方通过 call_with_retry 统一重试。
    """

    provider: Provider

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        """验签并返回事件数据，失败抛出 SignatureInvalid"""
        ...

    def parse_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        """把验签后的事件数据转换为 NormalizedEvent，缺少必要字段抛出 MalformedEvent"""
        ...

    def validate_receipt(self, raw_receipt: str) -> ValidatedReceipt:
        """校验客户端提交的收据"""
        ...

    def get_status(self, subscription_ref: str) -> ProviderSnapshot:
        """查询订阅的权威状态"""
        ...

    def list_customer_subscriptions(self, customer_ref: str) -> list[ProviderSnapshot]:
        """列出同一客户在通道侧的所有订阅"""
        ...

    def cancel(self, subscription_ref: str, at_period_end: bool = True) -> None:
        """请求通道取消订阅"""
        ...


def from_timestamp(value: Any, *, millis: bool = False) -> datetime | None:
    """
    把通道返回的时间戳（秒或毫秒）转换为 UTC 时间

    Args:
        value: 时间戳，可以是数字或数字字符串
        millis: 是否为毫秒

    Returns:
        UTC 时间，无法解析时为 None
    """
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if millis:
        number = number / 1000
    return datetime.fromtimestamp(number, tz=timezone.utc)


def parse_user_id(value: Any) -> int | None:
    """解析通道元数据中携带的用户 ID"""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
