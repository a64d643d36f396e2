"""
枚举类型定义模块

定义订阅引擎中使用的所有枚举类型。
所有枚举都继承自 str 和 Enum，这样既可以用作字符串，又具有枚举的特性。
"""
from enum import Enum


class Provider(str, Enum):
    """
    支付通道枚举

    每条订阅记录都带有自己的通道标签，所有操作按该标签分派：
    - card_gateway: 卡支付网关（Stripe）
    - mobile_iap: 移动端应用内购买（App Store）
    - none: 没有付费通道（免费用户）
    """
    card_gateway = "card_gateway"
    mobile_iap = "mobile_iap"
    none = "none"


class Tier(str, Enum):
    """
    会员等级枚举

    - free: 免费
    - premium: 高级会员
    """
    free = "free"
    premium = "premium"


class SubscriptionStatus(str, Enum):
    """
    订阅状态枚举

    free（初始）→ trialing/active → past_due/paused/cancelled。
    cancelled 不是终态，重新购买时会创建新的订阅记录。
    """
    free = "free"
    trialing = "trialing"
    active = "active"
    past_due = "past_due"
    paused = "paused"
    cancelled = "cancelled"
    incomplete = "incomplete"


class EventProcessingStatus(str, Enum):
    """
    Webhook 事件处理状态枚举

    - processing: 处理中（已占用，其他投递直接忽略）
    - processed: 已处理（终态，永不重复处理）
    - rejected: 处理失败（下一次投递会重试）
    """
    processing = "processing"
    processed = "processed"
    rejected = "rejected"


class RecordOutcome(str, Enum):
    """EventStore.record 的返回值"""
    new = "new"
    duplicate_processing = "duplicate_processing"
    duplicate_processed = "duplicate_processed"


class TransactionStatus(str, Enum):
    """
    交易状态枚举

    - succeeded: 扣款成功
    - failed: 扣款失败
    - refunded: 已退款（由 succeeded 转换而来，不新增行）
    """
    succeeded = "succeeded"
    failed = "failed"
    refunded = "refunded"


class RepeatInterval(str, Enum):
    """
    账单周期枚举

    none 表示一次性账单。
    """
    none = "none"
    weekly = "weekly"
    biweekly = "biweekly"
    semimonthly = "semimonthly"
    monthly = "monthly"
    bimonthly = "bimonthly"
    quarterly = "quarterly"
    semiannually = "semiannually"
    yearly = "yearly"


class RecurringItemStatus(str, Enum):
    """
    跟踪账单状态枚举

    - active: 跟踪中
    - cancelled: 已取消（不再出现在逾期队列中）
    """
    active = "active"
    cancelled = "cancelled"


class ConfirmationOutcome(str, Enum):
    """
    逾期确认结果枚举

    - paid: 已支付
    - skipped: 跳过本期
    - dismissed: 忽略（仅限一次性账单）
    """
    paid = "paid"
    skipped = "skipped"
    dismissed = "dismissed"


class EventKind(str, Enum):
    """
    归一化后的事件类型

    两个支付通道的原始事件类型都映射到这里，状态机只认识这些类型。
    """
    purchased = "purchased"
    renewal_succeeded = "renewal_succeeded"
    renewal_failed = "renewal_failed"
    cancel_scheduled = "cancel_scheduled"
    renewal_resumed = "renewal_resumed"
    expired = "expired"
    refunded = "refunded"
    paused = "paused"
    resumed = "resumed"
    updated = "updated"
    snapshot = "snapshot"
    ignored = "ignored"


class ReceiptOutcome(str, Enum):
    """
    收据校验结果

    - verified: 校验通过
    - rejected: 确定性拒绝
    - failed_retryable: 超时等可重试失败，稍后再试
    """
    verified = "verified"
    rejected = "rejected"
    failed_retryable = "failed_retryable"
