"""
订阅模型模块

定义订阅相关的数据库模型。
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlmodel import Field, SQLModel

from renvo.enums import Provider, SubscriptionStatus, Tier

from .base import utc_now


class Subscription(SQLModel, table=True):
    """
    订阅记录模型

    只能由状态机和对账任务修改。一个用户可以有多条记录（取消后重新购买会新建），
    最新创建的一条是当前订阅。

    字段说明：
    - id: 主键
    - user_id: 用户 ID（外键）
    - tier: 会员等级（free / premium）
    - status: 订阅状态
    - provider: 支付通道标签，决定由哪个适配器处理
    - provider_customer_ref: 通道侧的客户 ID
    - provider_subscription_ref: 通道侧的订阅 ID（App Store 为 originalTransactionId）
    - product_id: 商品 ID
    - billing_cycle: 计费周期（monthly / yearly 等）
    - current_period_start / current_period_end: 当前计费周期
    - cancel_at_period_end: 是否在周期结束时取消
    - paused_until: 暂停到何时
    - past_due_since: 进入 past_due 的时间（扣款失败宽限期的起点）
    - last_event_at: 最近一次被应用事件的发生时间（没有周期字段时用于判断事件新旧）
    - grace_notified_at: 已发送"宽限期即将结束"通知的时间，状态变化时清空
    - created_at / updated_at: 创建 / 更新时间
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscription_provider_ref", "provider", "provider_subscription_ref"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    user_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )

    tier: Tier = Field(default=Tier.free, sa_column=Column(String(16), nullable=False))
    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.free, sa_column=Column(String(16), nullable=False)
    )
    provider: Provider = Field(
        default=Provider.none, sa_column=Column(String(16), nullable=False)
    )
    provider_customer_ref: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )
    provider_subscription_ref: str | None = Field(
        default=None, sa_column=Column(String(128), nullable=True)
    )
    product_id: str | None = Field(default=None, max_length=128)
    billing_cycle: str | None = Field(default=None, max_length=16)

    current_period_start: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    paused_until: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    past_due_since: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_event_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    grace_notified_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
