"""
交易流水模型模块
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from renvo.enums import Provider, TransactionStatus

from .base import utc_now


class Transaction(SQLModel, table=True):
    """
    交易流水模型

    只追加：退款把已有的行改为 refunded，不会为同一个 provider_ref 新增退款行。

    字段说明：
    - id: 主键
    - subscription_id: 订阅 ID（外键）
    - provider: 支付通道
    - provider_ref: 通道侧的交易 / 付款 ID（与 provider 一起唯一）
    - amount / currency: 金额与币种
    - status: succeeded / failed / refunded
    - occurred_at: 发生时间
    - refunded_at: 退款时间
    """
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_transaction_provider_ref"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    subscription_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("subscriptions.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        )
    )
    provider: Provider = Field(sa_column=Column(String(16), nullable=False))
    provider_ref: str = Field(sa_column=Column(String(128), nullable=False))
    amount: Decimal | None = Field(
        default=None, sa_column=Column(Numeric(12, 2), nullable=True)
    )
    currency: str | None = Field(default=None, max_length=8)
    status: TransactionStatus = Field(sa_column=Column(String(16), nullable=False))
    occurred_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    refunded_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
