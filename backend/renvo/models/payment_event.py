"""
支付事件模型模块

存储两个支付通道推送的 webhook 事件，用于去重和审计。
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from renvo.enums import EventProcessingStatus, Provider

from .base import utc_now


class PaymentEvent(SQLModel, table=True):
    """
    支付事件记录模型

    (provider, event_id) 是幂等键：数据库唯一约束保证同一事件只会被插入一次，
    processed 之后永不重复处理。

    字段说明：
    - id: 主键
    - provider: 支付通道
    - event_id: 通道侧事件 ID
    - event_type: 原始事件类型（如 "invoice.payment_failed"、"DID_RENEW"）
    - payload: 验签后的事件数据
    - processing_status: processing / processed / rejected
    - received_at: 最近一次占用（接收）时间，用于判断处理中事件是否超时
    - processed_at: 处理完成时间
    - error: 最近一次处理失败的原因
    """
    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_event_provider_event"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    provider: Provider = Field(sa_column=Column(String(16), nullable=False))
    event_id: str = Field(sa_column=Column(String(128), index=True, nullable=False))
    event_type: str = Field(default="", max_length=64)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    processing_status: EventProcessingStatus = Field(
        default=EventProcessingStatus.processing,
        sa_column=Column(String(16), nullable=False),
    )
    received_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
