"""
待重试收据模型模块
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlmodel import Field, SQLModel

from renvo.enums import Provider

from .base import utc_now


class PendingReceipt(SQLModel, table=True):
    """
    校验失败（可重试）的收据

    购买时校验超时的收据保存在这里，由后台任务按指数间隔重试。

    字段说明：
    - id: 主键
    - user_id: 用户 ID（外键）
    - provider: 支付通道
    - receipt: 原始收据
    - attempts: 已尝试次数
    - next_attempt_at: 下次重试时间
    - last_error: 最近一次失败原因
    - resolved_at: 处理完成时间（成功或确定性拒绝）
    - created_at: 创建时间
    """
    __tablename__ = "pending_receipts"

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    user_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    provider: Provider = Field(sa_column=Column(String(16), nullable=False))
    receipt: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0)
    next_attempt_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    resolved_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
