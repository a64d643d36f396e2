"""
账号注销模型模块
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class DeletionRecord(SQLModel, table=True):
    """
    账号软删除标记

    不对 users 建外键：最终清除用户后这条记录保留下来作为审计。

    字段说明：
    - id: 主键
    - user_id: 用户 ID
    - deleted_at: 申请注销时间（宽限期起点）
    - purge_at: 预计清除时间
    - recovered_at: 恢复时间（设置后注销作废）
    - purged_at: 实际清除时间
    - grace_notified_at: 已发送"即将清除"通知的时间
    - reason: 注销原因（可选）
    """
    __tablename__ = "deletion_records"

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    user_id: int = Field(sa_column=Column(Integer, index=True, nullable=False))
    deleted_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    purge_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    recovered_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    purged_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    grace_notified_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    reason: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
