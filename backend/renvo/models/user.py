"""
用户模型模块

认证由外部完成，这里只保存引擎需要的身份记录。
"""
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String
from sqlmodel import Field, SQLModel

from .base import utc_now


class User(SQLModel, table=True):
    """
    用户模型

    字段说明：
    - id: 主键（与认证层签发的 JWT sub 一致）
    - email: 邮箱（可选）
    - created_at: 创建时间
    """
    __tablename__ = "users"
    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    email: str | None = Field(
        default=None, sa_column=Column(String(255), unique=True, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
