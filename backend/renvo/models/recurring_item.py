"""
跟踪账单模型模块

用户在应用里跟踪的周期性 / 一次性账单，以及每次逾期确认的审计记录。
"""
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlmodel import Field, SQLModel

from renvo.enums import ConfirmationOutcome, RecurringItemStatus, RepeatInterval

from .base import utc_now


class RecurringItem(SQLModel, table=True):
    """
    跟踪账单模型

    due_date 只会向前移动，并且只能通过显式确认移动。

    字段说明：
    - id: 主键
    - user_id: 用户 ID（外键）
    - name: 账单名称
    - amount / currency: 金额与币种
    - due_date: 下一次到期日
    - interval: 账单周期（none 表示一次性）
    - status: active / cancelled
    - created_at / updated_at: 创建 / 更新时间
    """
    __tablename__ = "recurring_items"

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    user_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    name: str = Field(max_length=128)
    amount: Decimal | None = Field(
        default=None, sa_column=Column(Numeric(12, 2), nullable=True)
    )
    currency: str | None = Field(default=None, max_length=8)
    due_date: date = Field(sa_column=Column(Date, index=True, nullable=False))
    interval: RepeatInterval = Field(
        default=RepeatInterval.monthly, sa_column=Column(String(16), nullable=False)
    )
    status: RecurringItemStatus = Field(
        default=RecurringItemStatus.active, sa_column=Column(String(16), nullable=False)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class PaymentConfirmation(SQLModel, table=True):
    """
    逾期确认记录模型

    每次确认一行，只追加，作为审计记录。

    字段说明：
    - id: 主键
    - recurring_item_id: 账单 ID（外键）
    - due_date: 被确认的那一期的到期日
    - outcome: paid / skipped / dismissed
    - confirmed_at: 确认时间
    """
    __tablename__ = "payment_confirmations"

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    recurring_item_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("recurring_items.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        )
    )
    due_date: date = Field(sa_column=Column(Date, nullable=False))
    outcome: ConfirmationOutcome = Field(sa_column=Column(String(16), nullable=False))
    confirmed_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
