"""
逾期账单队列

检测规则对周期性和一次性账单一致：status == active 且 due_date < today。
所有逾期账单合并成一个队列，按到期日升序（最早的在前）。

确认结果：
- paid / skipped: 记录确认；周期性账单的到期日从原到期日推进一个周期（不是从确认时间推进），
  一次性账单离开队列（status → cancelled）
- dismissed: 仅限一次性账单，status → cancelled
"""
from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlmodel import Session

from renvo import crud
from renvo.core.config import settings
from renvo.enums import ConfirmationOutcome, RecurringItemStatus, RepeatInterval
from renvo.exceptions import InvalidConfirmation, ItemNotFound, StateConflict
from renvo.models import PaymentConfirmation, RecurringItem, utc_now

logger = logging.getLogger(__name__)

# 固定天数的周期
DAY_INTERVALS = {
    RepeatInterval.weekly: 7,
    RepeatInterval.biweekly: 14,
    RepeatInterval.semimonthly: 15,
}
# 按自然月计算的周期
MONTH_INTERVALS = {
    RepeatInterval.monthly: 1,
    RepeatInterval.bimonthly: 2,
    RepeatInterval.quarterly: 3,
    RepeatInterval.semiannually: 6,
    RepeatInterval.yearly: 12,
}


def add_months(value: date, months: int) -> date:
    """
    按自然月推进日期，目标月份没有这一天时取月末

    例如 1 月 31 日推进一个月为 2 月 28 日（闰年 29 日）。
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_due_date(due_date: date, interval: RepeatInterval | str) -> date:
    """
    计算下一个到期日

    Args:
        due_date: 原到期日
        interval: 账单周期

    Returns:
        下一个到期日

    Raises:
        ValueError: 一次性账单没有下一个到期日
    """
    interval = RepeatInterval(interval)
    if interval in DAY_INTERVALS:
        return due_date + timedelta(days=DAY_INTERVALS[interval])
    if interval in MONTH_INTERVALS:
        return add_months(due_date, MONTH_INTERVALS[interval])
    raise ValueError("One-time items have no next due date")


@dataclass
class PastDueEntry:
    """逾期队列中的一项"""
    item: RecurringItem
    days_past_due: int

    @property
    def is_recurring(self) -> bool:
        return self.item.interval != RepeatInterval.none


def list_queue(session: Session, user_id: int, today: date | None = None) -> list[PastDueEntry]:
    """按到期日升序列出用户的逾期账单"""
    today = today or utc_now().date()
    items = crud.list_past_due(session=session, user_id=user_id, today=today)
    return [PastDueEntry(item=item, days_past_due=(today - item.due_date).days) for item in items]


def next_entry(session: Session, user_id: int, today: date | None = None) -> PastDueEntry | None:
    """当前唯一应该展示的确认弹窗"""
    queue = list_queue(session, user_id, today)
    return queue[0] if queue else None


def confirm(
    session: Session,
    user_id: int,
    item_id: int,
    outcome: ConfirmationOutcome,
    expected_due_date: date | None = None,
    now: datetime | None = None,
) -> tuple[RecurringItem, PaymentConfirmation]:
    """
    确认一条逾期账单

    Args:
        session: 数据库会话
        user_id: 当前用户
        item_id: 账单 ID
        outcome: paid / skipped / dismissed
        expected_due_date: 客户端看到的到期日；与当前不一致说明已被确认过，返回冲突
        now: 当前时间

    Returns:
        (更新后的账单, 确认记录)

    Raises:
        ItemNotFound: 账单不存在或不属于该用户
        InvalidConfirmation: 周期性账单不能忽略
        StateConflict: 账单已不在逾期状态或到期日不一致
    """
    now = now or utc_now()
    today = now.date()
    outcome = ConfirmationOutcome(outcome)

    item = crud.get_recurring_item_for_user(
        session=session, user_id=user_id, item_id=item_id, for_update=True
    )
    if item is None:
        raise ItemNotFound(f"Recurring item {item_id} not found")

    recurring = item.interval != RepeatInterval.none
    if outcome == ConfirmationOutcome.dismissed and recurring:
        raise InvalidConfirmation("Only one-time items can be dismissed")
    if item.status != RecurringItemStatus.active:
        raise StateConflict(f"Recurring item {item_id} is not active")
    if expected_due_date is not None and expected_due_date != item.due_date:
        raise StateConflict(
            f"Recurring item {item_id} due date is {item.due_date}, not {expected_due_date}"
        )
    if not item.due_date < today:
        raise StateConflict(f"Recurring item {item_id} is not past due")

    confirmation = PaymentConfirmation(
        recurring_item_id=item.id,
        due_date=item.due_date,
        outcome=outcome,
        confirmed_at=now,
    )
    session.add(confirmation)

    if recurring:
        item.due_date = advance_due_date(item.due_date, item.interval)
    else:
        item.status = RecurringItemStatus.cancelled
    item.updated_at = now
    session.add(item)
    session.commit()
    session.refresh(item)
    session.refresh(confirmation)

    logger.info(
        f"Recurring item {item.id} confirmed {outcome.value}, due_date={confirmation.due_date}"
        f" next={item.due_date if recurring else None}"
    )
    return item, confirmation


def history(session: Session, user_id: int, item_id: int) -> list[PaymentConfirmation]:
    """
    账单的确认记录

    Raises:
        ItemNotFound: 账单不存在或不属于该用户
    """
    item = crud.get_recurring_item_for_user(session=session, user_id=user_id, item_id=item_id)
    if item is None:
        raise ItemNotFound(f"Recurring item {item_id} not found")
    return crud.list_confirmations(session=session, item_id=item_id)


class ConfirmationSequencer:
    """
    逐条展示确认弹窗

    同一时间只有一个弹窗；处理完一条后固定等待 delay_ms 再展示下一条，
    避免弹窗连续弹出，也保证两次确认不会同时修改同一行。

    这是给在进程内驱动确认流程的调用方（后台工具、集成测试）使用的客户端辅助类。
    HTTP 接口不使用它：GET /past-due/next 返回 delay_ms，由客户端自行等待。
    """

    def __init__(
        self,
        delay_ms: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.delay_ms = settings.PAST_DUE_PROMPT_DELAY_MS if delay_ms is None else delay_ms
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def run(
        self,
        entries: list[PastDueEntry],
        prompt: Callable[[PastDueEntry], Awaitable[ConfirmationOutcome | None]],
        resolve: Callable[[PastDueEntry, ConfirmationOutcome], Awaitable[None] | None],
    ) -> list[tuple[int, ConfirmationOutcome]]:
        """
        依次展示并处理确认

        Args:
            entries: 逾期队列（已按到期日排序）
            prompt: 展示弹窗并返回用户选择；返回 None 表示用户关闭了弹窗，停止处理
            resolve: 提交用户选择

        Returns:
            已处理的 (账单 ID, 结果) 列表
        """
        handled: list[tuple[int, ConfirmationOutcome]] = []
        async with self._lock:
            for index, entry in enumerate(entries):
                outcome = await prompt(entry)
                if outcome is None:
                    break
                maybe_awaitable = resolve(entry, outcome)
                if maybe_awaitable is not None:
                    await maybe_awaitable
                handled.append((entry.item.id, outcome))
                if index < len(entries) - 1:
                    await self._sleep(self.delay_ms / 1000)
        return handled
