"""
宽限期管理

同一个原语服务三种场景：
"现在打上标记 → 在标记后 N 天内可恢复 → 幂等的清扫任务在到期后完成最终处理"。

- payment_failure: past_due 订阅，从 past_due_since 起 PAYMENT_GRACE_PERIOD_DAYS 天后取消并降为 free
- account_deletion: 注销记录，从 deleted_at 起 ACCOUNT_DELETION_GRACE_DAYS 天后按外键顺序清除用户数据
- cancellation_lapse: 已取消但仍为高级会员的订阅，current_period_end 一过就降为 free

清扫规则：
1. 选出 marked_at <= now - N 天且未恢复 / 未完成的行
2. 每行独立处理、独立提交，一行失败只记入报告，不影响其他行
3. dry_run 只统计将被处理的行，不修改任何数据
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlmodel import Session, SQLModel, col, select

from renvo.core.config import settings
from renvo.enums import SubscriptionStatus, Tier
from renvo.models import (
    DeletionRecord,
    PaymentConfirmation,
    PendingReceipt,
    RecurringItem,
    Subscription,
    Transaction,
    User,
    as_utc,
    utc_now,
)
from renvo.services.notifier import Notifier, get_notifier
from renvo.services.subscriptions import request_provider_cancel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GracePolicy:
    """
    一种宽限期

    - name: 名称（报告和日志使用）
    - model: 被标记的表
    - marked_at: 标记时间字段名
    - days: 宽限天数（读取配置，便于测试中修改）
    - conditions: 额外的筛选条件（未恢复、状态等）
    - finalize: 到期后的最终处理
    - user_id_of: 通知使用的用户 ID
    """
    name: str
    model: type[SQLModel]
    marked_at: str
    days: Callable[[], int]
    conditions: Callable[[], list[Any]]
    finalize: Callable[[Session, Any, datetime], None]
    user_id_of: Callable[[Any], int]

    def column(self) -> Any:
        return getattr(self.model, self.marked_at)

    def deadline(self, marked_at: datetime) -> datetime:
        return as_utc(marked_at) + timedelta(days=self.days())


@dataclass
class SweepError:
    key: str
    error: str


@dataclass
class SweepReport:
    """清扫报告"""
    name: str
    dry_run: bool
    found: int = 0
    finalized: int = 0
    skipped: int = 0
    failed: int = 0
    ending_soon: int = 0
    errors: list[SweepError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ----------------------------------------------------------------------
# 最终处理
# ----------------------------------------------------------------------


def _finalize_payment_failure(session: Session, sub: Subscription, now: datetime) -> None:
    logger.info(f"Payment grace period over for subscription {sub.id}, cancelling")
    sub.status = SubscriptionStatus.cancelled
    sub.tier = Tier.free
    sub.cancel_at_period_end = False
    sub.past_due_since = None
    period_end = as_utc(sub.current_period_end)
    sub.current_period_end = min(period_end, now) if period_end else now
    sub.updated_at = now
    session.add(sub)
    get_notifier().notify(sub.user_id, "tier_changed", subscription_id=sub.id, old="premium", new="free")
    if sub.provider_subscription_ref:
        # 通道仍报告 past_due，不取消的话对账会恢复订阅并重新开始宽限期
        request_provider_cancel(sub, at_period_end=False)


def _finalize_cancellation_lapse(session: Session, sub: Subscription, now: datetime) -> None:
    sub.tier = Tier.free
    sub.updated_at = now
    session.add(sub)
    get_notifier().notify(sub.user_id, "tier_changed", subscription_id=sub.id, old="premium", new="free")


def purge_user_data(session: Session, user_id: int) -> None:
    """
    按外键顺序删除用户的所有数据，最后删除用户本身

    确认记录 → 跟踪账单 → 交易 → 待重试收据 → 订阅 → 用户
    """
    item_ids = select(RecurringItem.id).where(RecurringItem.user_id == user_id)
    sub_ids = select(Subscription.id).where(Subscription.user_id == user_id)

    session.execute(
        delete(PaymentConfirmation).where(col(PaymentConfirmation.recurring_item_id).in_(item_ids))
    )
    session.execute(delete(RecurringItem).where(RecurringItem.user_id == user_id))
    session.execute(delete(Transaction).where(col(Transaction.subscription_id).in_(sub_ids)))
    session.execute(delete(PendingReceipt).where(PendingReceipt.user_id == user_id))
    session.execute(delete(Subscription).where(Subscription.user_id == user_id))
    session.execute(delete(User).where(User.id == user_id))


def _finalize_account_deletion(session: Session, record: DeletionRecord, now: datetime) -> None:
    logger.info(f"Account deletion grace period over for user {record.user_id}, purging")
    purge_user_data(session, record.user_id)
    record.purged_at = now
    session.add(record)


# ----------------------------------------------------------------------
# 内置策略
# ----------------------------------------------------------------------

PAYMENT_FAILURE = GracePolicy(
    name="payment_failure",
    model=Subscription,
    marked_at="past_due_since",
    days=lambda: settings.PAYMENT_GRACE_PERIOD_DAYS,
    conditions=lambda: [
        Subscription.status == SubscriptionStatus.past_due,
        col(Subscription.past_due_since).is_not(None),
    ],
    finalize=_finalize_payment_failure,
    user_id_of=lambda row: row.user_id,
)

ACCOUNT_DELETION = GracePolicy(
    name="account_deletion",
    model=DeletionRecord,
    marked_at="deleted_at",
    days=lambda: settings.ACCOUNT_DELETION_GRACE_DAYS,
    conditions=lambda: [
        col(DeletionRecord.recovered_at).is_(None),
        col(DeletionRecord.purged_at).is_(None),
    ],
    finalize=_finalize_account_deletion,
    user_id_of=lambda row: row.user_id,
)

CANCELLATION_LAPSE = GracePolicy(
    name="cancellation_lapse",
    model=Subscription,
    marked_at="current_period_end",
    days=lambda: 0,
    conditions=lambda: [
        Subscription.status == SubscriptionStatus.cancelled,
        Subscription.tier == Tier.premium,
        col(Subscription.current_period_end).is_not(None),
    ],
    finalize=_finalize_cancellation_lapse,
    user_id_of=lambda row: row.user_id,
)

POLICIES: dict[str, GracePolicy] = {
    policy.name: policy for policy in (PAYMENT_FAILURE, ACCOUNT_DELETION, CANCELLATION_LAPSE)
}


class GracePeriodManager:
    """宽限期清扫"""

    def __init__(self, session: Session, notifier: Notifier | None = None):
        self.session = session
        self.notifier = notifier

    def _eligible_stmt(self, policy: GracePolicy, now: datetime):
        cutoff = now - timedelta(days=policy.days())
        return (
            select(policy.model)
            .where(policy.column() <= cutoff, *policy.conditions())
            .order_by(policy.column().asc())
        )

    def eligible(self, policy: GracePolicy, now: datetime | None = None) -> list[Any]:
        """已过宽限期、等待最终处理的行"""
        now = now or utc_now()
        return list(self.session.exec(self._eligible_stmt(policy, now)).all())

    def is_recoverable(self, policy: GracePolicy, marked_at: datetime, now: datetime | None = None) -> bool:
        """标记后是否仍在可恢复窗口内"""
        now = now or utc_now()
        return now < policy.deadline(marked_at)

    def sweep(self, policy: GracePolicy, now: datetime | None = None, dry_run: bool = False) -> SweepReport:
        """
        清扫一种宽限期

        Args:
            policy: 宽限期策略
            now: 当前时间
            dry_run: 只统计不修改

        Returns:
            SweepReport
        """
        now = now or utc_now()
        report = SweepReport(name=policy.name, dry_run=dry_run)
        ids = [row.id for row in self.eligible(policy, now)]
        report.found = len(ids)
        if dry_run:
            self.session.rollback()
            logger.info(f"[dry-run] {policy.name}: {report.found} rows would be finalized")
            return report

        for row_id in ids:
            key = f"{policy.model.__tablename__}:{row_id}"
            try:
                # 重新加锁读取并复核条件，重叠执行时已处理的行会被跳过
                row = self.session.exec(
                    self._eligible_stmt(policy, now)
                    .where(policy.model.id == row_id)
                    .with_for_update()
                ).first()
                if row is None:
                    report.skipped += 1
                    self.session.rollback()
                    continue
                policy.finalize(self.session, row, now)
                self.session.commit()
                report.finalized += 1
            except Exception as e:
                self.session.rollback()
                report.failed += 1
                report.errors.append(SweepError(key=key, error=str(e)))
                logger.error(f"{policy.name}: failed to finalize {key}: {e}")

        logger.info(
            f"{policy.name}: found={report.found} finalized={report.finalized} "
            f"skipped={report.skipped} failed={report.failed}"
        )
        return report

    def notify_ending_soon(self, policy: GracePolicy, now: datetime | None = None, within_days: int | None = None) -> int:
        """
        通知宽限期即将结束的用户

        每行只通知一次，发送后写入 grace_notified_at 并提交。

        Returns:
            通知的行数
        """
        now = now or utc_now()
        within = timedelta(days=settings.GRACE_ENDING_SOON_DAYS if within_days is None else within_days)
        grace = timedelta(days=policy.days())
        column = policy.column()
        rows = self.session.exec(
            select(policy.model).where(
                column > now - grace,
                column <= now - grace + within,
                col(policy.model.grace_notified_at).is_(None),
                *policy.conditions(),
            )
        ).all()
        notifier = self.notifier or get_notifier()
        for row in rows:
            deadline = policy.deadline(getattr(row, policy.marked_at))
            notifier.notify(
                policy.user_id_of(row),
                "grace_ending_soon",
                grace=policy.name,
                ends_at=deadline.isoformat(),
            )
            row.grace_notified_at = now
            self.session.add(row)
            self.session.commit()
        return len(rows)

    def run(self, policy: GracePolicy, now: datetime | None = None, dry_run: bool = False) -> SweepReport:
        """清扫并发送即将到期的通知（dry_run 时不发送）"""
        now = now or utc_now()
        report = self.sweep(policy, now, dry_run)
        if not dry_run:
            report.ending_soon = self.notify_ending_soon(policy, now)
        return report


def run_all_sweeps(session: Session, now: datetime | None = None, dry_run: bool = False) -> list[SweepReport]:
    """依次运行所有宽限期清扫"""
    manager = GracePeriodManager(session)
    return [manager.run(policy, now, dry_run) for policy in POLICIES.values()]
