"""
对账任务

定时把本地订阅与通道的权威状态比对，通道永远是准的：
- 每条带通道订阅 ID 的订阅都查询一次通道状态，不一致时用通道快照覆盖本地
- 同一客户在通道侧同时存在多个有效订阅时，只保留最新创建的一个，其余取消

对账从不把本地状态推回通道。每条订阅独立提交，单条失败记入报告。
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlmodel import Session, col, select

from renvo import crud
from renvo.core.retry import RetryPolicy, call_with_retry
from renvo.enums import EventKind, Provider, SubscriptionStatus
from renvo.models import Subscription, as_utc, utc_now
from renvo.providers import get_adapter
from renvo.providers.base import NormalizedEvent, ProviderSnapshot
from renvo.services.state_machine import LIVE_STATUSES, effective_status, has_ended
from renvo.services.subscriptions import apply_to_row

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """对账报告"""
    dry_run: bool
    checked: int = 0
    drifted: int = 0
    corrected: int = 0
    collapsed: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _same_instant(a: datetime | None, b: datetime | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return abs((as_utc(a) - as_utc(b)).total_seconds()) < 1


def find_drift(row: Subscription, snapshot: ProviderSnapshot) -> list[str]:
    """
    比较本地记录和通道快照

    Returns:
        不一致的字段名列表；通道没有返回周期时不比较周期，
        两边都已结束且本地结束得更早（退款、宽限期结束）时也不比较
    """
    drift = []
    status = SubscriptionStatus(row.status)
    if status != effective_status(snapshot.status, snapshot.cancel_at_period_end):
        drift.append("status")
    local_end = as_utc(row.current_period_end)
    ended_earlier = (
        has_ended(status, bool(row.cancel_at_period_end))
        and has_ended(snapshot.status, snapshot.cancel_at_period_end)
        and local_end is not None
        and snapshot.current_period_end is not None
        and local_end <= as_utc(snapshot.current_period_end)
    )
    if (
        snapshot.current_period_end is not None
        and not ended_earlier
        and not _same_instant(local_end, snapshot.current_period_end)
    ):
        drift.append("current_period_end")
    if bool(row.cancel_at_period_end) != snapshot.cancel_at_period_end and snapshot.status in LIVE_STATUSES:
        drift.append("cancel_at_period_end")
    return drift


def snapshot_event(provider: Provider, snapshot: ProviderSnapshot, now: datetime) -> NormalizedEvent:
    """把通道快照包装为状态机能处理的 snapshot 事件"""
    return NormalizedEvent(
        provider=provider,
        event_id=f"reconcile:{snapshot.subscription_ref}:{int(now.timestamp())}",
        event_type="reconcile",
        kind=EventKind.snapshot,
        occurred_at=now,
        customer_ref=snapshot.customer_ref,
        subscription_ref=snapshot.subscription_ref,
        period_start=snapshot.current_period_start,
        period_end=snapshot.current_period_end,
        product_id=snapshot.product_id,
        billing_cycle=snapshot.billing_cycle,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        paused_until=snapshot.paused_until,
        provider_status=snapshot.status,
    )


class ReconciliationJob:
    """对账任务"""

    def __init__(self, session: Session, policy: RetryPolicy | None = None):
        self.session = session
        self.policy = policy or RetryPolicy.from_settings()

    def run(self, now: datetime | None = None, dry_run: bool = False) -> ReconciliationReport:
        """
        执行一次对账

        Args:
            now: 当前时间
            dry_run: 只统计差异，不修改本地也不取消通道订阅

        Returns:
            ReconciliationReport
        """
        now = now or utc_now()
        report = ReconciliationReport(dry_run=dry_run)
        self._reconcile_rows(report, now, dry_run)
        self._collapse_duplicates(report, now, dry_run)
        logger.info(
            f"Reconciliation{' [dry-run]' if dry_run else ''}: checked={report.checked} "
            f"drifted={report.drifted} corrected={report.corrected} "
            f"collapsed={report.collapsed} failed={report.failed}"
        )
        return report

    def _reconcile_rows(self, report: ReconciliationReport, now: datetime, dry_run: bool) -> None:
        rows = self.session.exec(
            select(Subscription.id, Subscription.provider, Subscription.provider_subscription_ref)
            .where(
                Subscription.provider != Provider.none,
                col(Subscription.provider_subscription_ref).is_not(None),
            )
            .order_by(col(Subscription.id).asc())
        ).all()

        for sub_id, provider, ref in rows:
            report.checked += 1
            try:
                adapter = get_adapter(provider)
                snapshot = call_with_retry(self.policy, adapter.get_status, ref)

                row = crud.lock_subscription(session=self.session, subscription_id=sub_id)
                if row is None:
                    self.session.rollback()
                    continue
                drift = find_drift(row, snapshot)
                if not drift:
                    self.session.rollback()
                    continue

                report.drifted += 1
                logger.info(f"Subscription {sub_id} drifted from {provider}: {', '.join(drift)}")
                if dry_run:
                    self.session.rollback()
                    continue

                apply_to_row(self.session, row, snapshot_event(Provider(provider), snapshot, now), now)
                self.session.commit()
                report.corrected += 1
            except Exception as e:
                self.session.rollback()
                report.failed += 1
                report.errors.append({"subscription_id": sub_id, "error": str(e)})
                logger.error(f"Failed to reconcile subscription {sub_id}: {e}")

    def _collapse_duplicates(self, report: ReconciliationReport, now: datetime, dry_run: bool) -> None:
        """同一客户的多个有效订阅只保留最新创建的一个"""
        customers = self.session.exec(
            select(Subscription.provider, Subscription.provider_customer_ref)
            .where(
                Subscription.provider != Provider.none,
                col(Subscription.provider_customer_ref).is_not(None),
            )
            .distinct()
        ).all()

        for provider, customer_ref in customers:
            try:
                adapter = get_adapter(provider)
                snapshots = call_with_retry(
                    self.policy, adapter.list_customer_subscriptions, customer_ref
                )
                live = [
                    s for s in snapshots
                    if effective_status(s.status, s.cancel_at_period_end) in LIVE_STATUSES
                ]
                if len(live) < 2:
                    continue

                keep = max(live, key=lambda s: s.created_at or now)
                for extra in live:
                    if extra.subscription_ref == keep.subscription_ref:
                        continue
                    report.collapsed += 1
                    logger.warning(
                        f"Customer {customer_ref} has duplicate live subscription "
                        f"{extra.subscription_ref}, keeping {keep.subscription_ref}"
                    )
                    if dry_run:
                        continue
                    call_with_retry(
                        self.policy, adapter.cancel, extra.subscription_ref, at_period_end=False
                    )
                    row = crud.get_subscription_by_provider_ref(
                        session=self.session,
                        provider=Provider(provider),
                        subscription_ref=extra.subscription_ref,
                        for_update=True,
                    )
                    if row is not None:
                        cancelled = ProviderSnapshot(
                            subscription_ref=extra.subscription_ref,
                            status=SubscriptionStatus.cancelled,
                            customer_ref=customer_ref,
                            current_period_start=extra.current_period_start,
                            current_period_end=now,
                        )
                        apply_to_row(self.session, row, snapshot_event(Provider(provider), cancelled, now), now)
                    self.session.commit()
            except Exception as e:
                self.session.rollback()
                report.failed += 1
                report.errors.append({"customer_ref": customer_ref, "error": str(e)})
                logger.error(f"Failed to collapse subscriptions for customer {customer_ref}: {e}")
