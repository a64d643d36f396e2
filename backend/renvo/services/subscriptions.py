"""
订阅持久化服务

把归一化事件关联到订阅记录，调用状态机计算新状态，然后落库并执行副作用。
本模块只 flush 不 commit，事务边界由调用方（事件处理、收据校验、对账）决定，
这样事件状态和订阅状态在同一个事务中提交。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import Session

from renvo import crud
from renvo.core.config import settings
from renvo.core.retry import RetryPolicy, call_with_retry
from renvo.enums import EventKind, Provider, SubscriptionStatus, Tier
from renvo.exceptions import ProviderOperationUnsupported, SubscriptionNotFound
from renvo.models import Subscription, User, as_utc, utc_now
from renvo.providers import get_adapter
from renvo.providers.base import NormalizedEvent
from renvo.services.ledger import TransactionLedger
from renvo.services.notifier import get_notifier
from renvo.services.state_machine import (
    LIVE_STATUSES,
    ClearGrace,
    RecordTransaction,
    RefundTransaction,
    StartGrace,
    SubscriptionState,
    TierChanged,
    derive_tier,
    has_ended,
    transition,
)

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """事件应用结果"""
    subscription: Subscription | None
    stale: bool = False
    duplicate_refund: bool = False
    created: bool = False
    superseded: Subscription | None = None


def _resolve(session: Session, event: NormalizedEvent) -> Subscription | None:
    """
    找到事件对应的订阅记录

    依次按通道订阅 ID、交易 ID（退款）、通道客户 ID、用户 ID 查找。
    """
    if event.subscription_ref:
        row = crud.get_subscription_by_provider_ref(
            session=session,
            provider=event.provider,
            subscription_ref=event.subscription_ref,
            for_update=True,
        )
        if row:
            return row
    if event.transaction_ref:
        tx = TransactionLedger(session).get(event.provider, event.transaction_ref)
        if tx:
            return crud.lock_subscription(session=session, subscription_id=tx.subscription_id)
    if event.customer_ref:
        row = crud.get_subscription_by_customer_ref(
            session=session,
            provider=event.provider,
            customer_ref=event.customer_ref,
            for_update=True,
        )
        if row:
            return row
    if event.user_id is not None and event.kind != EventKind.purchased:
        return crud.get_current_subscription(session=session, user_id=event.user_id, for_update=True)
    return None


def request_provider_cancel(row: Subscription, at_period_end: bool) -> None:
    """尽力请求通道取消，失败只记日志（对账任务会收敛）"""
    try:
        get_adapter(row.provider).cancel(row.provider_subscription_ref, at_period_end=at_period_end)
    except ProviderOperationUnsupported as e:
        logger.info(f"Provider cancel not supported for subscription {row.id}: {e}")
    except Exception as e:
        logger.error(f"Failed to request provider cancel for subscription {row.id}: {e}")


def _supersede(session: Session, old: Subscription, now: datetime) -> None:
    """另一个通道的新购买取代旧订阅，保证同一时间只有一个通道生效"""
    logger.info(
        f"Subscription {old.id} on {old.provider} superseded by a purchase on another provider"
    )
    old.status = SubscriptionStatus.cancelled
    old.cancel_at_period_end = True
    old.tier = Tier.free
    old.past_due_since = None
    old.updated_at = now
    session.add(old)
    if old.provider_subscription_ref:
        request_provider_cancel(old, at_period_end=True)


def _row_for_purchase(
    session: Session, event: NormalizedEvent, found: Subscription | None, now: datetime
) -> tuple[Subscription, bool, Subscription | None]:
    """
    购买事件对应的订阅记录

    同一通道同一订阅 ID 且未取消的记录直接复用；其他情况新建记录，
    不会复活已取消的订阅。

    Returns:
        (订阅记录, 是否新建, 被取代的旧订阅)
    """
    if (
        found is not None
        and event.subscription_ref
        and found.provider == event.provider
        and found.provider_subscription_ref == event.subscription_ref
        and found.status != SubscriptionStatus.cancelled
    ):
        return found, False, None

    user_id = event.user_id if event.user_id is not None else (found.user_id if found else None)
    if user_id is None or session.get(User, user_id) is None:
        raise SubscriptionNotFound(
            f"Cannot associate {event.provider.value} purchase {event.event_id} with a user"
        )

    superseded = None
    current = crud.get_current_subscription(session=session, user_id=user_id, for_update=True)
    if (
        current is not None
        and current.status in LIVE_STATUSES
        and current.provider != event.provider
        and current.provider != Provider.none
    ):
        _supersede(session, current, now)
        superseded = current

    row = Subscription(user_id=user_id, created_at=now, updated_at=now)
    session.add(row)
    return row, True, superseded


def _write_state(row: Subscription, state: SubscriptionState, now: datetime) -> None:
    row.status = state.status
    row.tier = state.tier
    row.provider = state.provider
    row.provider_customer_ref = state.provider_customer_ref
    row.provider_subscription_ref = state.provider_subscription_ref
    row.product_id = state.product_id
    row.billing_cycle = state.billing_cycle
    row.current_period_start = state.current_period_start
    row.current_period_end = state.current_period_end
    row.cancel_at_period_end = state.cancel_at_period_end
    row.paused_until = state.paused_until
    row.last_event_at = state.last_event_at
    row.updated_at = now


def apply_to_row(
    session: Session, row: Subscription, event: NormalizedEvent, now: datetime | None = None
) -> ApplyResult:
    """
    在已确定的订阅记录上应用事件

    Args:
        session: 数据库会话（调用方负责提交）
        row: 订阅记录（已加锁）
        event: 归一化事件
        now: 当前时间

    Returns:
        ApplyResult
    """
    now = now or utc_now()
    before = SubscriptionState.from_row(row)
    result = transition(before, event, now)
    if result.stale:
        return ApplyResult(subscription=row, stale=True)

    _write_state(row, result.state, now)
    if result.state.status != before.status:
        row.grace_notified_at = None
    session.add(row)
    session.flush()

    ledger = TransactionLedger(session)
    for effect in result.effects:
        if isinstance(effect, RecordTransaction):
            ledger.record(
                subscription_id=row.id,
                provider=row.provider,
                provider_ref=effect.provider_ref,
                status=effect.status,
                occurred_at=effect.occurred_at,
                amount=effect.amount,
                currency=effect.currency,
            )
        elif isinstance(effect, RefundTransaction):
            ledger.apply_refund(
                subscription_id=row.id,
                provider=row.provider,
                provider_ref=effect.provider_ref,
                refunded_at=effect.refunded_at,
                amount=effect.amount,
                currency=effect.currency,
            )
        elif isinstance(effect, StartGrace):
            if row.past_due_since is None:
                row.past_due_since = effect.started_at
        elif isinstance(effect, ClearGrace):
            row.past_due_since = None
        elif isinstance(effect, TierChanged):
            get_notifier().notify(
                row.user_id,
                "tier_changed",
                subscription_id=row.id,
                old=effect.old.value,
                new=effect.new.value,
            )

    session.add(row)
    session.flush()
    if (
        event.kind == EventKind.refunded
        and row.provider_subscription_ref
        and not has_ended(before.status, before.cancel_at_period_end)
    ):
        # 通道侧退款不会自动取消订阅，不取消的话下一次对账会把订阅恢复
        request_provider_cancel(row, at_period_end=False)
    return ApplyResult(subscription=row)


def apply_event(session: Session, event: NormalizedEvent, now: datetime | None = None) -> ApplyResult:
    """
    应用一个归一化事件

    Raises:
        SubscriptionNotFound: 无法关联到任何订阅或用户
    """
    now = now or utc_now()
    if event.kind == EventKind.ignored:
        return ApplyResult(subscription=None)

    if event.kind == EventKind.refunded and event.transaction_ref:
        if TransactionLedger(session).is_refunded(event.provider, event.transaction_ref):
            logger.info(f"Duplicate refund for {event.transaction_ref}, no-op")
            return ApplyResult(subscription=None, duplicate_refund=True)

    row = _resolve(session, event)
    created = False
    superseded = None
    if event.kind == EventKind.purchased:
        row, created, superseded = _row_for_purchase(session, event, row, now)
    if row is None:
        raise SubscriptionNotFound(
            f"No subscription for {event.provider.value} event {event.event_id}"
            f" (subscription_ref={event.subscription_ref})"
        )

    result = apply_to_row(session, row, event, now)
    result.created = created
    result.superseded = superseded
    return result


def get_subscription_status(session: Session, user_id: int, now: datetime | None = None) -> dict[str, Any]:
    """
    读取用户的订阅状态（只读）

    等级按读取时间重新计算，已取消订阅在周期结束后即视为 free，不依赖清扫任务是否已运行。
    """
    now = now or utc_now()
    row = crud.get_current_subscription(session=session, user_id=user_id)
    if row is None:
        return {
            "tier": Tier.free,
            "status": SubscriptionStatus.free,
            "provider": Provider.none,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "grace_period_ends_at": None,
        }

    period_end = as_utc(row.current_period_end)
    tier = Tier(row.tier)
    if tier == Tier.premium:
        tier = derive_tier(SubscriptionStatus(row.status), period_end, now)
    past_due_since = as_utc(row.past_due_since)
    grace_ends_at = None
    if past_due_since is not None:
        grace_ends_at = past_due_since + timedelta(days=settings.PAYMENT_GRACE_PERIOD_DAYS)
    return {
        "tier": tier,
        "status": SubscriptionStatus(row.status),
        "provider": Provider(row.provider),
        "current_period_end": period_end,
        "cancel_at_period_end": row.cancel_at_period_end,
        "grace_period_ends_at": grace_ends_at,
    }


def request_cancel(session: Session, user_id: int, at_period_end: bool = True) -> Subscription:
    """
    请求通道取消当前订阅

    本地状态不在这里修改，等通道的通知到达后由状态机处理。

    Raises:
        SubscriptionNotFound: 没有有效订阅
        ProviderOperationUnsupported: 通道不支持服务端取消
        TransientNetworkFailure: 重试耗尽后通道仍不可用
    """
    row = crud.get_current_subscription(session=session, user_id=user_id)
    if row is None or row.status not in LIVE_STATUSES or not row.provider_subscription_ref:
        raise SubscriptionNotFound(f"User {user_id} has no live subscription")
    adapter = get_adapter(row.provider)
    call_with_retry(
        RetryPolicy.from_settings(),
        adapter.cancel,
        row.provider_subscription_ref,
        at_period_end=at_period_end,
    )
    return row
