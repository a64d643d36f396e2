"""
订阅状态机

纯函数：(当前订阅状态, 归一化事件, 当前时间) → (新状态, 副作用列表)。
不访问数据库，副作用由 services.subscriptions 负责落库。

规则概要：
- active|past_due + 续费成功 → active，周期结束时间延长到通道返回的值，记录成功交易
- active|trialing + 续费失败 → past_due，等级不变，开始扣款失败宽限期
- 任意 + 取消 / 到期 → cancelled，等级在 current_period_end 之后才降为 free
- 任意 + 退款 → 立即 cancelled 并立即降为 free
- 过期保护：事件的周期结束时间（没有时用发生时间）早于已应用的状态时，只记录不改变状态
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from renvo.enums import (
    EventKind,
    Provider,
    SubscriptionStatus,
    Tier,
    TransactionStatus,
)
from renvo.models import Subscription, as_utc
from renvo.providers.base import NormalizedEvent

logger = logging.getLogger(__name__)

# 仍然享有高级会员权益的状态
PREMIUM_STATUSES = frozenset(
    {SubscriptionStatus.active, SubscriptionStatus.trialing, SubscriptionStatus.past_due}
)
# "有效"订阅：新的购买不会创建新记录，另一个通道的购买会取代它
LIVE_STATUSES = frozenset(
    {
        SubscriptionStatus.active,
        SubscriptionStatus.trialing,
        SubscriptionStatus.past_due,
        SubscriptionStatus.paused,
    }
)
# 不受过期保护限制的事件
UNGUARDED_KINDS = frozenset({EventKind.refunded, EventKind.snapshot, EventKind.ignored})


@dataclass(frozen=True)
class SubscriptionState:
    """状态机操作的订阅状态快照"""
    status: SubscriptionStatus = SubscriptionStatus.free
    tier: Tier = Tier.free
    provider: Provider = Provider.none
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None
    product_id: str | None = None
    billing_cycle: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    paused_until: datetime | None = None
    last_event_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Subscription) -> SubscriptionState:
        return cls(
            status=SubscriptionStatus(row.status),
            tier=Tier(row.tier),
            provider=Provider(row.provider),
            provider_customer_ref=row.provider_customer_ref,
            provider_subscription_ref=row.provider_subscription_ref,
            product_id=row.product_id,
            billing_cycle=row.billing_cycle,
            current_period_start=as_utc(row.current_period_start),
            current_period_end=as_utc(row.current_period_end),
            cancel_at_period_end=row.cancel_at_period_end,
            paused_until=as_utc(row.paused_until),
            last_event_at=as_utc(row.last_event_at),
        )


# ----------------------------------------------------------------------
# 副作用
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class RecordTransaction:
    """记录一笔扣款（成功或失败）"""
    provider_ref: str
    status: TransactionStatus
    occurred_at: datetime
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class RefundTransaction:
    """把已有交易标记为已退款"""
    provider_ref: str
    refunded_at: datetime
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class StartGrace:
    """开始扣款失败宽限期"""
    started_at: datetime


@dataclass(frozen=True)
class ClearGrace:
    """结束扣款失败宽限期（已恢复或已取消）"""


@dataclass(frozen=True)
class TierChanged:
    """会员等级发生变化（通知层使用）"""
    old: Tier
    new: Tier


Effect = RecordTransaction | RefundTransaction | StartGrace | ClearGrace | TierChanged


@dataclass
class Transition:
    """一次状态转换的结果"""
    state: SubscriptionState
    effects: list[Effect] = field(default_factory=list)
    stale: bool = False


def derive_tier(status: SubscriptionStatus, period_end: datetime | None, now: datetime) -> Tier:
    """
    根据状态和周期结束时间计算会员等级

    已取消的订阅在周期结束之前仍是高级会员。
    """
    if status in PREMIUM_STATUSES:
        return Tier.premium
    if status == SubscriptionStatus.cancelled and period_end is not None and period_end > now:
        return Tier.premium
    return Tier.free


def has_ended(status: SubscriptionStatus, cancel_at_period_end: bool) -> bool:
    """订阅已经结束（退款、到期、宽限期结束），而不是等待周期结束的预约取消"""
    return status == SubscriptionStatus.cancelled and not cancel_at_period_end


def is_stale(state: SubscriptionState, event: NormalizedEvent) -> bool:
    """
    判断事件是否比已应用的状态更旧

    先比较周期结束时间，相同或事件没有周期时再比较发生时间。
    已结束的订阅只看发生时间：退款会把周期结束时间提前，迟到的续费不能因为周期更晚而恢复订阅。
    """
    if event.kind in UNGUARDED_KINDS:
        return False
    if (
        has_ended(state.status, state.cancel_at_period_end)
        and state.last_event_at is not None
        and event.occurred_at < state.last_event_at
    ):
        return True
    stored_end = state.current_period_end
    if event.period_end is not None and stored_end is not None:
        if event.period_end > stored_end:
            return False
        if event.period_end < stored_end:
            return True
    if state.last_event_at is not None and event.occurred_at < state.last_event_at:
        return True
    return False


def effective_status(provider_status: SubscriptionStatus, cancel_at_period_end: bool | None) -> SubscriptionStatus:
    """
    通道状态在本地的表示

    通道把"已安排在周期结束时取消"报告为 active / trialing 加取消标记，本地统一记为 cancelled。
    """
    if cancel_at_period_end and provider_status in (SubscriptionStatus.active, SubscriptionStatus.trialing):
        return SubscriptionStatus.cancelled
    return provider_status


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _earlier(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _with_provider_fields(state: SubscriptionState, event: NormalizedEvent) -> SubscriptionState:
    return replace(
        state,
        provider=event.provider,
        provider_customer_ref=event.customer_ref or state.provider_customer_ref,
        provider_subscription_ref=event.subscription_ref or state.provider_subscription_ref,
        product_id=event.product_id or state.product_id,
        billing_cycle=event.billing_cycle or state.billing_cycle,
    )


def _charge(event: NormalizedEvent, status: TransactionStatus) -> list[Effect]:
    if not event.transaction_ref:
        return []
    return [
        RecordTransaction(
            provider_ref=event.transaction_ref,
            status=status,
            occurred_at=event.occurred_at,
            amount=event.amount,
            currency=event.currency,
        )
    ]


def transition(state: SubscriptionState, event: NormalizedEvent, now: datetime) -> Transition:
    """
    计算事件应用后的新状态和副作用

    Args:
        state: 当前状态
        event: 归一化事件
        now: 当前时间（计算会员等级使用）

    Returns:
        Transition；stale 为 True 时状态不变、没有副作用
    """
    if event.kind == EventKind.ignored:
        return Transition(state=state)
    if is_stale(state, event):
        logger.debug(
            f"Stale {event.kind.value} event {event.event_id} for {event.subscription_ref}, ignoring"
        )
        return Transition(state=state, stale=True)

    kind = event.kind
    effects: list[Effect] = []
    new = state

    if kind == EventKind.purchased:
        status = event.provider_status or (
            SubscriptionStatus.trialing if event.trial else SubscriptionStatus.active
        )
        new = replace(
            _with_provider_fields(state, event),
            status=status,
            current_period_start=event.period_start or state.current_period_start,
            current_period_end=event.period_end or state.current_period_end,
            cancel_at_period_end=bool(event.cancel_at_period_end),
            paused_until=None,
        )
        effects += _charge(event, TransactionStatus.succeeded)

    elif kind == EventKind.renewal_succeeded:
        new = replace(
            _with_provider_fields(state, event),
            status=SubscriptionStatus.active,
            current_period_start=event.period_start or state.current_period_start,
            current_period_end=_later(state.current_period_end, event.period_end),
            cancel_at_period_end=False,
            paused_until=None,
        )
        effects += _charge(event, TransactionStatus.succeeded)

    elif kind == EventKind.renewal_failed:
        if state.status in (SubscriptionStatus.active, SubscriptionStatus.trialing):
            new = replace(state, status=SubscriptionStatus.past_due)
        effects += _charge(event, TransactionStatus.failed)

    elif kind == EventKind.cancel_scheduled:
        new = replace(state, status=SubscriptionStatus.cancelled, cancel_at_period_end=True)

    elif kind == EventKind.renewal_resumed:
        if state.status == SubscriptionStatus.cancelled and state.cancel_at_period_end:
            period_open = state.current_period_end is not None and state.current_period_end > now
            if period_open:
                new = replace(state, status=SubscriptionStatus.active, cancel_at_period_end=False)
        else:
            new = replace(state, cancel_at_period_end=False)

    elif kind == EventKind.expired:
        # 到期即访问结束：周期结束时间不晚于事件发生时间
        new = replace(
            state,
            status=SubscriptionStatus.cancelled,
            cancel_at_period_end=False,
            current_period_end=_earlier(
                event.period_end or state.current_period_end, event.occurred_at
            ),
        )

    elif kind == EventKind.refunded:
        new = replace(
            state,
            status=SubscriptionStatus.cancelled,
            cancel_at_period_end=False,
            current_period_end=_earlier(state.current_period_end, now),
        )
        if event.transaction_ref:
            effects.append(
                RefundTransaction(
                    provider_ref=event.transaction_ref,
                    refunded_at=event.occurred_at,
                    amount=event.amount,
                    currency=event.currency,
                )
            )

    elif kind == EventKind.paused:
        new = replace(
            state,
            status=SubscriptionStatus.paused,
            paused_until=event.paused_until,
        )

    elif kind == EventKind.resumed:
        new = replace(
            state,
            status=event.provider_status or SubscriptionStatus.active,
            paused_until=None,
            current_period_end=_later(state.current_period_end, event.period_end),
        )

    elif kind in (EventKind.updated, EventKind.snapshot):
        # 通道是权威：直接覆盖为通道返回的值
        cancel_flag = (
            event.cancel_at_period_end
            if event.cancel_at_period_end is not None
            else state.cancel_at_period_end
        )
        status = effective_status(event.provider_status or state.status, cancel_flag)
        period_end = event.period_end or state.current_period_end
        if has_ended(status, cancel_flag) and has_ended(state.status, state.cancel_at_period_end):
            # 两边都已结束时保留更早的结束时间（本地退款或宽限期结束早于通道记录的周期末）
            period_end = _earlier(state.current_period_end, period_end)
        new = replace(
            _with_provider_fields(state, event),
            status=status,
            current_period_start=event.period_start or state.current_period_start,
            current_period_end=period_end,
            cancel_at_period_end=cancel_flag,
            paused_until=event.paused_until,
        )

    # 宽限期跟随 past_due 状态的进入和离开
    if new.status == SubscriptionStatus.past_due and state.status != SubscriptionStatus.past_due:
        effects.append(StartGrace(started_at=event.occurred_at))
    elif state.status == SubscriptionStatus.past_due and new.status != SubscriptionStatus.past_due:
        effects.append(ClearGrace())

    tier = Tier.free if kind == EventKind.refunded else derive_tier(new.status, new.current_period_end, now)
    new = replace(new, tier=tier)
    if kind != EventKind.snapshot:
        new = replace(new, last_event_at=_later(state.last_event_at, event.occurred_at))
    if tier != state.tier:
        effects.append(TierChanged(old=state.tier, new=tier))

    return Transition(state=new, effects=effects)
