"""
Webhook 入口服务

接收流程：验签 → 解析 → 登记到 EventStore → 尽快返回 2xx。
真正的处理在响应之后（FastAPI BackgroundTasks）进行，失败的事件标记为
rejected，等待通道的下一次投递重试。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session

from renvo.core import db
from renvo.enums import EventProcessingStatus, Provider, RecordOutcome
from renvo.exceptions import BillingError, SubscriptionNotFound
from renvo.models import PaymentEvent, utc_now
from renvo.providers import get_adapter
from renvo.providers.base import NormalizedEvent
from renvo.services import subscriptions
from renvo.services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class WebhookReceipt:
    """Webhook 接收结果"""
    provider: Provider
    event_id: str
    event_type: str
    outcome: RecordOutcome


def receive(session: Session, provider: Provider, body: bytes, headers: dict[str, str]) -> WebhookReceipt:
    """
    接收一次 webhook 投递

    Args:
        session: 数据库会话
        provider: 支付通道
        body: 原始请求体
        headers: 请求头（小写键）

    Returns:
        WebhookReceipt；outcome 为 new 时调用方需要安排 process_recorded_event

    Raises:
        SignatureInvalid: 验签失败
        MalformedEvent: 缺少事件 ID / 类型
    """
    adapter = get_adapter(provider)
    payload = adapter.verify_webhook(body, headers)
    event = adapter.parse_event(payload)
    outcome = EventStore(session).record(provider, event.event_id, event.event_type, payload)
    logger.info(f"Received {provider.value} event {event.event_id} ({event.event_type}): {outcome.value}")
    return WebhookReceipt(
        provider=provider, event_id=event.event_id, event_type=event.event_type, outcome=outcome
    )


def apply_and_mark(
    session: Session,
    stored: PaymentEvent,
    event: NormalizedEvent,
    now: datetime | None = None,
) -> subscriptions.ApplyResult:
    """
    应用事件并把 PaymentEvent 标记为 processed，二者在同一事务中提交

    过期事件同样标记为 processed（保留在审计记录中，但不改变状态）。
    """
    now = now or utc_now()
    result = subscriptions.apply_event(session, event, now)
    if result.stale:
        logger.debug(f"Event {event.event_id} is older than applied state, recorded only")
    EventStore(session).mark_processed(stored, now)
    session.commit()
    return result


def process_event(session: Session, provider: Provider, event_id: str, now: datetime | None = None) -> bool:
    """
    处理一条已登记的事件

    Returns:
        是否处理成功
    """
    store = EventStore(session)
    stored = store.get(provider, event_id, for_update=True)
    if stored is None:
        logger.error(f"{provider.value} event {event_id} not found in event store")
        return False
    if stored.processing_status == EventProcessingStatus.processed:
        session.rollback()
        return True

    try:
        event = get_adapter(provider).parse_event(stored.payload or {})
        apply_and_mark(session, stored, event, now)
        return True
    except SubscriptionNotFound as e:
        session.rollback()
        logger.warning(f"{provider.value} event {event_id} rejected: {e}")
        store.mark_rejected(provider, event_id, str(e))
        return False
    except BillingError as e:
        session.rollback()
        logger.error(f"{provider.value} event {event_id} rejected: {e}")
        store.mark_rejected(provider, event_id, str(e))
        return False
    except Exception as e:
        session.rollback()
        logger.exception(f"Unexpected error processing {provider.value} event {event_id}: {e}")
        store.mark_rejected(provider, event_id, f"{type(e).__name__}: {e}")
        return False


def process_recorded_event(provider: Provider, event_id: str) -> bool:
    """后台任务入口：使用独立会话处理事件"""
    with Session(db.engine) as session:
        return process_event(session, provider, event_id)
