"""
事件存储（幂等账本）

以 (provider, event_id) 为幂等键，保证每个外部投递的事件最多被应用一次。

record() 的返回值：
- new: 首次出现（或接管了超时 / 失败的事件），调用方负责处理
- duplicate_processing: 另一次投递正在处理，调用方直接忽略
- duplicate_processed: 已处理完成，调用方直接忽略
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from renvo.core.config import settings
from renvo.enums import EventProcessingStatus, Provider, RecordOutcome
from renvo.models import PaymentEvent, as_utc, utc_now

logger = logging.getLogger(__name__)


class EventStore:
    """Webhook 事件幂等账本"""

    def __init__(self, session: Session, lease_seconds: int | None = None):
        """
        Args:
            session: 数据库会话
            lease_seconds: processing 状态的租约，超过后允许下一次投递接管
        """
        self.session = session
        self.lease = timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.EVENT_PROCESSING_LEASE_SECONDS
        )

    def get(self, provider: Provider, event_id: str, for_update: bool = False) -> PaymentEvent | None:
        stmt = select(PaymentEvent).where(
            PaymentEvent.provider == provider, PaymentEvent.event_id == event_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.exec(stmt).first()

    def record(
        self,
        provider: Provider,
        event_id: str,
        event_type: str = "",
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> RecordOutcome:
        """
        登记一次事件投递

        插入依赖数据库唯一约束，并发投递时只有一个能插入成功。
        """
        now = now or utc_now()
        self.session.add(
            PaymentEvent(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processing_status=EventProcessingStatus.processing,
                received_at=now,
            )
        )
        try:
            self.session.commit()
            return RecordOutcome.new
        except IntegrityError:
            self.session.rollback()

        existing = self.get(provider, event_id)
        if existing is None:
            # 唯一约束冲突但读不到，说明对方事务已回滚，按处理中对待
            return RecordOutcome.duplicate_processing

        status = EventProcessingStatus(existing.processing_status)
        if status == EventProcessingStatus.processed:
            logger.info(f"Duplicate {provider.value} event {event_id} already processed")
            return RecordOutcome.duplicate_processed

        if status == EventProcessingStatus.processing and as_utc(existing.received_at) > now - self.lease:
            logger.info(f"Duplicate {provider.value} event {event_id} is being processed")
            return RecordOutcome.duplicate_processing

        return self._reclaim(existing, status, now)

    def _reclaim(
        self, existing: PaymentEvent, status: EventProcessingStatus, now: datetime
    ) -> RecordOutcome:
        """
        接管超时的 processing 事件或重试 rejected 事件

        条件更新保证并发投递中只有一个能接管。
        """
        result = self.session.execute(
            update(PaymentEvent)
            .where(
                PaymentEvent.id == existing.id,
                PaymentEvent.processing_status == status,
                PaymentEvent.received_at == existing.received_at,
            )
            .values(
                processing_status=EventProcessingStatus.processing,
                received_at=now,
                error=None,
            )
        )
        if result.rowcount != 1:
            self.session.rollback()
            return RecordOutcome.duplicate_processing
        self.session.commit()
        logger.warning(
            f"Reclaimed {status.value} {existing.provider} event {existing.event_id} for reprocessing"
        )
        return RecordOutcome.new

    def mark_processed(self, event: PaymentEvent, now: datetime | None = None) -> None:
        """标记为已处理（与状态变更在同一事务中提交）"""
        event.processing_status = EventProcessingStatus.processed
        event.processed_at = now or utc_now()
        event.error = None
        self.session.add(event)

    def mark_rejected(self, provider: Provider, event_id: str, error: str) -> None:
        """标记为处理失败，下一次投递会重试"""
        event = self.get(provider, event_id, for_update=True)
        if event is None or event.processing_status == EventProcessingStatus.processed:
            return
        event.processing_status = EventProcessingStatus.rejected
        event.error = error[:2000]
        self.session.add(event)
        self.session.commit()
