"""
账号注销服务

注销是软删除：写入 DeletionRecord，在 ACCOUNT_DELETION_GRACE_DAYS 天内可以恢复，
到期后由宽限期清扫任务（account_deletion 策略）清除用户数据。
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import Session, col, select

from renvo import crud
from renvo.core.config import settings
from renvo.exceptions import StateConflict
from renvo.models import DeletionRecord, User, as_utc, utc_now
from renvo.services.state_machine import LIVE_STATUSES
from renvo.services.subscriptions import request_provider_cancel

logger = logging.getLogger(__name__)


def get_pending_deletion(session: Session, user_id: int, for_update: bool = False) -> DeletionRecord | None:
    """未恢复、未清除的注销记录"""
    stmt = (
        select(DeletionRecord)
        .where(
            DeletionRecord.user_id == user_id,
            col(DeletionRecord.recovered_at).is_(None),
            col(DeletionRecord.purged_at).is_(None),
        )
        .order_by(col(DeletionRecord.deleted_at).desc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def request_deletion(
    session: Session, user: User, reason: str | None = None, now: datetime | None = None
) -> DeletionRecord:
    """
    申请注销账号

    已有未完成的注销记录时直接返回（幂等）。有效订阅会请求通道在周期结束时取消，
    请求失败不影响注销。
    """
    now = now or utc_now()
    existing = get_pending_deletion(session, user.id, for_update=True)
    if existing is not None:
        return existing

    record = DeletionRecord(
        user_id=user.id,
        deleted_at=now,
        purge_at=now + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS),
        reason=reason,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"User {user.id} marked for deletion, purge at {record.purge_at}")

    sub = crud.get_current_subscription(session=session, user_id=user.id)
    if sub is not None and sub.status in LIVE_STATUSES and sub.provider_subscription_ref:
        request_provider_cancel(sub, at_period_end=True)
    return record


def recover(session: Session, user: User, now: datetime | None = None) -> DeletionRecord:
    """
    恢复账号

    Raises:
        StateConflict: 没有待处理的注销记录，或已超过恢复期
    """
    now = now or utc_now()
    record = get_pending_deletion(session, user.id, for_update=True)
    if record is None:
        raise StateConflict("Account is not pending deletion")
    if now >= as_utc(record.deleted_at) + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS):
        raise StateConflict("Recovery window has expired")

    record.recovered_at = now
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"User {user.id} recovered account")
    return record


def deletion_status(session: Session, user: User, now: datetime | None = None) -> dict[str, Any]:
    """账号注销状态"""
    now = now or utc_now()
    record = get_pending_deletion(session, user.id)
    if record is None:
        return {"pending_deletion": False, "deleted_at": None, "purge_at": None, "days_remaining": None}
    purge_at = as_utc(record.deleted_at) + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS)
    remaining = max(0, math.ceil((purge_at - now).total_seconds() / 86400))
    return {
        "pending_deletion": True,
        "deleted_at": as_utc(record.deleted_at),
        "purge_at": purge_at,
        "days_remaining": remaining,
    }
