"""
收据校验服务

购买时客户端提交收据，服务端向通道校验后更新订阅：
- 瞬时故障（5xx、21005 等）通过统一的重试封装有限次重试
- 确定性拒绝（格式错误、无效收据）不重试，直接返回"无法验证购买"
- 超时不阻塞调用方：结果为 failed_retryable，收据写入 pending_receipts 由后台任务重试

校验通过的收据以 "receipt:<transaction_id>" 为事件 ID 登记到 EventStore，
重复提交同一张收据不会重复应用。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import Session, col, select

from renvo.core.config import settings
from renvo.core.retry import RetryPolicy, call_with_retry
from renvo.enums import EventKind, Provider, ReceiptOutcome, RecordOutcome
from renvo.exceptions import DefinitiveRejection, TransientNetworkFailure
from renvo.models import PendingReceipt, User, utc_now
from renvo.providers import get_adapter
from renvo.providers.base import NormalizedEvent, ValidatedProduct, ValidatedReceipt
from renvo.services import webhook_gateway
from renvo.services.event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass
class ReceiptValidationResult:
    """收据校验结果"""
    outcome: ReceiptOutcome
    receipt: ValidatedReceipt | None = None
    error: str | None = None

    @property
    def products(self) -> list[dict[str, Any]]:
        if self.receipt is None:
            return []
        return [p.to_dict() for p in self.receipt.products]


@dataclass
class PendingRetryReport:
    """待重试收据处理报告"""
    found: int = 0
    verified: int = 0
    rejected: int = 0
    rescheduled: int = 0
    abandoned: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)


class ReceiptValidator:
    """收据校验器"""

    def __init__(self, policy: RetryPolicy | None = None):
        self.policy = policy or RetryPolicy.from_settings()

    def validate(self, provider: Provider, raw_receipt: str) -> ReceiptValidationResult:
        """
        校验收据

        Args:
            provider: 支付通道
            raw_receipt: 客户端提交的原始收据

        Returns:
            ReceiptValidationResult
        """
        adapter = get_adapter(provider)
        try:
            receipt = call_with_retry(self.policy, adapter.validate_receipt, raw_receipt)
        except DefinitiveRejection as e:
            logger.warning(f"{provider.value} receipt rejected: {e}")
            return ReceiptValidationResult(outcome=ReceiptOutcome.rejected, error=str(e))
        except TransientNetworkFailure as e:
            logger.warning(f"{provider.value} receipt validation failed, will retry later: {e}")
            return ReceiptValidationResult(outcome=ReceiptOutcome.failed_retryable, error=str(e))
        return ReceiptValidationResult(outcome=ReceiptOutcome.verified, receipt=receipt)


def select_active_product(receipt: ValidatedReceipt, now: datetime) -> ValidatedProduct | None:
    """选出仍然有效且到期时间最晚的商品"""
    active = [
        p
        for p in receipt.products
        if not p.cancelled and (p.expires_at is None or p.expires_at > now)
    ]
    if not active:
        return None
    return max(active, key=lambda p: p.expires_at or datetime.max.replace(tzinfo=now.tzinfo))


def _purchase_event(
    provider: Provider, user_id: int, receipt: ValidatedReceipt, product: ValidatedProduct, now: datetime
) -> NormalizedEvent:
    return NormalizedEvent(
        provider=provider,
        event_id=f"receipt:{product.transaction_id}",
        event_type="receipt",
        kind=EventKind.purchased,
        occurred_at=now,
        user_id=user_id,
        customer_ref=receipt.customer_ref,
        subscription_ref=product.original_transaction_id or product.transaction_id,
        transaction_ref=product.transaction_id,
        period_start=product.purchase_at,
        period_end=product.expires_at,
        product_id=product.product_id,
        trial=product.trial,
    )


def apply_verified_receipt(
    session: Session,
    user_id: int,
    provider: Provider,
    result: ReceiptValidationResult,
    now: datetime | None = None,
) -> ReceiptValidationResult:
    """
    把校验通过的收据应用到订阅

    收据中没有有效商品时按确定性拒绝处理。
    """
    now = now or utc_now()
    if result.receipt is None:
        raise ValueError("apply_verified_receipt requires a verified receipt")
    product = select_active_product(result.receipt, now)
    if product is None:
        return ReceiptValidationResult(
            outcome=ReceiptOutcome.rejected,
            receipt=result.receipt,
            error="No active subscription found in receipt",
        )

    event = _purchase_event(provider, user_id, result.receipt, product, now)
    store = EventStore(session)
    outcome = store.record(provider, event.event_id, event.event_type, {"products": result.products}, now)
    if outcome == RecordOutcome.new:
        stored = store.get(provider, event.event_id, for_update=True)
        try:
            webhook_gateway.apply_and_mark(session, stored, event, now)
        except Exception as e:
            session.rollback()
            store.mark_rejected(provider, event.event_id, str(e))
            raise
    else:
        logger.info(f"Receipt {event.event_id} already applied ({outcome.value})")
    return result


def submit_receipt(
    session: Session,
    user: User,
    provider: Provider,
    raw_receipt: str,
    validator: ReceiptValidator | None = None,
    now: datetime | None = None,
) -> ReceiptValidationResult:
    """
    购买时的收据校验入口

    Returns:
        verified: 已应用到订阅
        rejected: 无法验证购买
        failed_retryable: 已写入 pending_receipts，稍后重试
    """
    now = now or utc_now()
    validator = validator or ReceiptValidator()
    result = validator.validate(provider, raw_receipt)

    if result.outcome == ReceiptOutcome.verified:
        return apply_verified_receipt(session, user.id, provider, result, now)

    if result.outcome == ReceiptOutcome.failed_retryable:
        session.add(
            PendingReceipt(
                user_id=user.id,
                provider=provider,
                receipt=raw_receipt,
                attempts=1,
                next_attempt_at=now + timedelta(seconds=settings.RECEIPT_RETRY_BASE_SECONDS),
                last_error=result.error,
                created_at=now,
            )
        )
        session.commit()
    return result


def retry_pending_receipts(
    session: Session,
    validator: ReceiptValidator | None = None,
    now: datetime | None = None,
) -> PendingRetryReport:
    """
    重试到期的待校验收据

    间隔按 RECEIPT_RETRY_BASE_SECONDS * 2^(attempts-1) 增长，
    达到 RECEIPT_RETRY_MAX_ATTEMPTS 后放弃。每张收据独立提交，一张失败不影响其他。
    """
    now = now or utc_now()
    validator = validator or ReceiptValidator()
    report = PendingRetryReport()

    ids = session.exec(
        select(PendingReceipt.id)
        .where(
            col(PendingReceipt.resolved_at).is_(None),
            PendingReceipt.next_attempt_at <= now,
        )
        .order_by(col(PendingReceipt.next_attempt_at).asc())
    ).all()
    report.found = len(ids)

    for pending_id in ids:
        try:
            pending = session.get(PendingReceipt, pending_id, with_for_update=True)
            if pending is None or pending.resolved_at is not None:
                continue
            provider = Provider(pending.provider)
            result = validator.validate(provider, pending.receipt)
            pending.attempts += 1

            if result.outcome == ReceiptOutcome.verified:
                result = apply_verified_receipt(session, pending.user_id, provider, result, now)

            if result.outcome == ReceiptOutcome.verified:
                pending.resolved_at = now
                pending.last_error = None
                report.verified += 1
            elif result.outcome == ReceiptOutcome.rejected:
                pending.resolved_at = now
                pending.last_error = result.error
                report.rejected += 1
            elif pending.attempts >= settings.RECEIPT_RETRY_MAX_ATTEMPTS:
                pending.resolved_at = now
                pending.last_error = f"Gave up after {pending.attempts} attempts: {result.error}"
                report.abandoned += 1
                logger.error(f"Pending receipt {pending.id} abandoned: {result.error}")
            else:
                delay = settings.RECEIPT_RETRY_BASE_SECONDS * 2 ** (pending.attempts - 1)
                pending.next_attempt_at = now + timedelta(seconds=delay)
                pending.last_error = result.error
                report.rescheduled += 1

            session.add(pending)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to retry pending receipt {pending_id}: {e}")
            report.errors.append({"pending_receipt_id": pending_id, "error": str(e)})

    if report.found:
        logger.info(
            f"Pending receipts: found={report.found} verified={report.verified} "
            f"rejected={report.rejected} rescheduled={report.rescheduled} abandoned={report.abandoned}"
        )
    return report

