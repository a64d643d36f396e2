"""
交易流水服务

只追加的扣款记录：
- 同一 (provider, provider_ref) 只有一行；失败后重试成功的扣款把 failed 升级为 succeeded
- 退款把已有行改为 refunded，重复的退款通知不产生任何变化
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlmodel import Session, col, select

from renvo.enums import Provider, TransactionStatus
from renvo.models import Transaction

logger = logging.getLogger(__name__)


class RefundResult(str, Enum):
    """退款处理结果"""
    refunded = "refunded"
    already_refunded = "already_refunded"
    created = "created"


class TransactionLedger:
    """交易流水"""

    def __init__(self, session: Session):
        self.session = session

    def get(self, provider: Provider, provider_ref: str) -> Transaction | None:
        stmt = select(Transaction).where(
            Transaction.provider == provider, Transaction.provider_ref == provider_ref
        )
        return self.session.exec(stmt).first()

    def is_refunded(self, provider: Provider, provider_ref: str) -> bool:
        tx = self.get(provider, provider_ref)
        return tx is not None and tx.status == TransactionStatus.refunded

    def record(
        self,
        *,
        subscription_id: int,
        provider: Provider,
        provider_ref: str,
        status: TransactionStatus,
        occurred_at: datetime,
        amount: Decimal | None = None,
        currency: str | None = None,
    ) -> Transaction:
        """
        记录一笔扣款

        Args:
            subscription_id: 订阅 ID
            provider: 支付通道
            provider_ref: 通道侧交易 ID
            status: succeeded 或 failed
            occurred_at: 发生时间

        Returns:
            新建或已存在的交易
        """
        existing = self.get(provider, provider_ref)
        if existing is not None:
            if existing.status == TransactionStatus.failed and status == TransactionStatus.succeeded:
                existing.status = TransactionStatus.succeeded
                existing.occurred_at = occurred_at
                existing.amount = amount if amount is not None else existing.amount
                existing.currency = currency or existing.currency
                self.session.add(existing)
                logger.info(f"Transaction {provider_ref} recovered from failed to succeeded")
            return existing

        tx = Transaction(
            subscription_id=subscription_id,
            provider=provider,
            provider_ref=provider_ref,
            status=status,
            occurred_at=occurred_at,
            amount=amount,
            currency=currency,
        )
        self.session.add(tx)
        self.session.flush()
        return tx

    def apply_refund(
        self,
        *,
        subscription_id: int,
        provider: Provider,
        provider_ref: str,
        refunded_at: datetime,
        amount: Decimal | None = None,
        currency: str | None = None,
    ) -> RefundResult:
        """
        把交易标记为已退款

        没见过的交易（扣款通知丢失）直接记为一行 refunded。
        """
        existing = self.get(provider, provider_ref)
        if existing is not None:
            if existing.status == TransactionStatus.refunded:
                logger.info(f"Transaction {provider_ref} already refunded, skipping")
                return RefundResult.already_refunded
            existing.status = TransactionStatus.refunded
            existing.refunded_at = refunded_at
            self.session.add(existing)
            return RefundResult.refunded

        self.session.add(
            Transaction(
                subscription_id=subscription_id,
                provider=provider,
                provider_ref=provider_ref,
                status=TransactionStatus.refunded,
                occurred_at=refunded_at,
                refunded_at=refunded_at,
                amount=amount,
                currency=currency,
            )
        )
        self.session.flush()
        return RefundResult.created

    def list_for_subscription(self, subscription_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.subscription_id == subscription_id)
            .order_by(col(Transaction.occurred_at).asc(), col(Transaction.id).asc())
        )
        return list(self.session.exec(stmt).all())
