"""订阅 CRUD 操作"""
from sqlmodel import Session, col, select

from renvo.enums import Provider
from renvo.models import Subscription


def get_current(*, session: Session, user_id: int, for_update: bool = False) -> Subscription | None:
    """获取用户当前（最新创建）的订阅记录"""
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(col(Subscription.created_at).desc(), col(Subscription.id).desc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def get_by_provider_ref(
    *, session: Session, provider: Provider, subscription_ref: str, for_update: bool = False
) -> Subscription | None:
    """按通道订阅 ID 获取最新的订阅记录"""
    stmt = (
        select(Subscription)
        .where(
            Subscription.provider == provider,
            Subscription.provider_subscription_ref == subscription_ref,
        )
        .order_by(col(Subscription.created_at).desc(), col(Subscription.id).desc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def get_by_customer_ref(
    *, session: Session, provider: Provider, customer_ref: str, for_update: bool = False
) -> Subscription | None:
    """按通道客户 ID 获取最新的订阅记录"""
    stmt = (
        select(Subscription)
        .where(
            Subscription.provider == provider,
            Subscription.provider_customer_ref == customer_ref,
        )
        .order_by(col(Subscription.created_at).desc(), col(Subscription.id).desc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def lock(*, session: Session, subscription_id: int) -> Subscription | None:
    """按主键加锁读取订阅"""
    stmt = select(Subscription).where(Subscription.id == subscription_id).with_for_update()
    return session.exec(stmt).first()
