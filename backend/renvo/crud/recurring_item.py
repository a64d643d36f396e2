"""跟踪账单 CRUD 操作"""
from datetime import date

from sqlmodel import Session, col, select

from renvo.enums import RecurringItemStatus
from renvo.models import PaymentConfirmation, RecurringItem


def get_for_user(
    *, session: Session, user_id: int, item_id: int, for_update: bool = False
) -> RecurringItem | None:
    """获取属于用户的账单"""
    stmt = select(RecurringItem).where(
        RecurringItem.id == item_id, RecurringItem.user_id == user_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.exec(stmt).first()


def list_past_due(*, session: Session, user_id: int, today: date) -> list[RecurringItem]:
    """列出已逾期的账单，按到期日升序"""
    stmt = (
        select(RecurringItem)
        .where(
            RecurringItem.user_id == user_id,
            RecurringItem.status == RecurringItemStatus.active,
            RecurringItem.due_date < today,
        )
        .order_by(col(RecurringItem.due_date).asc(), col(RecurringItem.id).asc())
    )
    return list(session.exec(stmt).all())


def list_confirmations(*, session: Session, item_id: int) -> list[PaymentConfirmation]:
    """账单的确认记录，按时间倒序"""
    stmt = (
        select(PaymentConfirmation)
        .where(PaymentConfirmation.recurring_item_id == item_id)
        .order_by(col(PaymentConfirmation.confirmed_at).desc(), col(PaymentConfirmation.id).desc())
    )
    return list(session.exec(stmt).all())
