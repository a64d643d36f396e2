"""
逾期账单路由

同一时间客户端只展示一个确认弹窗：/past-due/next 返回最早到期的一条，
以及展示下一条之前需要等待的 delay_ms。
"""
from fastapi import APIRouter

from renvo.api.deps import CurrentUser, SessionDep
from renvo.api.errors import confirmation_conflict, invalid_confirmation, item_not_found
from renvo.api.schemas import (
    ApiEnvelope,
    ConfirmationData,
    ConfirmationHistoryData,
    ConfirmRequest,
    ConfirmResultData,
    PastDueItemData,
    PastDueNextData,
    PastDueQueueData,
    RecurringItemData,
)
from renvo.core.config import settings
from renvo.exceptions import InvalidConfirmation, ItemNotFound, StateConflict
from renvo.models import PaymentConfirmation
from renvo.services import past_due
from renvo.services.past_due import PastDueEntry

router = APIRouter(prefix="/past-due", tags=["past-due"])


def _entry_data(entry: PastDueEntry) -> PastDueItemData:
    item = entry.item
    return PastDueItemData(
        id=item.id,
        name=item.name,
        amount=item.amount,
        currency=item.currency,
        due_date=item.due_date,
        interval=item.interval,
        is_recurring=entry.is_recurring,
        days_past_due=entry.days_past_due,
    )


def _confirmation_data(confirmation: PaymentConfirmation) -> ConfirmationData:
    return ConfirmationData(
        id=confirmation.id,
        due_date=confirmation.due_date,
        outcome=confirmation.outcome,
        confirmed_at=confirmation.confirmed_at,
    )


@router.get("", response_model=ApiEnvelope)
def queue(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    entries = past_due.list_queue(session, current_user.id)
    return ApiEnvelope(
        data=PastDueQueueData(data=[_entry_data(e) for e in entries], count=len(entries))
    )


@router.get("/next", response_model=ApiEnvelope)
def next_prompt(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    entries = past_due.list_queue(session, current_user.id)
    return ApiEnvelope(
        data=PastDueNextData(
            item=_entry_data(entries[0]) if entries else None,
            remaining=max(0, len(entries) - 1),
            delay_ms=settings.PAST_DUE_PROMPT_DELAY_MS,
        )
    )


@router.post("/{item_id}/confirm", response_model=ApiEnvelope)
def confirm(
    item_id: int, body: ConfirmRequest, session: SessionDep, current_user: CurrentUser
) -> ApiEnvelope:
    try:
        item, confirmation = past_due.confirm(
            session,
            current_user.id,
            item_id,
            body.outcome,
            expected_due_date=body.expected_due_date,
        )
    except ItemNotFound:
        raise item_not_found()
    except InvalidConfirmation as e:
        raise invalid_confirmation(str(e))
    except StateConflict as e:
        raise confirmation_conflict(str(e))

    return ApiEnvelope(
        data=ConfirmResultData(
            item=RecurringItemData(
                id=item.id,
                name=item.name,
                due_date=item.due_date,
                interval=item.interval,
                status=item.status,
            ),
            confirmation=_confirmation_data(confirmation),
        )
    )


@router.get("/{item_id}/history", response_model=ApiEnvelope)
def confirmation_history(item_id: int, session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    try:
        rows = past_due.history(session, current_user.id, item_id)
    except ItemNotFound:
        raise item_not_found()
    return ApiEnvelope(
        data=ConfirmationHistoryData(data=[_confirmation_data(r) for r in rows], count=len(rows))
    )
