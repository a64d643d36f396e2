from fastapi import APIRouter

from renvo.api.deps import CurrentUser, SessionDep
from renvo.api.errors import deletion_conflict
from renvo.api.schemas import AccountDeleteRequest, AccountStatusData, ApiEnvelope
from renvo.exceptions import StateConflict
from renvo.services import accounts

router = APIRouter(prefix="/account", tags=["account"])


@router.post("/delete", response_model=ApiEnvelope)
def delete_account(
    session: SessionDep, current_user: CurrentUser, body: AccountDeleteRequest | None = None
) -> ApiEnvelope:
    """软删除账号，恢复期内可以通过 /account/recover 恢复"""
    accounts.request_deletion(session, current_user, reason=body.reason if body else None)
    return ApiEnvelope(data=AccountStatusData(**accounts.deletion_status(session, current_user)))


@router.post("/recover", response_model=ApiEnvelope)
def recover_account(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    try:
        accounts.recover(session, current_user)
    except StateConflict as e:
        raise deletion_conflict(str(e))
    return ApiEnvelope(data=AccountStatusData(**accounts.deletion_status(session, current_user)))


@router.get("/status", response_model=ApiEnvelope)
def account_status(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    return ApiEnvelope(data=AccountStatusData(**accounts.deletion_status(session, current_user)))
