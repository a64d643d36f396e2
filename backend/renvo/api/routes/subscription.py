import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from renvo.api.deps import CurrentUser, SessionDep
from renvo.api.errors import (
    no_live_subscription,
    provider_unavailable,
    provider_unsupported,
    purchase_not_verified,
)
from renvo.api.schemas import (
    ApiEnvelope,
    CancelData,
    CancelRequest,
    ReceiptSubmitData,
    ReceiptSubmitRequest,
    SubscriptionStatusData,
)
from renvo.enums import ReceiptOutcome
from renvo.exceptions import (
    ProviderOperationUnsupported,
    SubscriptionNotFound,
    TransientNetworkFailure,
)
from renvo.services import receipt_validator, subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.get("/status", response_model=ApiEnvelope)
def status(session: SessionDep, current_user: CurrentUser) -> ApiEnvelope:
    data = subscriptions.get_subscription_status(session, current_user.id)
    return ApiEnvelope(data=SubscriptionStatusData(**data))


@router.post("/receipt", response_model=ApiEnvelope)
def submit_receipt(
    session: SessionDep, current_user: CurrentUser, body: ReceiptSubmitRequest
) -> ApiEnvelope | JSONResponse:
    """
    购买时校验收据

    - 校验通过：订阅已更新，返回 verified
    - 确定性拒绝：400 "Could not verify purchase"
    - 暂时无法校验：202 pending，收据由后台任务重试
    """
    try:
        result = receipt_validator.submit_receipt(session, current_user, body.provider, body.receipt)
    except ProviderOperationUnsupported as e:
        raise provider_unsupported(str(e))

    if result.outcome == ReceiptOutcome.rejected:
        logger.info(f"Receipt from user {current_user.id} rejected: {result.error}")
        raise purchase_not_verified()
    if result.outcome == ReceiptOutcome.failed_retryable:
        envelope = ApiEnvelope(data=ReceiptSubmitData(status="pending"))
        return JSONResponse(status_code=202, content=envelope.model_dump(mode="json"))
    return ApiEnvelope(data=ReceiptSubmitData(status="verified", products=result.products))


@router.post("/cancel", response_model=ApiEnvelope)
def cancel(session: SessionDep, current_user: CurrentUser, body: CancelRequest | None = None) -> ApiEnvelope:
    at_period_end = body.at_period_end if body is not None else True
    try:
        row = subscriptions.request_cancel(session, current_user.id, at_period_end=at_period_end)
    except SubscriptionNotFound:
        raise no_live_subscription()
    except ProviderOperationUnsupported as e:
        raise provider_unsupported(str(e))
    except TransientNetworkFailure as e:
        logger.error(f"Cancel for user {current_user.id} failed after retries: {e}")
        raise provider_unavailable()
    return ApiEnvelope(data=CancelData(provider=row.provider, at_period_end=at_period_end))
