"""
支付通道 webhook 路由

验签、登记事件后立即返回 200，事件在响应之后由后台任务处理。
重复投递返回 200 且 duplicate=True，不会重复处理。
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool

from renvo.api.deps import SessionDep
from renvo.api.errors import invalid_signature, malformed_event
from renvo.api.schemas import ApiEnvelope, WebhookAckData
from renvo.enums import Provider, RecordOutcome
from renvo.exceptions import MalformedEvent, SignatureInvalid
from renvo.services import webhook_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(
    provider: Provider, request: Request, session: SessionDep, background_tasks: BackgroundTasks
) -> ApiEnvelope:
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        receipt = await run_in_threadpool(webhook_gateway.receive, session, provider, body, headers)
    except SignatureInvalid as e:
        logger.warning(f"Rejected {provider.value} webhook: {e}")
        raise invalid_signature()
    except MalformedEvent as e:
        logger.warning(f"Malformed {provider.value} webhook: {e}")
        raise malformed_event(str(e))

    if receipt.outcome == RecordOutcome.new:
        background_tasks.add_task(
            webhook_gateway.process_recorded_event, provider, receipt.event_id
        )
    return ApiEnvelope(
        data=WebhookAckData(duplicate=receipt.outcome != RecordOutcome.new)
    )


@router.post("/card-gateway", response_model=ApiEnvelope)
async def card_gateway(
    request: Request, session: SessionDep, background_tasks: BackgroundTasks
) -> ApiEnvelope:
    return await _receive(Provider.card_gateway, request, session, background_tasks)


@router.post("/mobile-iap", response_model=ApiEnvelope)
async def mobile_iap(
    request: Request, session: SessionDep, background_tasks: BackgroundTasks
) -> ApiEnvelope:
    return await _receive(Provider.mobile_iap, request, session, background_tasks)
