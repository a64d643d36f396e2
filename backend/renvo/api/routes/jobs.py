"""
定时任务路由

供外部调度器（如 cron / Cloud Scheduler）触发对账和宽限期清扫，
需要携带 Bearer JOBS_SECRET。dry_run=true 时只返回报告，不修改数据。
"""
from fastapi import APIRouter, Depends

from renvo.api.deps import SessionDep, require_jobs_token
from renvo.api.schemas import ApiEnvelope
from renvo.services.grace_period import run_all_sweeps
from renvo.services.reconciliation import ReconciliationJob

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_jobs_token)])


@router.post("/reconcile", response_model=ApiEnvelope)
def reconcile(session: SessionDep, dry_run: bool = False) -> ApiEnvelope:
    report = ReconciliationJob(session).run(dry_run=dry_run)
    return ApiEnvelope(data=report.to_dict())


@router.post("/grace-sweep", response_model=ApiEnvelope)
def grace_sweep(session: SessionDep, dry_run: bool = False) -> ApiEnvelope:
    reports = run_all_sweeps(session, dry_run=dry_run)
    return ApiEnvelope(data={"sweeps": [r.to_dict() for r in reports]})
