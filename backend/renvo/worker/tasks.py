"""
定时任务逻辑

每个任务都先取 Redis 分布式锁，多个调度器实例同时运行时只有一个真正执行。
任务本身是幂等的，锁只用于避免重复调用通道 API。
"""

import logging
from collections.abc import Callable
from typing import TypeVar
from uuid import uuid4

from sqlmodel import Session

from renvo.core import db
from renvo.core.redis_client import get_redis_client
from renvo.services.grace_period import SweepReport, run_all_sweeps
from renvo.services.receipt_validator import PendingRetryReport, retry_pending_receipts
from renvo.services.reconciliation import ReconciliationJob, ReconciliationReport

logger = logging.getLogger(__name__)

RECONCILE_LOCK_KEY = "renvo:jobs:reconcile:lock"
GRACE_SWEEP_LOCK_KEY = "renvo:jobs:grace_sweep:lock"
RECEIPT_RETRY_LOCK_KEY = "renvo:jobs:receipt_retry:lock"
LOCK_TTL_SECONDS = 60 * 30

T = TypeVar("T")


def _with_lock(key: str, job: Callable[[Session], T]) -> T | None:
    redis_client = get_redis_client()
    lock_value = str(uuid4())
    acquired = redis_client.acquire_lock(key, lock_value, expire_seconds=LOCK_TTL_SECONDS)
    if not acquired:
        logger.info(f"{key} is held by another worker, skip this run.")
        return None

    try:
        with Session(db.engine) as session:
            return job(session)
    finally:
        redis_client.release_lock(key, lock_value)


def run_reconciliation(dry_run: bool = False) -> ReconciliationReport | None:
    """对账：用通道状态覆盖本地漂移，合并重复订阅"""
    return _with_lock(
        RECONCILE_LOCK_KEY, lambda session: ReconciliationJob(session).run(dry_run=dry_run)
    )


def run_grace_sweeps(dry_run: bool = False) -> list[SweepReport] | None:
    """每天一次：处理所有到期的宽限期"""
    reports = _with_lock(GRACE_SWEEP_LOCK_KEY, lambda session: run_all_sweeps(session, dry_run=dry_run))
    for report in reports or []:
        if report.failed:
            logger.error(f"Grace sweep {report.name} finished with {report.failed} failed rows")
    return reports


def retry_pending_receipts_job() -> PendingRetryReport | None:
    return _with_lock(RECEIPT_RETRY_LOCK_KEY, retry_pending_receipts)
