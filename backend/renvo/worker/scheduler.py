"""
定时任务调度器

- 对账：每 RECONCILIATION_INTERVAL_MINUTES 分钟
- 宽限期清扫：每天 GRACE_SWEEP_HOUR_UTC 点（UTC）
- 待重试收据：每 5 分钟

运行方式：
    python -m renvo.worker.scheduler
"""

import logging
from datetime import timezone

import sentry_sdk
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from renvo.core.config import settings
from renvo.worker.tasks import retry_pending_receipts_job, run_grace_sweeps, run_reconciliation

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

RECEIPT_RETRY_INTERVAL_MINUTES = 5


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        run_reconciliation,
        IntervalTrigger(minutes=settings.RECONCILIATION_INTERVAL_MINUTES),
        id="reconcile",
        replace_existing=True,
    )
    scheduler.add_job(
        run_grace_sweeps,
        CronTrigger(hour=settings.GRACE_SWEEP_HOUR_UTC, minute=0),
        id="grace_sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        retry_pending_receipts_job,
        IntervalTrigger(minutes=RECEIPT_RETRY_INTERVAL_MINUTES),
        id="receipt_retry",
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN))
    scheduler = build_scheduler()
    logger.info(
        f"Scheduler started. Reconciliation every {settings.RECONCILIATION_INTERVAL_MINUTES} min, "
        f"grace sweeps daily at {settings.GRACE_SWEEP_HOUR_UTC:02d}:00 UTC."
    )
    scheduler.start()


if __name__ == "__main__":
    main()
