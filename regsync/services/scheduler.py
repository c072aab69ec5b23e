from __future__ import annotations

from datetime import timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from regsync.config import settings
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.services.orchestrator import PipelineOrchestrator

log = structlog.get_logger(__name__)
_scheduler: AsyncIOScheduler | None = None


async def scheduled_sync(orchestrator: PipelineOrchestrator) -> None:
    try:
        run = await orchestrator.run(
            trigger_type="scheduled",
            triggered_by="scheduler",
            since_days=settings.SCHEDULED_SINCE_DAYS,
        )
        log.info(
            "scheduler.sync.done",
            run_id=run.id,
            status=run.status,
            inserted=run.inserted_count,
            updated=run.updated_count,
        )
    except Exception as exc:
        log.error("scheduler.sync.failed", error=str(exc))


async def scheduled_reconcile(ledger: SyncLogLedger) -> None:
    try:
        await ledger.reconcile_abandoned(timedelta(minutes=settings.STALE_RUN_TIMEOUT_MINUTES))
    except Exception as exc:
        log.error("scheduler.reconcile.failed", error=str(exc))


def scheduler_running() -> bool:
    return bool(_scheduler and _scheduler.running)


def start_scheduler(orchestrator: PipelineOrchestrator, ledger: SyncLogLedger) -> None:
    global _scheduler
    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler.disabled")
        return

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        scheduled_sync,
        trigger=IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
        args=[orchestrator],
        id="auto_sync",
        replace_existing=True,
        max_instances=1,
    )
    _scheduler.add_job(
        scheduled_reconcile,
        trigger=IntervalTrigger(minutes=settings.RECONCILE_INTERVAL_MINUTES),
        args=[ledger],
        id="reconcile_runs",
        replace_existing=True,
        max_instances=1,
    )
    _scheduler.start()
    log.info(
        "scheduler.started",
        sync_interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        reconcile_interval_minutes=settings.RECONCILE_INTERVAL_MINUTES,
    )


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        log.info("scheduler.stopped")
    _scheduler = None
