from __future__ import annotations
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from regsync.auth import current_actor, require_api_key
from regsync.cache import build_key, cache_get, cache_set, record_hit, record_miss
from regsync.config import settings
from regsync.dependencies import (
    get_evaluator, get_ledger, get_orchestrator, get_session_factory,
)
from regsync.repositories.alerts import AlertRepository
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.schemas import ALL_SOURCES, AlertCounts, SyncRequest, SyncRunOut, SyncStatusResponse
from regsync.services.health import SourceHealthEvaluator
from regsync.services.orchestrator import PipelineOrchestrator
from regsync.timeutil import utcnow

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_api_key)])

STATUS_KEY = build_key("status")


async def _trigger(
    orchestrator: PipelineOrchestrator, scope: str, body: Optional[SyncRequest], actor: str,
) -> SyncRunOut:
    run = await orchestrator.run(
        source_scope=scope,
        trigger_type="manual",
        triggered_by=actor,
        since_days=body.since_days if body else None,
    )
    return SyncRunOut.model_validate(run)


@router.post("/manual", response_model=SyncRunOut)
async def sync_manual(
    body: Optional[SyncRequest] = None,
    actor: str = Depends(current_actor),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Run every configured source now and return the finished run."""
    return await _trigger(orchestrator, ALL_SOURCES, body, actor)


@router.post("/all", response_model=SyncRunOut)
async def sync_all(
    body: Optional[SyncRequest] = None,
    actor: str = Depends(current_actor),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await _trigger(orchestrator, ALL_SOURCES, body, actor)


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    background: BackgroundTasks,
    evaluator: SourceHealthEvaluator = Depends(get_evaluator),
    ledger: SyncLogLedger = Depends(get_ledger),
    session_factory=Depends(get_session_factory),
):
    value, is_stale = await cache_get(STATUS_KEY)
    if value is not None:
        await record_hit(stale=is_stale)
        if is_stale:
            background.add_task(_refresh_status, evaluator, ledger, session_factory)
        return SyncStatusResponse(**{**value, "cache_status": "STALE" if is_stale else "HIT"})

    await record_miss()
    out = await _refresh_status(evaluator, ledger, session_factory)
    out.cache_status = "MISS"
    return out


@router.post("/{source}", response_model=SyncRunOut)
async def sync_source(
    source: str,
    body: Optional[SyncRequest] = None,
    actor: str = Depends(current_actor),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await _trigger(orchestrator, source, body, actor)


async def _refresh_status(
    evaluator: SourceHealthEvaluator, ledger: SyncLogLedger, session_factory,
) -> SyncStatusResponse:
    health = await evaluator.evaluate(probe=False)
    async with session_factory() as db:
        repo = AlertRepository(db)
        alerts = AlertCounts(
            total=await repo.count(),
            last_7_days=await repo.count(since=utcnow() - timedelta(days=7)),
            per_source=await repo.per_source_counts(),
            last_successful_sync=await ledger.last_success_at(),
        )
    out = SyncStatusResponse(health=health, alerts=alerts)
    await cache_set(STATUS_KEY, out.model_dump(mode="json"), settings.CACHE_TTL_STATUS)
    return out
