from __future__ import annotations
from datetime import timedelta
from typing import Optional

import sqlalchemy
from fastapi import APIRouter, Depends, Query

from regsync.auth import require_api_key
from regsync.cache import (
    KEY_PREFIX, get_cache_stats, invalidate_pattern, ping_redis,
    push_health_snapshot, recent_health_snapshots,
)
from regsync.config import settings
from regsync.dependencies import get_breaker, get_evaluator, get_ledger, get_session_factory
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.schemas import (
    HealthCheckRequest, HealthReport, MetricsResponse, ReconcileResponse, ServiceHealthResponse,
)
from regsync.services.circuit import CircuitBreaker
from regsync.services.health import SourceHealthEvaluator
from regsync.services.scheduler import scheduler_running

router = APIRouter(prefix="/admin", tags=["admin"])
health_router = APIRouter(prefix="/health-check", tags=["health"], dependencies=[Depends(require_api_key)])


@router.get("/health", response_model=ServiceHealthResponse)
async def health(session_factory=Depends(get_session_factory)):
    """Liveness is intentionally unauthenticated for load balancer probes."""
    redis_ok = await ping_redis()
    try:
        async with session_factory() as db:
            await db.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except Exception:
        db_status = "error"

    return ServiceHealthResponse(
        status="ok" if (redis_ok and db_status == "ok") else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "error",
        scheduler="running" if scheduler_running() else "stopped",
        version=settings.APP_VERSION,
    )


@router.get("/metrics", response_model=MetricsResponse, dependencies=[Depends(require_api_key)])
async def metrics(breaker: CircuitBreaker = Depends(get_breaker)):
    stats = await get_cache_stats()
    return MetricsResponse(
        cache_hits=stats["hits"],
        cache_misses=stats["misses"],
        stale_hits=stats["stale_hits"],
        hit_rate=stats["hit_rate"],
        total_requests=stats["total_requests"],
        circuit_breakers=await breaker.status(),
    )


@router.delete("/cache", status_code=204, dependencies=[Depends(require_api_key)])
async def bust_cache():
    await invalidate_pattern(f"{KEY_PREFIX}:*")


@router.get("/sources", dependencies=[Depends(require_api_key)])
async def list_sources(
    evaluator: SourceHealthEvaluator = Depends(get_evaluator),
    breaker: CircuitBreaker = Depends(get_breaker),
):
    circuits = await breaker.status()
    sources = [
        {
            "name": p.name,
            "freshness_threshold_hours": p.freshness_threshold_hours,
            "probe_url": p.probe_url,
            "circuit_open": circuits.get(p.name, {}).get("open", False),
        }
        for p in evaluator.profiles
    ]
    return {"sources": sources, "count": len(sources)}


@router.post("/reconcile", response_model=ReconcileResponse, dependencies=[Depends(require_api_key)])
async def reconcile(
    older_than_minutes: Optional[int] = Query(None, ge=1, alias="olderThanMinutes"),
    ledger: SyncLogLedger = Depends(get_ledger),
):
    minutes = older_than_minutes or settings.STALE_RUN_TIMEOUT_MINUTES
    closed = await ledger.reconcile_abandoned(timedelta(minutes=minutes))
    return ReconcileResponse(reconciled=closed, older_than_minutes=minutes)


# ── Source health checks ──────────────────────────────────────────────────────

@health_router.post("", response_model=HealthReport)
async def run_health_check(
    body: Optional[HealthCheckRequest] = None,
    evaluator: SourceHealthEvaluator = Depends(get_evaluator),
):
    body = body or HealthCheckRequest()
    report = await evaluator.evaluate(probe=body.probe)
    await push_health_snapshot({"trigger": body.trigger, **report.model_dump(mode="json")})
    return report


@health_router.get("/history")
async def health_history(limit: int = Query(10, ge=1, le=50)):
    items = await recent_health_snapshots(limit)
    return {"items": items, "count": len(items)}
