from __future__ import annotations
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from regsync.auth import require_api_key
from regsync.dependencies import get_ledger
from regsync.exceptions import NotFoundError
from regsync.repositories.sync_runs import RunFilters, SyncLogLedger
from regsync.schemas import PaginatedRuns, RunStatus, SyncRunOut, TriggerType
from regsync.timeutil import utcnow

router = APIRouter(prefix="/logs", tags=["logs"], dependencies=[Depends(require_api_key)])


def run_filters(
    search: Optional[str] = Query(None, max_length=200),
    source: Optional[str] = Query(None, max_length=32),
    status: Optional[RunStatus] = Query(None),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    trigger_type: Optional[TriggerType] = Query(None, alias="triggerType"),
) -> RunFilters:
    return RunFilters(
        search=search or None,
        source=source or None,
        status=status,
        trigger_type=trigger_type,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("", response_model=PaginatedRuns)
async def list_runs(
    filters: RunFilters = Depends(run_filters),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200, alias="pageSize"),
    ledger: SyncLogLedger = Depends(get_ledger),
):
    total, rows = await ledger.search(filters, page, page_size)
    return PaginatedRuns(
        total=total, page=page, page_size=page_size,
        items=[SyncRunOut.model_validate(r) for r in rows],
    )


@router.get("/export")
async def export_runs(
    filters: RunFilters = Depends(run_filters),
    ledger: SyncLogLedger = Depends(get_ledger),
):
    body = await ledger.export_csv(filters)
    filename = f"sync_logs_{utcnow():%Y%m%dT%H%M%SZ}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{run_id}", response_model=SyncRunOut)
async def get_run(run_id: int, ledger: SyncLogLedger = Depends(get_ledger)):
    run = await ledger.get(run_id)
    if run is None:
        raise NotFoundError(f"Sync run {run_id} not found", {"run_id": run_id})
    return SyncRunOut.model_validate(run)
