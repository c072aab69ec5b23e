"""Sync Log Ledger: the lifecycle record of every ingestion run.

``start`` inserts a ``running`` row and commits immediately so a crash mid-run
still leaves an inspectable record. ``finish`` moves that single row to a
terminal status exactly once; later calls are no-ops. Referencing an unknown
run id is a contract violation and raises ``UnknownRunError``.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import String, cast, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from regsync.exceptions import InvalidStatusError, UnknownRunError
from regsync.models import SyncRun
from regsync.schemas import (
    ALL_SOURCES, TERMINAL_STATUSES, RunCounts, RunMetadata, SourceOutcome,
)
from regsync.timeutil import as_utc, utcnow

log = structlog.get_logger(__name__)

TRIGGER_TYPES = frozenset({"manual", "scheduled"})

EXPORT_COLUMNS = (
    "id", "source_scope", "status", "trigger_type", "triggered_by",
    "started_at", "finished_at", "duration_ms", "fetched_count",
    "inserted_count", "updated_count", "skipped_count", "errors", "warnings",
)


@dataclass
class RunFilters:
    search: Optional[str] = None
    source: Optional[str] = None
    status: Optional[str] = None
    trigger_type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class SyncLogLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Writes ────────────────────────────────────────────────────────────────

    async def start(
        self,
        source_scope: str,
        trigger_type: str = "manual",
        triggered_by: Optional[str] = None,
        metadata: Optional[RunMetadata] = None,
    ) -> int:
        if trigger_type not in TRIGGER_TYPES:
            raise ValueError(f"trigger_type must be one of {sorted(TRIGGER_TYPES)}")

        now = utcnow()
        run = SyncRun(
            source_scope=source_scope,
            status="running",
            started_at=now,
            created_at=now,
            fetched_count=0,
            inserted_count=0,
            updated_count=0,
            skipped_count=0,
            errors=[],
            warnings=[],
            trigger_type=trigger_type,
            triggered_by=triggered_by,
            run_metadata=(metadata or RunMetadata()).model_dump(mode="json"),
        )
        async with self.session_factory() as db:
            async with db.begin():
                db.add(run)
                await db.flush()
                run_id = run.id
        log.info("ledger.run.started", run_id=run_id, scope=source_scope, trigger=trigger_type)
        return run_id

    async def finish(
        self,
        run_id: int,
        status: str,
        counts: RunCounts,
        errors: Sequence[str] = (),
        warnings: Sequence[str] = (),
        metadata: Optional[RunMetadata] = None,
    ) -> SyncRun:
        if status not in TERMINAL_STATUSES:
            raise InvalidStatusError(
                f"finish() requires a terminal status, got {status!r}", {"run_id": run_id},
            )

        values = {
            "status": status,
            "finished_at": utcnow(),
            "fetched_count": counts.fetched,
            "inserted_count": counts.inserted,
            "updated_count": counts.updated,
            "skipped_count": counts.skipped,
            "errors": list(errors),
            "warnings": list(warnings),
        }
        if metadata is not None:
            values["run_metadata"] = metadata.model_dump(mode="json")

        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(SyncRun)
                    .where(SyncRun.id == run_id, SyncRun.status == "running")
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                transitioned = result.rowcount == 1
                row = await db.get(SyncRun, run_id, populate_existing=True)
                if row is not None:
                    db.expunge(row)

        if row is None:
            raise UnknownRunError(f"sync run {run_id} was never started", {"run_id": run_id})
        if transitioned:
            log.info(
                "ledger.run.finished", run_id=run_id, status=status,
                inserted=counts.inserted, updated=counts.updated,
                skipped=counts.skipped, errors=len(values["errors"]),
            )
        else:
            log.warning("ledger.run.finish_ignored", run_id=run_id, stored=row.status, requested=status)
        return row

    async def reconcile_abandoned(self, max_age: timedelta) -> int:
        """Fail ``running`` rows older than ``max_age``; returns how many were closed."""
        cutoff = utcnow() - max_age
        minutes = int(max_age.total_seconds() // 60)
        closed = 0
        async with self.session_factory() as db:
            async with db.begin():
                stuck = (
                    await db.execute(
                        select(SyncRun).where(SyncRun.status == "running", SyncRun.started_at < cutoff)
                    )
                ).scalars().all()
                for run in stuck:
                    result = await db.execute(
                        update(SyncRun)
                        .where(SyncRun.id == run.id, SyncRun.status == "running")
                        .values(
                            status="failure",
                            finished_at=utcnow(),
                            errors=list(run.errors or []) + [
                                f"abandoned: no terminal status within {minutes} minutes"
                            ],
                        )
                        .execution_options(synchronize_session=False)
                    )
                    closed += result.rowcount
        if closed:
            log.warning("ledger.reconciled", closed=closed, older_than_minutes=minutes)
        return closed

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, run_id: int) -> Optional[SyncRun]:
        async with self.session_factory() as db:
            return await db.get(SyncRun, run_id)

    async def search(
        self, filters: RunFilters, page: int = 1, page_size: int = 50,
    ) -> Tuple[int, List[SyncRun]]:
        conds = self._conditions(filters)
        async with self.session_factory() as db:
            total = (
                await db.execute(select(func.count(SyncRun.id)).where(*conds))
            ).scalar_one()
            rows = (
                await db.execute(
                    select(SyncRun)
                    .where(*conds)
                    .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).scalars().all()
        return total, list(rows)

    async def export_csv(self, filters: RunFilters, limit: int = 10_000) -> str:
        _, rows = await self.search(filters, page=1, page_size=limit)
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(EXPORT_COLUMNS)
        for run in rows:
            started, finished = as_utc(run.started_at), as_utc(run.finished_at)
            duration = int((finished - started).total_seconds() * 1000) if finished else ""
            writer.writerow([
                run.id, run.source_scope, run.status, run.trigger_type, run.triggered_by or "",
                started.isoformat(), finished.isoformat() if finished else "", duration,
                run.fetched_count, run.inserted_count, run.updated_count, run.skipped_count,
                " | ".join(run.errors or []), " | ".join(run.warnings or []),
            ])
        return buf.getvalue()

    async def latest_outcome(self, source: str, ok_only: bool = False) -> Optional[SourceOutcome]:
        """Per-source outcome recorded by the most recent finished run that covered ``source``."""
        statuses = ("success", "partial") if ok_only else tuple(TERMINAL_STATUSES)
        async with self.session_factory() as db:
            runs = (
                await db.execute(
                    select(SyncRun)
                    .where(
                        SyncRun.status.in_(statuses),
                        or_(SyncRun.source_scope == source, SyncRun.source_scope == ALL_SOURCES),
                    )
                    .order_by(SyncRun.finished_at.desc(), SyncRun.id.desc())
                    .limit(25)
                )
            ).scalars().all()
        for run in runs:
            outcome = (run.run_metadata or {}).get("sources", {}).get(source)
            if outcome is None:
                continue
            parsed = SourceOutcome.model_validate(outcome)
            if ok_only and not parsed.ok:
                continue
            return parsed
        return None

    async def previous_fetch_count(self, source: str) -> Optional[int]:
        outcome = await self.latest_outcome(source, ok_only=True)
        return outcome.fetched if outcome else None

    async def last_success_at(self) -> Optional[datetime]:
        async with self.session_factory() as db:
            value = await db.scalar(
                select(func.max(SyncRun.finished_at)).where(SyncRun.status == "success")
            )
        return as_utc(value)

    @staticmethod
    def _conditions(filters: RunFilters) -> list:
        conds = []
        if filters.source:
            source = filters.source.upper()
            conds.append(or_(SyncRun.source_scope == source, SyncRun.source_scope == ALL_SOURCES))
        if filters.status:
            conds.append(SyncRun.status == filters.status)
        if filters.trigger_type:
            conds.append(SyncRun.trigger_type == filters.trigger_type)
        if filters.date_from:
            conds.append(SyncRun.started_at >= as_utc(filters.date_from))
        if filters.date_to:
            conds.append(SyncRun.started_at <= as_utc(filters.date_to))
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            conds.append(or_(
                SyncRun.source_scope.ilike(pattern),
                SyncRun.triggered_by.ilike(pattern),
                cast(SyncRun.errors, String).ilike(pattern),
                cast(SyncRun.warnings, String).ilike(pattern),
            ))
        return conds
