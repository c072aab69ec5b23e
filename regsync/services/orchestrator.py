from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed,
)

from regsync.exceptions import (
    CircuitOpenError, EmptyResultError, SourceError, SourceTimeoutError, UnknownSourceError,
)
from regsync.models import SyncRun
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.schemas import ALL_SOURCES, RunCounts, RunMetadata, SourceOutcome
from regsync.services.circuit import CircuitBreaker
from regsync.services.dedup import INSERT, UPDATE, DedupEngine
from regsync.sources.base import AlertCandidate, SourceAdapter
from regsync.timeutil import utcnow

log = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SourceError) and exc.transient


@dataclass
class SourceReport:
    name: str
    outcome: SourceOutcome = field(default_factory=SourceOutcome)
    warnings: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        if self.outcome.error is None:
            return None
        return f"{self.name}: {self.outcome.error}"

    def fail(self, message: str, kind: str) -> None:
        self.outcome.ok = False
        self.outcome.error = message
        self.outcome.error_kind = kind


def totals(reports: List[SourceReport]) -> RunCounts:
    return RunCounts(
        fetched=sum(r.outcome.fetched for r in reports),
        inserted=sum(r.outcome.inserted for r in reports),
        updated=sum(r.outcome.updated for r in reports),
        skipped=sum(r.outcome.skipped for r in reports),
    )


def terminal_status(reports: List[SourceReport]) -> str:
    failed = [r for r in reports if not r.outcome.ok]
    if len(failed) == len(reports):
        return "failure"
    if not failed and not any(r.error for r in reports):
        return "success"
    return "partial"


class PipelineOrchestrator:
    """
    Drives one ingestion run over a source scope.

    Sources are fetched concurrently (capped by a semaphore), each under its
    own timeout with one retry for transient failures. Candidates of a source
    are resolved in adapter order; a failing source never aborts its siblings.
    """

    def __init__(
        self,
        adapters: Mapping[str, SourceAdapter],
        dedup: DedupEngine,
        ledger: SyncLogLedger,
        *,
        max_concurrency: int = 6,
        source_timeout: float = 45.0,
        retry_backoff: float = 2.0,
        default_since_days: int = 30,
        breaker: Optional[CircuitBreaker] = None,
        on_complete: Optional[Callable[[SyncRun], Awaitable[None]]] = None,
    ):
        self.adapters = {name.upper(): a for name, a in adapters.items()}
        self.dedup = dedup
        self.ledger = ledger
        self.max_concurrency = max(1, max_concurrency)
        self.source_timeout = source_timeout
        self.retry_backoff = retry_backoff
        self.default_since_days = default_since_days
        self.breaker = breaker
        self.on_complete = on_complete

    @property
    def sources(self) -> List[str]:
        return list(self.adapters)

    def select(self, source_scope: str) -> List[SourceAdapter]:
        scope = (source_scope or ALL_SOURCES).strip()
        if scope.lower() == ALL_SOURCES:
            if not self.adapters:
                raise UnknownSourceError("no sources are configured")
            return list(self.adapters.values())
        adapter = self.adapters.get(scope.upper())
        if adapter is None:
            raise UnknownSourceError(
                f"unknown source {source_scope!r}", {"available": self.sources},
            )
        return [adapter]

    async def run(
        self,
        source_scope: str = ALL_SOURCES,
        trigger_type: str = "manual",
        triggered_by: Optional[str] = None,
        since_days: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> SyncRun:
        selected = self.select(source_scope)
        scope = ALL_SOURCES if source_scope.strip().lower() == ALL_SOURCES else selected[0].name
        since_days = since_days or self.default_since_days
        since = utcnow() - timedelta(days=since_days)
        metadata = RunMetadata(since_days=since_days, extra=extra or {})

        run_id = await self.ledger.start(scope, trigger_type, triggered_by, metadata)
        rlog = log.bind(run_id=run_id, scope=scope, trigger=trigger_type)
        rlog.info("sync.run.started", sources=[a.name for a in selected], since_days=since_days)

        t0 = time.monotonic()
        sem = asyncio.Semaphore(min(len(selected), self.max_concurrency))
        reports = [SourceReport(adapter.name) for adapter in selected]
        try:
            await asyncio.gather(
                *(self._run_source(adapter, report, since, sem, run_id)
                  for adapter, report in zip(selected, reports))
            )
        except BaseException as exc:
            # interrupted (shutdown / cancellation); record work done so far, then propagate
            counts = totals(reports)
            metadata.sources = {r.name: r.outcome for r in reports}
            metadata.duration_ms = int((time.monotonic() - t0) * 1000)
            await self.ledger.finish(
                run_id, "failure", counts,
                errors=[f"run aborted: {type(exc).__name__}"] + [r.error for r in reports if r.error],
                warnings=[w for r in reports for w in r.warnings],
                metadata=metadata,
            )
            rlog.error("sync.run.aborted", error=repr(exc), inserted=counts.inserted, updated=counts.updated)
            raise

        counts = totals(reports)
        errors = [r.error for r in reports if r.error]
        warnings = [w for r in reports for w in r.warnings]
        status = terminal_status(reports)
        metadata.sources = {r.name: r.outcome for r in reports}
        metadata.duration_ms = int((time.monotonic() - t0) * 1000)

        run = await self.ledger.finish(run_id, status, counts, errors, warnings, metadata)
        rlog.info(
            "sync.run.finished", status=status, fetched=counts.fetched,
            inserted=counts.inserted, updated=counts.updated, skipped=counts.skipped,
            errors=len(errors), warnings=len(warnings), duration_ms=metadata.duration_ms,
        )

        if self.on_complete is not None:
            try:
                await self.on_complete(run)
            except Exception as exc:
                rlog.warning("sync.run.on_complete_failed", error=str(exc))
        return run

    # ── Per-source work ───────────────────────────────────────────────────────

    async def _run_source(
        self, adapter: SourceAdapter, report: SourceReport, since,
        sem: asyncio.Semaphore, run_id: int,
    ) -> SourceReport:
        name = adapter.name
        slog = log.bind(run_id=run_id, source=name)

        if self.breaker is not None and await self.breaker.is_open(name):
            exc = CircuitOpenError(name, "circuit open after repeated failures; fetch skipped")
            report.fail(exc.detail, exc.kind)
            slog.warning("source.circuit_open")
            return report

        t0 = time.monotonic()
        candidates: List[AlertCandidate] = []
        try:
            candidates = await self._fetch(adapter, since, sem, report)
        except EmptyResultError as exc:
            report.warnings.append(f"{name}: {exc.detail}")
        except SourceError as exc:
            report.fail(exc.detail, exc.kind)
        except Exception as exc:
            slog.exception("source.fetch.crashed")
            report.fail(f"unexpected adapter error: {exc!r}", "adapter")
        report.outcome.duration_ms = int((time.monotonic() - t0) * 1000)

        if report.outcome.error is not None:
            slog.error("source.fetch.failed", error=report.outcome.error,
                       kind=report.outcome.error_kind, attempts=report.outcome.attempts)
            if self.breaker is not None:
                await self.breaker.record_failure(name)
            return report

        if self.breaker is not None:
            await self.breaker.record_success(name)
        report.outcome.ok = True
        report.outcome.fetched = len(candidates)
        slog.info("source.fetch.ok", records=len(candidates),
                  attempts=report.outcome.attempts, duration_ms=report.outcome.duration_ms)

        if not candidates:
            previous = await self.ledger.previous_fetch_count(name)
            if previous:
                report.warnings.append(
                    f"{name}: returned 0 records but the previous successful run fetched {previous}"
                )
            return report

        await self._resolve_all(candidates, report, run_id, slog)
        return report

    async def _fetch(
        self, adapter: SourceAdapter, since, sem: asyncio.Semaphore, report: SourceReport,
    ) -> List[AlertCandidate]:
        candidates: List[AlertCandidate] = []
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                report.outcome.attempts += 1
                async with sem:
                    try:
                        candidates = await asyncio.wait_for(adapter.fetch(since), self.source_timeout)
                    except asyncio.TimeoutError:
                        raise SourceTimeoutError(
                            adapter.name, f"no response within {self.source_timeout:g}s",
                        )
        return candidates

    async def _resolve_all(self, candidates, report: SourceReport, run_id: int, slog) -> None:
        outcome = report.outcome
        for candidate in candidates:
            try:
                resolution = await self.dedup.resolve(candidate, run_id)
            except Exception as exc:
                slog.exception("source.store.failed", external_id=candidate.external_id)
                report.fail(f"storage error while writing {candidate.external_id!r}: {exc}", "storage")
                return
            if resolution.action == INSERT:
                outcome.inserted += 1
            elif resolution.action == UPDATE:
                outcome.updated += 1
            else:
                outcome.skipped += 1
            if resolution.warning:
                report.warnings.append(resolution.warning)
