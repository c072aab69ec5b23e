from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from regsync.models import AlertRecord
from regsync.repositories.sync_runs import RunFilters
from regsync.schemas import RunCounts, RunMetadata, SourceOutcome
from regsync.services.health import SourceHealthEvaluator, rollup
from regsync.sources.registry import SourceProfile
from tests.factories import make_candidate

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

PROFILES = [
    SourceProfile("FDA", 24, "https://probe.test/fda"),
    SourceProfile("FSIS", 12, "https://probe.test/fsis"),
    SourceProfile("EPA", 48, "https://probe.test/epa"),
    SourceProfile("CDC", 72, "https://probe.test/cdc"),
]


def _evaluator(session_factory, ledger, client=None, probe_enabled=False):
    return SourceHealthEvaluator(
        session_factory, ledger, PROFILES,
        client=client, probe_enabled=probe_enabled, clock=lambda: NOW,
    )


async def _seed(dedup, source, hours_ago, external_id=None):
    await dedup.resolve(make_candidate(
        source, external_id or f"{source}-{hours_ago}", published=NOW - timedelta(hours=hours_ago),
    ))


def test_rollup():
    assert rollup(["OK", "OK", "OK"]) == "healthy"
    assert rollup(["OK", "STALE", "OK"]) == "degraded"
    assert rollup(["OK", "AUTH_ERROR", "OK"]) == "critical"
    assert rollup(["STALE", "CONNECTIVITY_ERROR"]) == "critical"
    assert rollup(["OK", "NO_DATA"]) == "critical"
    assert rollup([]) == "healthy"


@pytest.mark.asyncio
async def test_freshness_classification(session_factory, ledger, dedup):
    await _seed(dedup, "FDA", 2)
    await _seed(dedup, "FSIS", 3)
    await _seed(dedup, "EPA", 72)
    await _seed(dedup, "CDC", 10)

    report = await _evaluator(session_factory, ledger).evaluate()
    statuses = {name: h.status for name, h in report.sources.items()}
    assert statuses == {"FDA": "OK", "FSIS": "OK", "EPA": "STALE", "CDC": "OK"}
    assert report.overall_status == "degraded"
    assert report.sources["FDA"].latest_record_timestamp == NOW - timedelta(hours=2)
    assert report.sources["EPA"].freshness_threshold_hours == 48
    assert report.total_alerts_7d == 4
    assert report.checked_at == NOW


@pytest.mark.asyncio
async def test_all_fresh_is_healthy(session_factory, ledger, dedup):
    for p in PROFILES:
        await _seed(dedup, p.name, 1)
    report = await _evaluator(session_factory, ledger).evaluate()
    assert report.overall_status == "healthy"


@pytest.mark.asyncio
async def test_missing_records_is_no_data(session_factory, ledger, dedup):
    for name in ("FDA", "FSIS", "EPA"):
        await _seed(dedup, name, 1)
    report = await _evaluator(session_factory, ledger).evaluate()
    assert report.sources["CDC"].status == "NO_DATA"
    assert report.sources["CDC"].latest_record_timestamp is None
    assert report.overall_status == "critical"


@pytest.mark.asyncio
async def test_ledger_failures_take_precedence_over_freshness(session_factory, ledger, dedup):
    for p in PROFILES:
        await _seed(dedup, p.name, 100)

    run_id = await ledger.start("all")
    await ledger.finish(run_id, "partial", RunCounts(), errors=["FDA: HTTP 403"], metadata=RunMetadata(
        sources={
            "FDA": SourceOutcome(ok=False, error="HTTP 403", error_kind="auth"),
            "EPA": SourceOutcome(ok=False, error="timeout", error_kind="timeout"),
            "FSIS": SourceOutcome(ok=True, fetched=0),
        },
    ))

    report = await _evaluator(session_factory, ledger).evaluate()
    assert report.sources["FDA"].status == "AUTH_ERROR"
    assert report.sources["FDA"].error == "HTTP 403"
    assert report.sources["EPA"].status == "CONNECTIVITY_ERROR"
    assert report.sources["FSIS"].status == "STALE"
    assert report.overall_status == "critical"


@pytest.mark.asyncio
async def test_probe_classifies_reachability(session_factory, ledger, dedup):
    for p in PROFILES:
        await _seed(dedup, p.name, 1)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/fda":
            return httpx.Response(403)
        if request.url.path == "/epa":
            raise httpx.ConnectError("refused", request=request)
        if request.url.path == "/cdc":
            return httpx.Response(500)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        evaluator = _evaluator(session_factory, ledger, client=client, probe_enabled=True)
        report = await evaluator.evaluate()
        ledger_only = await evaluator.evaluate(probe=False)

    assert report.sources["FDA"].status == "AUTH_ERROR"
    assert report.sources["EPA"].status == "CONNECTIVITY_ERROR"
    assert report.sources["CDC"].status == "CONNECTIVITY_ERROR"
    assert report.sources["FSIS"].status == "OK"
    assert report.sources["FSIS"].response_time_ms is not None
    assert ledger_only.overall_status == "healthy"


@pytest.mark.asyncio
async def test_duplicate_count_reports_shared_hashes(session_factory, ledger, dedup):
    await _seed(dedup, "FDA", 1)
    async with session_factory() as db:
        async with db.begin():
            for ext in ("DUP-1", "DUP-2", "DUP-3"):
                db.add(AlertRecord(
                    source="FDA", external_id=ext, title="Same alert", published_date=NOW,
                    raw_payload={}, content_hash="f" * 64, created_at=NOW, updated_at=NOW,
                ))

    report = await _evaluator(session_factory, ledger).evaluate()
    assert report.sources["FDA"].duplicate_count == 2
    assert report.sources["FSIS"].duplicate_count == 0


@pytest.mark.asyncio
async def test_evaluate_performs_no_writes(session_factory, ledger, dedup):
    await _seed(dedup, "FDA", 1)
    await _evaluator(session_factory, ledger).evaluate()

    total, _ = await ledger.search(RunFilters())
    assert total == 0
    async with session_factory() as db:
        assert await db.scalar(select(func.count(AlertRecord.id))) == 1
