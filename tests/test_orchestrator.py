import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from regsync.exceptions import (
    EmptyResultError, SourceAuthError, SourceUpstreamError, UnknownSourceError,
)
from regsync.models import AlertRecord, SyncRun
from regsync.services.circuit import CircuitBreaker
from regsync.services.orchestrator import SourceReport, terminal_status
from tests.factories import FakeAdapter, make_candidate


def _batch(source, n):
    return [make_candidate(source, f"{source}-{i}", title=f"{source} alert {i}") for i in range(n)]


async def _count(session_factory, model=AlertRecord, **where):
    async with session_factory() as db:
        q = select(func.count(model.id))
        for k, v in where.items():
            q = q.where(getattr(model, k) == v)
        return await db.scalar(q)


def test_terminal_status_rules():
    ok, bad = SourceReport("A"), SourceReport("B")
    ok.outcome.ok = True
    bad.fail("boom", "network")
    assert terminal_status([ok]) == "success"
    assert terminal_status([ok, bad]) == "partial"
    assert terminal_status([bad]) == "failure"


@pytest.mark.asyncio
async def test_all_sources_succeed(make_orchestrator, session_factory):
    orch = make_orchestrator(FakeAdapter("FDA", _batch("FDA", 3)), FakeAdapter("CDC", _batch("CDC", 2)))
    run = await orch.run(triggered_by="alice")

    assert run.status == "success"
    assert run.source_scope == "all"
    assert (run.fetched_count, run.inserted_count, run.skipped_count) == (5, 5, 0)
    assert run.errors == []
    assert run.triggered_by == "alice"
    assert set(run.run_metadata["sources"]) == {"FDA", "CDC"}
    assert await _count(session_factory) == 5


@pytest.mark.asyncio
async def test_one_failing_source_gives_partial(make_orchestrator, session_factory):
    orch = make_orchestrator(
        FakeAdapter("FDA", _batch("FDA", 3)),
        FakeAdapter("EPA", SourceAuthError("EPA", "HTTP 403: authentication rejected")),
        FakeAdapter("CDC", _batch("CDC", 2)),
    )
    run = await orch.run()

    assert run.status == "partial"
    assert run.errors == ["EPA: HTTP 403: authentication rejected"]
    assert run.inserted_count == 5
    assert await _count(session_factory, source="FDA") == 3
    assert await _count(session_factory, source="CDC") == 2
    assert run.run_metadata["sources"]["EPA"]["error_kind"] == "auth"


@pytest.mark.asyncio
async def test_every_source_failing_gives_failure(make_orchestrator):
    orch = make_orchestrator(
        FakeAdapter("FDA", SourceAuthError("FDA", "HTTP 401")),
        FakeAdapter("EPA", ValueError("adapter bug")),
    )
    run = await orch.run()
    assert run.status == "failure"
    assert len(run.errors) == 2
    assert any(e.startswith("EPA: unexpected adapter error") for e in run.errors)


@pytest.mark.asyncio
async def test_rerun_is_idempotent(make_orchestrator, session_factory):
    orch = make_orchestrator(FakeAdapter("FDA", _batch("FDA", 4)))
    first = await orch.run("FDA")
    second = await orch.run("FDA")

    assert first.inserted_count == 4
    assert (second.inserted_count, second.updated_count, second.skipped_count) == (0, 0, 4)
    assert second.status == "success"
    assert await _count(session_factory) == 4


@pytest.mark.asyncio
async def test_single_source_scope(make_orchestrator):
    fda, epa = FakeAdapter("FDA", _batch("FDA", 1)), FakeAdapter("EPA", _batch("EPA", 1))
    run = await make_orchestrator(fda, epa).run("fda")
    assert run.source_scope == "FDA"
    assert (fda.calls, epa.calls) == (1, 0)


@pytest.mark.asyncio
async def test_unknown_scope_raises_before_ledger_write(make_orchestrator, session_factory):
    orch = make_orchestrator(FakeAdapter("FDA"))
    with pytest.raises(UnknownSourceError):
        await orch.run("NOAA")
    assert await _count(session_factory, SyncRun) == 0


@pytest.mark.asyncio
async def test_transient_error_is_retried_once(make_orchestrator):
    flaky = FakeAdapter("FDA", SourceUpstreamError("FDA", "HTTP 503"), _batch("FDA", 2))
    run = await make_orchestrator(flaky).run()
    assert run.status == "success"
    assert flaky.calls == 2
    assert run.run_metadata["sources"]["FDA"]["attempts"] == 2


@pytest.mark.asyncio
async def test_persistent_transient_error_fails_after_two_attempts(make_orchestrator):
    down = FakeAdapter("FDA", SourceUpstreamError("FDA", "HTTP 503"))
    run = await make_orchestrator(down).run()
    assert run.status == "failure"
    assert down.calls == 2


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(make_orchestrator):
    denied = FakeAdapter("FDA", SourceAuthError("FDA", "HTTP 403"))
    await make_orchestrator(denied).run()
    assert denied.calls == 1


@pytest.mark.asyncio
async def test_timeout_isolates_slow_source(make_orchestrator):
    slow = FakeAdapter("EPA", _batch("EPA", 1), delay=1.0)
    fast = FakeAdapter("FDA", _batch("FDA", 2))
    run = await make_orchestrator(slow, fast, source_timeout=0.05).run()

    assert run.status == "partial"
    assert slow.calls == 2
    assert run.errors == ["EPA: no response within 0.05s"]
    assert run.run_metadata["sources"]["EPA"]["error_kind"] == "timeout"
    assert run.inserted_count == 2


@pytest.mark.asyncio
async def test_concurrency_is_capped(make_orchestrator):
    in_flight, peak = 0, 0

    class Tracking(FakeAdapter):
        async def fetch(self, since):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return []

    adapters = [Tracking(f"S{i}") for i in range(5)]
    await make_orchestrator(*adapters, max_concurrency=2).run()
    assert peak == 2


@pytest.mark.asyncio
async def test_malformed_candidates_become_warnings(make_orchestrator):
    batch = _batch("FDA", 2) + [make_candidate("FDA", None, title="no id")]
    run = await make_orchestrator(FakeAdapter("FDA", batch)).run()
    assert run.status == "success"
    assert run.inserted_count == 2
    assert run.skipped_count == 1
    assert len(run.warnings) == 1 and "malformed" in run.warnings[0]


@pytest.mark.asyncio
async def test_empty_result_is_success_with_warning(make_orchestrator):
    run = await make_orchestrator(FakeAdapter("FDA", EmptyResultError("FDA", "no matches"))).run()
    assert run.status == "success"
    assert run.warnings == ["FDA: no matches"]


@pytest.mark.asyncio
async def test_zero_records_after_nonzero_history_warns(make_orchestrator):
    adapter = FakeAdapter("FDA", _batch("FDA", 3), [])
    orch = make_orchestrator(adapter)
    await orch.run()
    run = await orch.run()
    assert run.status == "success"
    assert run.warnings == ["FDA: returned 0 records but the previous successful run fetched 3"]


@pytest.mark.asyncio
async def test_open_circuit_skips_source(make_orchestrator):
    breaker = CircuitBreaker(failure_threshold=2, recovery_seconds=600)
    down = FakeAdapter("FDA", SourceAuthError("FDA", "HTTP 401"))
    orch = make_orchestrator(down, FakeAdapter("CDC", _batch("CDC", 1)), breaker=breaker)

    await orch.run()
    await orch.run()
    run = await orch.run()
    assert down.calls == 2
    assert run.status == "partial"
    assert run.run_metadata["sources"]["FDA"]["error_kind"] == "circuit_open"


@pytest.mark.asyncio
async def test_cancellation_finishes_run_as_failure(make_orchestrator, ledger, session_factory):
    orch = make_orchestrator(
        FakeAdapter("FDA", _batch("FDA", 3)),
        FakeAdapter("EPA", _batch("EPA", 1), delay=5.0),
        source_timeout=30,
    )
    task = asyncio.create_task(orch.run())
    await asyncio.sleep(0.5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    run = await ledger.get(1)
    assert run.status == "failure"
    assert run.errors == ["run aborted: CancelledError"]
    assert (run.fetched_count, run.inserted_count) == (3, 3)
    assert run.inserted_count == await _count(session_factory, last_run_id=run.id)
    assert run.run_metadata["sources"]["FDA"]["inserted"] == 3
    assert run.run_metadata["sources"]["EPA"]["ok"] is False


@pytest.mark.asyncio
async def test_case_distinct_ids_rerun_as_skips(make_orchestrator, session_factory):
    urls = ["https://www.cdc.gov/x/Alert", "https://www.cdc.gov/x/alert"]
    batch = [make_candidate("CDC", url, title=f"Notice {i}") for i, url in enumerate(urls)]
    orch = make_orchestrator(FakeAdapter("CDC", batch))

    first = await orch.run()
    second = await orch.run()
    assert (first.inserted_count, first.updated_count, first.skipped_count) == (2, 0, 0)
    assert (second.inserted_count, second.updated_count, second.skipped_count) == (0, 0, 2)
    assert await _count(session_factory) == 2


@pytest.mark.asyncio
async def test_completion_hook_receives_finished_run(make_orchestrator):
    seen = []

    async def hook(run):
        seen.append((run.id, run.status))

    run = await make_orchestrator(FakeAdapter("FDA", _batch("FDA", 1)), on_complete=hook).run()
    assert seen == [(run.id, "success")]


@pytest.mark.asyncio
async def test_storage_error_stops_only_that_source(make_orchestrator, dedup):
    real_resolve = dedup.resolve

    async def flaky_resolve(candidate, run_id=None):
        if candidate.external_id == "FDA-1":
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return await real_resolve(candidate, run_id)

    orch = make_orchestrator(FakeAdapter("FDA", _batch("FDA", 3)), FakeAdapter("CDC", _batch("CDC", 2)))
    with patch.object(dedup, "resolve", side_effect=flaky_resolve):
        run = await orch.run()

    assert run.status == "partial"
    fda = run.run_metadata["sources"]["FDA"]
    assert fda["error_kind"] == "storage"
    assert (fda["inserted"], fda["skipped"]) == (1, 0)
    assert run.run_metadata["sources"]["CDC"]["inserted"] == 2
    assert run.errors[0].startswith("FDA: storage error while writing 'FDA-1'")
