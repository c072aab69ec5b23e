from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, Optional, Sequence

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from regsync.repositories.alerts import AlertRepository
from regsync.repositories.sync_runs import SyncLogLedger
from regsync.schemas import HealthReport, SourceHealthOut
from regsync.sources.registry import SourceProfile
from regsync.timeutil import utcnow

log = structlog.get_logger(__name__)

UNREACHABLE = frozenset({"AUTH_ERROR", "CONNECTIVITY_ERROR"})
CRITICAL = UNREACHABLE | {"NO_DATA"}

# outcome kinds that say nothing about whether the agency is reachable
_LOCAL_KINDS = frozenset({"storage", "adapter", "empty"})


@dataclass
class Reachability:
    status: Optional[str] = None         # None = reachable
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


def rollup(statuses: Iterable[str]) -> str:
    statuses = list(statuses)
    if any(s in CRITICAL for s in statuses):
        return "critical"
    if any(s == "STALE" for s in statuses):
        return "degraded"
    return "healthy"


class SourceHealthEvaluator:
    """
    Read-only classification of every configured source.

    Reachability comes from a live probe when enabled, otherwise from the
    outcome the ledger recorded for the source on its latest run. Freshness
    and duplication come from the alert store.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: SyncLogLedger,
        profiles: Sequence[SourceProfile],
        *,
        client: Optional[httpx.AsyncClient] = None,
        probe_enabled: bool = True,
        probe_timeout: float = 10.0,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.profiles = list(profiles)
        self.client = client
        self.probe_enabled = probe_enabled
        self.probe_timeout = probe_timeout
        self.clock = clock

    async def evaluate(self, probe: Optional[bool] = None) -> HealthReport:
        use_probe = self.probe_enabled if probe is None else probe
        use_probe = use_probe and self.client is not None
        now = self.clock()

        reach = await asyncio.gather(*(self._reachability(p, use_probe) for p in self.profiles))

        sources: Dict[str, SourceHealthOut] = {}
        async with self.session_factory() as db:
            repo = AlertRepository(db)
            week_ago = now - timedelta(days=7)
            total_7d = await repo.count(since=week_ago)
            for profile, r in zip(self.profiles, reach):
                latest = await repo.latest_published(profile.name)
                sources[profile.name] = SourceHealthOut(
                    source=profile.name,
                    status=self._classify(profile, r, latest, now),
                    latest_record_timestamp=latest,
                    records_last_7_days=await repo.count(since=week_ago, source=profile.name),
                    duplicate_count=await repo.duplicate_count(profile.name),
                    response_time_ms=r.response_time_ms,
                    freshness_threshold_hours=profile.freshness_threshold_hours,
                    error=r.error,
                )

        overall = rollup(h.status for h in sources.values())
        log.info(
            "health.evaluated", overall=overall, probed=use_probe,
            statuses={name: h.status for name, h in sources.items()},
        )
        return HealthReport(
            sources=sources, overall_status=overall, checked_at=now, total_alerts_7d=total_7d,
        )

    @staticmethod
    def _classify(profile: SourceProfile, reach: Reachability, latest, now) -> str:
        if reach.status in UNREACHABLE:
            return reach.status
        if latest is None:
            return "NO_DATA"
        if now - latest > timedelta(hours=profile.freshness_threshold_hours):
            return "STALE"
        return "OK"

    async def _reachability(self, profile: SourceProfile, use_probe: bool) -> Reachability:
        if use_probe and profile.probe_url:
            return await self._probe(profile)
        return await self._from_ledger(profile)

    async def _probe(self, profile: SourceProfile) -> Reachability:
        t0 = time.monotonic()
        try:
            resp = await self.client.get(profile.probe_url, timeout=self.probe_timeout)
        except httpx.HTTPError as exc:
            log.warning("health.probe.failed", source=profile.name, error=repr(exc))
            return Reachability("CONNECTIVITY_ERROR", error=f"connectivity error: {exc!r}")
        ms = int((time.monotonic() - t0) * 1000)

        if resp.status_code in (401, 403):
            return Reachability("AUTH_ERROR", ms, f"authentication error: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            return Reachability("CONNECTIVITY_ERROR", ms, f"HTTP {resp.status_code}")
        return Reachability(None, ms)

    async def _from_ledger(self, profile: SourceProfile) -> Reachability:
        outcome = await self.ledger.latest_outcome(profile.name)
        if outcome is None or outcome.ok or outcome.error_kind in _LOCAL_KINDS:
            return Reachability(None, outcome.duration_ms if outcome else None)
        status = "AUTH_ERROR" if outcome.error_kind == "auth" else "CONNECTIVITY_ERROR"
        return Reachability(status, outcome.duration_ms, outcome.error)
