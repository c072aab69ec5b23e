from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import AliasChoices, BaseModel, Field, field_validator

from regsync.timeutil import as_utc

RunStatus = Literal["running", "success", "partial", "failure"]
TriggerType = Literal["manual", "scheduled"]
HealthStatus = Literal["OK", "STALE", "AUTH_ERROR", "CONNECTIVITY_ERROR", "NO_DATA"]
OverallStatus = Literal["healthy", "degraded", "critical"]

TERMINAL_STATUSES = frozenset({"success", "partial", "failure"})
ALL_SOURCES = "all"


# ── Run envelope ──────────────────────────────────────────────────────────────

class SourceOutcome(BaseModel):
    ok: bool = False
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    duration_ms: int = 0
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None


class RunMetadata(BaseModel):
    """Typed envelope stored in ``sync_runs.metadata``; unknown keys go to ``extra``."""
    since_days: Optional[int] = None
    sources: Dict[str, SourceOutcome] = Field(default_factory=dict)
    duration_ms: Optional[int] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class RunCounts(BaseModel):
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


# ── Control surface ───────────────────────────────────────────────────────────

class SyncRequest(BaseModel):
    since_days: Optional[int] = Field(
        None, ge=1, le=365, validation_alias=AliasChoices("sinceDays", "since_days"),
    )


class SyncRunOut(BaseModel):
    id: int
    source_scope: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    fetched_count: int
    inserted_count: int
    updated_count: int
    skipped_count: int
    errors: List[str]
    warnings: List[str]
    trigger_type: TriggerType
    triggered_by: Optional[str] = None
    metadata: RunMetadata = Field(
        default_factory=RunMetadata,
        validation_alias=AliasChoices("run_metadata", "metadata"),
    )
    model_config = {"from_attributes": True}

    @field_validator("started_at", "finished_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class PaginatedRuns(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[SyncRunOut]


# ── Health ────────────────────────────────────────────────────────────────────

class SourceHealthOut(BaseModel):
    source: str
    status: HealthStatus
    latest_record_timestamp: Optional[datetime] = None
    records_last_7_days: int = 0
    duplicate_count: int = 0
    response_time_ms: Optional[int] = None
    freshness_threshold_hours: int
    error: Optional[str] = None


class HealthReport(BaseModel):
    sources: Dict[str, SourceHealthOut]
    overall_status: OverallStatus
    checked_at: datetime
    total_alerts_7d: int = 0


class HealthCheckRequest(BaseModel):
    trigger: str = "manual"
    probe: Optional[bool] = None


class AlertCounts(BaseModel):
    total: int
    last_7_days: int
    per_source: Dict[str, int]
    last_successful_sync: Optional[datetime] = None


class SyncStatusResponse(BaseModel):
    health: HealthReport
    alerts: AlertCounts
    cache_status: Optional[str] = None     # HIT | MISS | STALE


# ── Admin ─────────────────────────────────────────────────────────────────────

class ServiceHealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str


class MetricsResponse(BaseModel):
    cache_hits: int
    cache_misses: int
    stale_hits: int
    hit_rate: float
    total_requests: int
    circuit_breakers: dict


class ReconcileResponse(BaseModel):
    reconciled: int
    older_than_minutes: int
