from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from regsync.repositories.alerts import AlertRepository
from regsync.services.fingerprint import (
    candidate_hash, normalize_external_id, normalize_source, normalize_text,
)
from regsync.sources.base import AlertCandidate
from regsync.timeutil import as_utc

log = structlog.get_logger(__name__)

INSERT, UPDATE, SKIP = "insert", "update", "skip"

REQUIRED_FIELDS = ("source", "external_id", "title", "published_date")


@dataclass(frozen=True)
class Resolution:
    action: str
    record_id: Optional[int] = None
    content_hash: Optional[str] = None
    warning: Optional[str] = None


def missing_fields(candidate: AlertCandidate) -> list:
    missing = []
    for name in REQUIRED_FIELDS:
        value = getattr(candidate, name)
        if value is None or (isinstance(value, str) and not normalize_text(value)):
            missing.append(name)
    return missing


class DedupEngine:
    """
    Resolves candidates against the canonical alert store.

    Each ``resolve`` runs in its own short transaction, so a candidate's
    outcome is durable as soon as it is reported and a crash mid-batch never
    leaves half-written identities behind.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, candidate: AlertCandidate, run_id: Optional[int] = None) -> Resolution:
        missing = missing_fields(candidate)
        if missing:
            ref = candidate.external_id or candidate.title or "<unidentified>"
            warning = f"{candidate.source or '?'}: skipped malformed record {ref!r} (missing {', '.join(missing)})"
            log.warning("dedup.malformed", source=candidate.source, missing=missing)
            return Resolution(action=SKIP, warning=warning)

        digest = candidate_hash(candidate)
        values = {
            "source": normalize_source(candidate.source),
            "external_id": normalize_external_id(candidate.external_id),
            "title": normalize_text(candidate.title),
            "summary": normalize_text(candidate.summary) or None,
            "published_date": as_utc(candidate.published_date),
            "updated_date": as_utc(candidate.updated_date),
            "source_url": candidate.source_url,
            "classification": candidate.classification,
            "urgency": candidate.urgency,
            "severity": candidate.severity,
            "category": candidate.category,
            "raw_payload": candidate.raw_payload or {},
            "content_hash": digest,
            "last_run_id": run_id,
        }

        async with self.session_factory() as db:
            async with db.begin():
                action, record_id = await AlertRepository(db).upsert(values)

        log.debug("dedup.resolved", source=values["source"], external_id=values["external_id"], action=action)
        return Resolution(action=action, record_id=record_id, content_hash=digest)
