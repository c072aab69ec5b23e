from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from regsync.models import AlertRecord
from regsync.timeutil import as_utc, utcnow

IDENTITY = ("source", "external_id")


def _dialect_insert(dialect: str):
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"upsert not supported on dialect {dialect!r}")
    return insert


class AlertRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(self, values: dict) -> Tuple[str, Optional[int]]:
        """
        Atomic resolve-and-write for one identity. Returns (action, record_id).

        INSERT ... ON CONFLICT DO NOTHING claims the identity; when the row
        already exists, a conditional UPDATE only fires if the content hash
        differs. Neither statement can fork the (source, external_id) key.
        """
        now = utcnow()
        insert = _dialect_insert(self.db.get_bind().dialect.name)

        ins = (
            insert(AlertRecord)
            .values(**values, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=list(IDENTITY))
            .returning(AlertRecord.id)
        )
        inserted_id = (await self.db.execute(ins)).scalar_one_or_none()
        if inserted_id is not None:
            return "insert", inserted_id

        identity = (
            AlertRecord.source == values["source"],
            AlertRecord.external_id == values["external_id"],
        )
        mutable = {k: v for k, v in values.items() if k not in IDENTITY}
        upd = (
            update(AlertRecord)
            .where(*identity, AlertRecord.content_hash != values["content_hash"])
            .values(**mutable, updated_at=now)
            .returning(AlertRecord.id)
            .execution_options(synchronize_session=False)
        )
        updated_id = (await self.db.execute(upd)).scalar_one_or_none()
        if updated_id is not None:
            return "update", updated_id

        existing_id = await self.db.scalar(select(AlertRecord.id).where(*identity))
        return "skip", existing_id

    # ── Read-side aggregates (health + status) ───────────────────────────────

    async def count(self, since: Optional[datetime] = None, source: Optional[str] = None) -> int:
        q = select(func.count(AlertRecord.id))
        if since is not None:
            q = q.where(AlertRecord.published_date >= since)
        if source is not None:
            q = q.where(AlertRecord.source == source)
        return (await self.db.execute(q)).scalar_one()

    async def per_source_counts(self) -> Dict[str, int]:
        rows = await self.db.execute(
            select(AlertRecord.source, func.count(AlertRecord.id)).group_by(AlertRecord.source)
        )
        return {source: cnt for source, cnt in rows.all()}

    async def latest_published(self, source: str) -> Optional[datetime]:
        value = await self.db.scalar(
            select(func.max(AlertRecord.published_date)).where(AlertRecord.source == source)
        )
        return as_utc(value)

    async def duplicate_count(self, source: str) -> int:
        """Rows beyond the first that share a content hash within one source."""
        groups = (
            select(func.count(AlertRecord.id).label("cnt"))
            .where(AlertRecord.source == source)
            .group_by(AlertRecord.content_hash)
            .having(func.count(AlertRecord.id) > 1)
            .subquery()
        )
        total = await self.db.scalar(select(func.coalesce(func.sum(groups.c.cnt - 1), 0)))
        return int(total or 0)
