from sqlalchemy import (
    Column, Integer, String, JSON,
    DateTime, Index, Text, UniqueConstraint,
)
from regsync.database import Base


class AlertRecord(Base):
    __tablename__ = "alerts"

    id              = Column(Integer, primary_key=True)
    source          = Column(String(32), nullable=False)
    external_id     = Column(String(255), nullable=False)
    title           = Column(Text, nullable=False)
    summary         = Column(Text, nullable=True)
    published_date  = Column(DateTime(timezone=True), nullable=False)
    updated_date    = Column(DateTime(timezone=True), nullable=True)
    source_url      = Column(String(1000), nullable=True)
    classification  = Column(String(100), nullable=True)
    urgency         = Column(String(20), nullable=True)     # Critical | High | Medium | Low
    severity        = Column(Integer, nullable=True)        # 0-100
    category        = Column(String(50), nullable=True)
    raw_payload     = Column(JSON, nullable=False, default=dict)
    content_hash    = Column(String(64), nullable=False)    # SHA-256 of identity fields
    last_run_id     = Column(Integer, nullable=True)
    created_at      = Column(DateTime(timezone=True), nullable=False)
    updated_at      = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_alerts_source_external_id"),
        Index("ix_alerts_content_hash", "content_hash"),
        Index("ix_alerts_source_published", "source", "published_date"),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id              = Column(Integer, primary_key=True)
    source_scope    = Column(String(32), nullable=False)    # source name | all
    status          = Column(String(20), nullable=False, default="running")
    started_at      = Column(DateTime(timezone=True), nullable=False)
    finished_at     = Column(DateTime(timezone=True), nullable=True)
    fetched_count   = Column(Integer, nullable=False, default=0)
    inserted_count  = Column(Integer, nullable=False, default=0)
    updated_count   = Column(Integer, nullable=False, default=0)
    skipped_count   = Column(Integer, nullable=False, default=0)
    errors          = Column(JSON, nullable=False, default=list)
    warnings        = Column(JSON, nullable=False, default=list)
    trigger_type    = Column(String(20), nullable=False, default="manual")  # manual | scheduled
    triggered_by    = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    run_metadata    = Column("metadata", JSON, nullable=False, default=dict)
    created_at      = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_sync_runs_source_scope", "source_scope"),
        Index("ix_sync_runs_status", "status"),
        Index("ix_sync_runs_created", "created_at"),
    )
