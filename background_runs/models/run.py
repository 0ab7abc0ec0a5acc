"""Background run model."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, Text, Uuid, text

from background_runs.database import Base, JSONType
from background_runs.services.timestamps import utcnow


class BackgroundRun(Base):
    """BackgroundRun is one durable unit of asynchronous work."""

    __tablename__ = "background_runs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(Text, nullable=False)
    user_id = Column(Text, nullable=False)
    run_type = Column(Text, nullable=False)  # selects the executor, e.g. 'webhook'
    status = Column(Text, nullable=False, default="queued")  # 'queued', 'running', 'succeeded', 'failed', 'cancelled'
    input = Column(JSONType, nullable=False, default=dict)
    run_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    output = Column(JSONType)
    idempotency_key = Column(Text)
    retryable = Column(Boolean, nullable=False, default=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    last_heartbeat_at = Column(DateTime)
    next_retry_at = Column(DateTime)
    error_message = Column(Text)
    progress = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')",
            name="ck_background_runs_status",
        ),
        CheckConstraint("attempt_count >= 0", name="ck_background_runs_attempt_count"),
        CheckConstraint("max_attempts >= 1 AND max_attempts <= 10", name="ck_background_runs_max_attempts"),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_background_runs_progress"),
        Index("idx_background_runs_project", "project_id"),
        Index("idx_background_runs_user", "user_id"),
        Index("idx_background_runs_status", "status"),
        Index("idx_background_runs_created", "created_at"),
        Index("idx_background_runs_retry_at", "next_retry_at"),
        Index(
            "idx_background_runs_idempotency",
            "project_id",
            "user_id",
            "run_type",
            "idempotency_key",
            unique=True,
            sqlite_where=text("idempotency_key IS NOT NULL"),
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
    )
