# database/models/job_model.py
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index, func, text
from database.db import Base


class JobKind(str, enum.Enum):
    GRAPH_FETCH = "graph_fetch"
    EMBEDDINGS = "embeddings"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CancelReason(str, enum.Enum):
    STALLED = "stalled"
    USER_CANCELLED = "user_cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

_ACTIVE_PREDICATE = text("status IN ('pending', 'running')")


class Job(Base):
    __tablename__ = "background_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    project_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=True)
    kind = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)

    total_units = Column(Integer, nullable=False, default=0)
    processed_units = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)

    # Second progress axis for graph expansion (neighbor ids fetched)
    fetched_ids = Column(Integer, nullable=False, default=0)
    total_ids_to_fetch = Column(Integer, nullable=False, default=0)

    # Phase text while running, error text once terminal
    message = Column(Text, nullable=True)
    cancel_reason = Column(String(32), nullable=True)

    params = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    last_progress_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # Single-flight: one open job per (project, kind)
        Index(
            "uq_background_jobs_active",
            "project_id",
            "kind",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
    )


class QueuedJob(Base):
    __tablename__ = "job_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    state = Column(String(16), nullable=False, default="created", index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
