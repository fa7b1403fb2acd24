# services/job_service.py
"""
Durable job lifecycle: pending -> running -> completed | cancelled | failed.

Every transition is a guarded UPDATE (`WHERE status IN (...)`), so a writer
holding a stale view can never move a job out of a terminal state. Liveness
is judged only from `last_progress_at`; a running job that stops advancing it
is cancelled as stalled by the next status read.
"""
import os
import re
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.models.job_models import JobStatusResponse
from database.models.job_model import (
    Job,
    JobKind,
    JobStatus,
    CancelReason,
    ACTIVE_STATUSES,
)
from services.job_queue import JobQueue, get_job_queue

logger = logging.getLogger(__name__)

JOB_STALL_TIMEOUT_SECONDS = int(os.getenv("JOB_STALL_TIMEOUT_SECONDS", "60"))

PHASE_RE = re.compile(r"^\[Phase:\s*([^\]]+)\]\s*(.*)$", re.DOTALL)


class JobNotFoundError(Exception):
    """No job in a state the requested operation applies to."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_phase(phase: str, detail: str = "") -> str:
    return f"[Phase: {phase}] {detail}".strip()


def parse_phase(message: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not message:
        return None, None
    match = PHASE_RE.match(message)
    if not match:
        return None, None
    return match.group(1).strip(), (match.group(2).strip() or None)


# ---------------------------------------------------------
# Reads
# ---------------------------------------------------------

def get_job(db: Session, job_id: str) -> Optional[Job]:
    return db.query(Job).filter(Job.id == job_id).one_or_none()


def get_active_job(db: Session, project_id: str, kind: JobKind) -> Optional[Job]:
    return (
        db.query(Job)
        .filter(Job.project_id == project_id, Job.kind == kind.value, Job.status.in_(ACTIVE_STATUSES))
        .order_by(Job.created_at.desc())
        .first()
    )


def get_latest_job(db: Session, project_id: str, kind: JobKind) -> Optional[Job]:
    return (
        db.query(Job)
        .filter(Job.project_id == project_id, Job.kind == kind.value)
        .order_by(Job.created_at.desc())
        .first()
    )


def list_jobs(db: Session, project_id: str, kind: JobKind, limit: int = 10) -> List[Job]:
    return (
        db.query(Job)
        .filter(Job.project_id == project_id, Job.kind == kind.value)
        .order_by(Job.created_at.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------
# Transitions
# ---------------------------------------------------------

def create_job(
    db: Session,
    kind: JobKind,
    project_id: str,
    user_id: Optional[str],
    total_units: int,
    params: Optional[Dict[str, Any]] = None,
) -> Tuple[Job, bool]:
    """
    Inserts a pending job unless one is already open for (project, kind).
    Returns (job, created). The partial unique index makes the insert
    conditional, so two racing creators still end up with a single row.
    """
    existing = get_active_job(db, project_id, kind)
    if existing:
        logger.info(f"Job {existing.id} ({kind.value}) already active for project {project_id}")
        return existing, False

    job = Job(
        project_id=project_id,
        user_id=user_id,
        kind=kind.value,
        status=JobStatus.PENDING.value,
        total_units=total_units,
        params=params or {},
    )
    try:
        with db.begin_nested():
            db.add(job)
            db.flush()
    except IntegrityError:
        existing = get_active_job(db, project_id, kind)
        if existing is None:
            raise
        logger.info(f"Lost job creation race for project {project_id}; reusing {existing.id}")
        return existing, False

    db.commit()
    logger.info(f"🆕 Created {kind.value} job {job.id} for project {project_id} ({total_units} units)")
    return job, True


def submit_job(
    db: Session,
    kind: JobKind,
    project_id: str,
    user_id: Optional[str],
    total_units: int,
    params: Optional[Dict[str, Any]] = None,
    queue: Optional[JobQueue] = None,
) -> Tuple[Job, bool]:
    """
    create_job + hand-off to the queue. A job whose payload cannot be
    enqueued is marked failed and the error is re-raised.
    """
    job, created = create_job(db, kind, project_id, user_id, total_units, params)
    if not created:
        return job, False

    payload = {**(params or {}), "jobId": job.id, "projectId": project_id, "userId": user_id}
    try:
        (queue or get_job_queue()).enqueue(kind.value, payload)
    except Exception as e:
        logger.error(f"Failed to enqueue job {job.id}: {e}", exc_info=True)
        fail_job(db, job.id, f"Queue unavailable: {e}")
        raise
    return job, True


def _transition(db: Session, job_id: str, from_statuses, values: Dict[str, Any]) -> bool:
    rows = (
        db.query(Job)
        .filter(Job.id == job_id, Job.status.in_(list(from_statuses)))
        .update(values, synchronize_session=False)
    )
    # commit also expires loaded Job instances, so they reload the new row
    db.commit()
    return rows > 0


def claim_job(db: Session, job_id: str) -> bool:
    now = utcnow()
    claimed = _transition(
        db,
        job_id,
        [JobStatus.PENDING.value],
        {"status": JobStatus.RUNNING.value, "started_at": now, "last_progress_at": now},
    )
    if claimed:
        logger.info(f"▶️ Job {job_id} claimed")
    else:
        logger.info(f"Job {job_id} was not pending when claimed; skipping")
    return claimed


def update_progress(
    db: Session,
    job_id: str,
    processed: Optional[int] = None,
    errors: Optional[int] = None,
    total: Optional[int] = None,
    fetched_ids: Optional[int] = None,
    total_ids: Optional[int] = None,
    phase: Optional[str] = None,
) -> bool:
    """
    Records progress and stamps `last_progress_at`. Only applies while the job
    is running; returns False once it is not, which doubles as the worker's
    cancellation checkpoint.
    """
    values: Dict[str, Any] = {"last_progress_at": utcnow()}
    if processed is not None:
        values["processed_units"] = processed
    if errors is not None:
        values["error_count"] = errors
    if total is not None:
        values["total_units"] = total
    if fetched_ids is not None:
        values["fetched_ids"] = fetched_ids
    if total_ids is not None:
        values["total_ids_to_fetch"] = total_ids
    if phase is not None:
        values["message"] = phase
    return _transition(db, job_id, [JobStatus.RUNNING.value], values)


def complete_job(db: Session, job_id: str) -> bool:
    now = utcnow()
    done = _transition(
        db,
        job_id,
        [JobStatus.RUNNING.value],
        {"status": JobStatus.COMPLETED.value, "completed_at": now, "last_progress_at": now, "message": None},
    )
    if done:
        logger.info(f"✅ Job {job_id} completed")
    return done


def fail_job(db: Session, job_id: str, error: str) -> bool:
    failed = _transition(
        db,
        job_id,
        ACTIVE_STATUSES,
        {"status": JobStatus.FAILED.value, "completed_at": utcnow(), "message": error[:2000]},
    )
    if failed:
        logger.error(f"❌ Job {job_id} failed: {error}")
    return failed


def cancel_job(db: Session, project_id: str, kind: JobKind, job_id: Optional[str] = None) -> str:
    """
    User cancellation. Raises JobNotFoundError when there is no open job,
    including when the target already reached a terminal state.
    """
    target = get_job(db, job_id) if job_id else get_active_job(db, project_id, kind)
    if target is None or target.project_id != project_id or target.kind != kind.value:
        raise JobNotFoundError("No active job found")

    now = utcnow()
    cancelled = _transition(
        db,
        target.id,
        ACTIVE_STATUSES,
        {
            "status": JobStatus.CANCELLED.value,
            "cancel_reason": CancelReason.USER_CANCELLED.value,
            "cancelled_at": now,
            "completed_at": now,
        },
    )
    if not cancelled:
        raise JobNotFoundError("No active job found")

    logger.info(f"🛑 Job {target.id} cancelled by user")
    return target.id


def _stall_if_needed(db: Session, job: Job, now: datetime) -> bool:
    if job.status != JobStatus.RUNNING.value:
        return False

    last_beat = as_utc(job.last_progress_at or job.started_at)
    if last_beat is None:
        return False

    idle = (now - last_beat).total_seconds()
    if idle <= JOB_STALL_TIMEOUT_SECONDS:
        return False

    stalled = _transition(
        db,
        job.id,
        [JobStatus.RUNNING.value],
        {
            "status": JobStatus.CANCELLED.value,
            "cancel_reason": CancelReason.STALLED.value,
            "cancelled_at": now,
            "completed_at": now,
            "message": (
                f"Job stalled: no progress for {int(idle)}s. "
                "It was automatically cancelled; start a new one."
            ),
        },
    )
    if stalled:
        logger.warning(f"⚠️ Job {job.id} stalled after {int(idle)}s without progress; cancelled")
    db.refresh(job)
    return stalled


# ---------------------------------------------------------
# Status read
# ---------------------------------------------------------

def compute_progress(job: Job) -> int:
    if job.status == JobStatus.COMPLETED.value:
        return 100

    total = job.total_units or 0
    if total <= 0:
        return 0

    processed = job.processed_units or 0
    if job.kind == JobKind.GRAPH_FETCH.value:
        article_ratio = min(processed / total, 1.0)
        ids_ratio = min((job.fetched_ids or 0) / max(job.total_ids_to_fetch or 0, 1), 1.0)
        pct = round(article_ratio * 50 + ids_ratio * 50)
    else:
        pct = round((processed + (job.error_count or 0)) / total * 100)

    return max(0, min(100, pct))


def get_job_status(
    db: Session,
    project_id: str,
    kind: JobKind,
    job_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> JobStatusResponse:
    """
    Reads the requested (or latest) job for the project. A running job that
    has been silent past the stall threshold is cancelled as a side effect.
    """
    job = get_job(db, job_id) if job_id else get_latest_job(db, project_id, kind)
    if job is None or job.project_id != project_id or job.kind != kind.value:
        return JobStatusResponse(has_job=False)

    now = now or utcnow()
    _stall_if_needed(db, job, now)

    started = as_utc(job.started_at or job.created_at)
    finished = as_utc(job.completed_at)
    elapsed = int(((finished or now) - started).total_seconds()) if started else None

    last_beat = as_utc(job.last_progress_at or job.started_at)
    since_progress = int((now - last_beat).total_seconds()) if last_beat else None

    running = job.status == JobStatus.RUNNING.value
    phase, phase_detail = parse_phase(job.message) if running else (None, None)

    return JobStatusResponse(
        has_job=True,
        job_id=job.id,
        status=job.status,
        progress=compute_progress(job),
        total_units=job.total_units or 0,
        processed_units=job.processed_units or 0,
        error_count=job.error_count or 0,
        elapsed_seconds=max(elapsed, 0) if elapsed is not None else None,
        error_message=None if running else job.message,
        is_stalled=job.cancel_reason == CancelReason.STALLED.value,
        cancel_reason=job.cancel_reason,
        current_phase=phase,
        phase_progress=phase_detail,
        seconds_since_progress=since_progress,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


class CancellationToken:
    """
    Cooperative cancellation for worker loops. Workers call `is_cancelled()`
    before every external request; it re-reads the job status.
    """

    def __init__(self, db: Session, job_id: str):
        self._db = db
        self.job_id = job_id
        self._cancelled = False

    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        status = self._db.query(Job.status).filter(Job.id == self.job_id).scalar()
        if status != JobStatus.RUNNING.value:
            logger.info(f"Job {self.job_id} is {status}; stopping worker loop")
            self._cancelled = True
        return self._cancelled
