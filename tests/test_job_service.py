# tests/test_job_service.py
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from database.models.job_model import Job, JobKind, JobStatus
from services import job_service
from services.job_queue import InMemoryJobQueue


def _new_job(db, project_id="p1", kind=JobKind.GRAPH_FETCH, total=10):
    job, created = job_service.create_job(db, kind, project_id, "user-1", total, {"selectedOnly": False})
    assert created
    return job.id


def test_single_active_job_per_project_and_kind(db):
    first, created = job_service.create_job(db, JobKind.GRAPH_FETCH, "p1", "u", 5)
    again, created_again = job_service.create_job(db, JobKind.GRAPH_FETCH, "p1", "u", 5)

    assert created is True
    assert created_again is False
    assert again.id == first.id

    # Different kind or project is independent
    _, other_kind = job_service.create_job(db, JobKind.EMBEDDINGS, "p1", "u", 5)
    _, other_project = job_service.create_job(db, JobKind.GRAPH_FETCH, "p2", "u", 5)
    assert other_kind and other_project


def test_partial_index_blocks_second_open_job(db):
    _new_job(db)
    db.add(Job(project_id="p1", kind=JobKind.GRAPH_FETCH.value, status=JobStatus.PENDING.value))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_new_job_allowed_after_terminal(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)
    job_service.complete_job(db, job_id)

    job, created = job_service.create_job(db, JobKind.GRAPH_FETCH, "p1", "u", 3)
    assert created
    assert job.id != job_id


def test_legal_transitions(db):
    job_id = _new_job(db)

    assert job_service.complete_job(db, job_id) is False  # pending -> completed is not allowed
    assert job_service.claim_job(db, job_id) is True
    assert job_service.claim_job(db, job_id) is False
    assert job_service.update_progress(db, job_id, processed=3) is True
    assert job_service.complete_job(db, job_id) is True

    job = job_service.get_job(db, job_id)
    assert job.status == "completed"
    assert job.completed_at is not None


def test_terminal_state_is_final(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)
    job_service.cancel_job(db, "p1", JobKind.GRAPH_FETCH)

    assert job_service.update_progress(db, job_id, processed=5) is False
    assert job_service.complete_job(db, job_id) is False
    assert job_service.fail_job(db, job_id, "late failure") is False
    assert job_service.get_job(db, job_id).status == "cancelled"


def test_cancel_without_active_job_raises(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)
    job_service.complete_job(db, job_id)

    with pytest.raises(job_service.JobNotFoundError):
        job_service.cancel_job(db, "p1", JobKind.GRAPH_FETCH)
    with pytest.raises(job_service.JobNotFoundError):
        job_service.cancel_job(db, "p1", JobKind.GRAPH_FETCH, job_id=job_id)


def test_cancel_by_id_checks_project(db):
    job_id = _new_job(db, project_id="p1", kind=JobKind.EMBEDDINGS)
    with pytest.raises(job_service.JobNotFoundError):
        job_service.cancel_job(db, "other", JobKind.EMBEDDINGS, job_id=job_id)

    assert job_service.cancel_job(db, "p1", JobKind.EMBEDDINGS, job_id=job_id) == job_id
    job = job_service.get_job(db, job_id)
    assert job.cancel_reason == "user_cancelled"
    assert job.cancelled_at is not None


def test_status_without_job(db):
    status = job_service.get_job_status(db, "p1", JobKind.GRAPH_FETCH)
    assert status.has_job is False


def test_stalled_job_is_cancelled_on_read(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)

    later = job_service.utcnow() + timedelta(seconds=job_service.JOB_STALL_TIMEOUT_SECONDS + 30)
    status = job_service.get_job_status(db, "p1", JobKind.GRAPH_FETCH, now=later)

    assert status.status == "cancelled"
    assert status.is_stalled is True
    assert status.cancel_reason == "stalled"
    assert "stalled" in status.error_message

    # A second read is stable and the worker's next write is rejected
    again = job_service.get_job_status(db, "p1", JobKind.GRAPH_FETCH, now=later + timedelta(seconds=5))
    assert again.status == "cancelled"
    assert again.cancel_reason == "stalled"
    assert job_service.update_progress(db, job_id, processed=1) is False


def test_recent_progress_is_not_stalled(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)
    job_service.update_progress(db, job_id, processed=2, phase=job_service.format_phase("references", "2/10 articles"))

    soon = job_service.utcnow() + timedelta(seconds=5)
    status = job_service.get_job_status(db, "p1", JobKind.GRAPH_FETCH, now=soon)

    assert status.status == "running"
    assert status.is_stalled is False
    assert status.current_phase == "references"
    assert status.phase_progress == "2/10 articles"
    assert status.error_message is None
    assert 4 <= status.seconds_since_progress <= 6


def test_pending_job_never_stalls(db):
    _new_job(db)
    later = job_service.utcnow() + timedelta(hours=2)
    status = job_service.get_job_status(db, "p1", JobKind.GRAPH_FETCH, now=later)
    assert status.status == "pending"
    assert status.is_stalled is False


def test_graph_progress_blends_articles_and_ids():
    job = Job(
        kind=JobKind.GRAPH_FETCH.value,
        status="running",
        total_units=10,
        processed_units=4,
        error_count=1,
        fetched_ids=30,
        total_ids_to_fetch=100,
    )
    # 40% of articles -> 20, 30% of ids -> 15
    assert job_service.compute_progress(job) == 35

    job.total_ids_to_fetch = 0
    job.fetched_ids = 0
    assert job_service.compute_progress(job) == 20


def test_embedding_progress_counts_errors():
    job = Job(kind=JobKind.EMBEDDINGS.value, status="running", total_units=8, processed_units=3, error_count=1)
    assert job_service.compute_progress(job) == 50


def test_progress_edges():
    assert job_service.compute_progress(Job(kind="embeddings", status="running", total_units=0)) == 0
    assert job_service.compute_progress(Job(kind="embeddings", status="completed", total_units=0)) == 100


def test_parse_phase():
    assert job_service.parse_phase("[Phase: neighbors] 50/200 ids") == ("neighbors", "50/200 ids")
    assert job_service.parse_phase("[Phase: crossref]") == ("crossref", None)
    assert job_service.parse_phase("plain error text") == (None, None)
    assert job_service.parse_phase(None) == (None, None)


def test_submit_job_enqueues_payload(db):
    queue = InMemoryJobQueue()
    job, created = job_service.submit_job(
        db, JobKind.EMBEDDINGS, "p1", "user-1", 4, {"batchSize": 10}, queue=queue
    )
    assert created

    message = queue.dequeue()
    assert message.kind == "embeddings"
    assert message.payload == {"batchSize": 10, "jobId": job.id, "projectId": "p1", "userId": "user-1"}

    # Second submit returns the open job without enqueuing again
    again, created_again = job_service.submit_job(db, JobKind.EMBEDDINGS, "p1", "user-1", 4, queue=queue)
    assert created_again is False
    assert again.id == job.id
    assert queue.size() == 0


def test_submit_job_marks_failed_when_queue_is_down(db):
    queue = MagicMock()
    queue.enqueue.side_effect = RuntimeError("queue offline")

    with pytest.raises(RuntimeError):
        job_service.submit_job(db, JobKind.GRAPH_FETCH, "p1", "u", 2, queue=queue)

    job = job_service.get_latest_job(db, "p1", JobKind.GRAPH_FETCH)
    assert job.status == "failed"
    assert "queue offline" in job.message
    assert job_service.get_active_job(db, "p1", JobKind.GRAPH_FETCH) is None


def test_cancellation_token_sees_cancel(db):
    job_id = _new_job(db)
    job_service.claim_job(db, job_id)
    token = job_service.CancellationToken(db, job_id)

    assert token.is_cancelled() is False
    job_service.cancel_job(db, "p1", JobKind.GRAPH_FETCH)
    assert token.is_cancelled() is True
