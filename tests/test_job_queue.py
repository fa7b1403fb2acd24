# tests/test_job_queue.py
from unittest.mock import MagicMock

from database.models.job_model import QueuedJob
from services.job_queue import DatabaseJobQueue, InMemoryJobQueue
from services.job_worker import JobWorker


def test_memory_queue_is_fifo_per_kind():
    queue = InMemoryJobQueue()
    queue.enqueue("graph_fetch", {"jobId": "a"})
    queue.enqueue("embeddings", {"jobId": "b"})
    queue.enqueue("graph_fetch", {"jobId": "c"})

    assert queue.dequeue(["embeddings"]).payload["jobId"] == "b"
    assert queue.dequeue().payload["jobId"] == "a"
    assert queue.dequeue(["graph_fetch"]).payload["jobId"] == "c"
    assert queue.dequeue() is None


def test_database_queue_hands_out_each_message_once(db, session_factory):
    queue = DatabaseJobQueue(session_factory=session_factory)
    queue.enqueue("graph_fetch", {"jobId": "a", "projectId": "p1"})
    queue.enqueue("embeddings", {"jobId": "b", "projectId": "p1"})

    assert queue.size() == 2
    first = queue.dequeue(["embeddings"])
    assert first.kind == "embeddings"
    assert first.payload == {"jobId": "b", "projectId": "p1"}
    assert queue.dequeue(["embeddings"]) is None

    queue.ack(first, success=True)
    row = db.get(QueuedJob, first.message_id)
    assert row.state == "completed"
    assert row.completed_at is not None

    second = queue.dequeue()
    assert second.payload["jobId"] == "a"
    queue.ack(second, success=False)
    assert db.get(QueuedJob, second.message_id).state == "failed"
    assert queue.size() == 0


def test_worker_dispatches_by_kind():
    queue = InMemoryJobQueue()
    graph_handler = MagicMock()
    embed_handler = MagicMock()
    worker = JobWorker(queue=queue, handlers={"graph_fetch": graph_handler, "embeddings": embed_handler})

    queue.enqueue("embeddings", {"jobId": "e1"})
    assert worker.run_once() is True
    embed_handler.assert_called_once_with({"jobId": "e1"})
    graph_handler.assert_not_called()
    assert worker.run_once() is False


def test_worker_survives_handler_error():
    queue = MagicMock(wraps=InMemoryJobQueue())
    handler = MagicMock(side_effect=RuntimeError("boom"))
    worker = JobWorker(queue=queue, handlers={"graph_fetch": handler})

    queue.enqueue("graph_fetch", {"jobId": "g1"})
    assert worker.run_once() is True
    queue.ack.assert_called_once()
    assert queue.ack.call_args.kwargs == {"success": False}


def test_worker_ignores_kinds_without_handler():
    queue = InMemoryJobQueue()
    worker = JobWorker(queue=queue, handlers={"graph_fetch": MagicMock()})

    queue.enqueue("embeddings", {"jobId": "e1"})
    assert worker.run_once() is False
    assert queue.size() == 1
