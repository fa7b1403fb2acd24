# services/job_queue.py
"""
Queue abstraction between job creation and the workers.

The lifecycle engine only ever calls `enqueue(kind, payload)`; workers call
`dequeue()` and `ack()`. Delivery is at-most-once: a message is marked active
as it is handed out and is not redelivered if the worker dies, which is fine
because a dead worker's job is cancelled as stalled on the next status read.
"""
import os
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, Optional

from database.db import SessionLocal
from database.models.job_model import QueuedJob

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    kind: str
    payload: Dict[str, Any]
    message_id: Optional[int] = None


class JobQueue(ABC):
    @abstractmethod
    def enqueue(self, kind: str, payload: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def dequeue(self, kinds: Optional[Iterable[str]] = None) -> Optional[QueuedMessage]:
        """Next message for one of `kinds` (any kind when None), or None when empty."""
        ...

    def ack(self, message: QueuedMessage, success: bool = True) -> None:
        pass


class InMemoryJobQueue(JobQueue):
    """Process-local FIFO. Suitable for a single API process running its own workers."""

    def __init__(self) -> None:
        self._queue: Deque[QueuedMessage] = deque()
        self._lock = threading.Lock()

    def enqueue(self, kind: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._queue.append(QueuedMessage(kind=kind, payload=dict(payload)))

    def dequeue(self, kinds: Optional[Iterable[str]] = None) -> Optional[QueuedMessage]:
        wanted = set(kinds) if kinds else None
        with self._lock:
            for message in list(self._queue):
                if wanted is None or message.kind in wanted:
                    self._queue.remove(message)
                    return message
        return None

    def size(self) -> int:
        with self._lock:
            return len(self._queue)


class DatabaseJobQueue(JobQueue):
    """
    Durable queue on the `job_queue` table. On PostgreSQL concurrent consumers
    use SELECT ... FOR UPDATE SKIP LOCKED so a message is handed out once.
    """

    def __init__(self, session_factory=SessionLocal) -> None:
        self._session_factory = session_factory

    def enqueue(self, kind: str, payload: Dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            db.add(QueuedJob(name=kind, payload=payload, state="created"))
            db.commit()
        finally:
            db.close()

    def dequeue(self, kinds: Optional[Iterable[str]] = None) -> Optional[QueuedMessage]:
        db = self._session_factory()
        try:
            query = db.query(QueuedJob).filter(QueuedJob.state == "created")
            if kinds:
                query = query.filter(QueuedJob.name.in_(list(kinds)))
            query = query.order_by(QueuedJob.id)
            if db.get_bind().dialect.name == "postgresql":
                query = query.with_for_update(skip_locked=True)

            row = query.first()
            if row is None:
                db.rollback()
                return None

            row.state = "active"
            row.started_at = datetime.now(timezone.utc)
            message = QueuedMessage(kind=row.name, payload=dict(row.payload or {}), message_id=row.id)
            db.commit()
            return message
        finally:
            db.close()

    def ack(self, message: QueuedMessage, success: bool = True) -> None:
        if message.message_id is None:
            return
        db = self._session_factory()
        try:
            db.query(QueuedJob).filter(QueuedJob.id == message.message_id).update(
                {"state": "completed" if success else "failed", "completed_at": datetime.now(timezone.utc)},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    def size(self) -> int:
        db = self._session_factory()
        try:
            return db.query(QueuedJob).filter(QueuedJob.state == "created").count()
        finally:
            db.close()


# -----------------------
# Singleton accessor
# -----------------------
_queue: Optional[JobQueue] = None
_queue_lock = threading.Lock()


def get_job_queue() -> JobQueue:
    global _queue
    if _queue is None:
        with _queue_lock:
            if _queue is None:
                backend = os.getenv("JOB_QUEUE_BACKEND", "database").lower()
                if backend == "memory":
                    _queue = InMemoryJobQueue()
                else:
                    _queue = DatabaseJobQueue()
                logger.info(f"Job queue backend: {backend}")
    return _queue
