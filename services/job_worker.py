# services/job_worker.py
import os
import logging
import threading
from typing import Callable, Dict, List, Optional

from database.models.job_model import JobKind
from services.job_queue import JobQueue, QueuedMessage, get_job_queue

logger = logging.getLogger(__name__)

JOB_WORKER_CONCURRENCY = int(os.getenv("JOB_WORKER_CONCURRENCY", "2"))
JOB_WORKER_POLL_SECONDS = float(os.getenv("JOB_WORKER_POLL_SECONDS", "1.0"))

Handler = Callable[[Dict], None]


def default_handlers() -> Dict[str, Handler]:
    from services.graph_fetch_worker import handle_graph_fetch
    from services.embedding_worker import handle_embeddings

    return {
        JobKind.GRAPH_FETCH.value: handle_graph_fetch,
        JobKind.EMBEDDINGS.value: handle_embeddings,
    }


class JobWorker:
    """
    Pool of threads that pull messages from the queue and run the handler
    registered for the message kind. Jobs never share in-memory state; all
    coordination goes through the job rows.
    """

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        handlers: Optional[Dict[str, Handler]] = None,
        concurrency: int = JOB_WORKER_CONCURRENCY,
        poll_seconds: float = JOB_WORKER_POLL_SECONDS,
    ):
        self.queue = queue or get_job_queue()
        self.handlers = handlers if handlers is not None else default_handlers()
        self.concurrency = max(concurrency, 1)
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def run_once(self) -> bool:
        """Processes at most one message. Returns False when the queue was empty."""
        message: Optional[QueuedMessage] = self.queue.dequeue(self.handlers.keys())
        if message is None:
            return False

        handler = self.handlers.get(message.kind)
        if handler is None:
            logger.error(f"No handler registered for job kind {message.kind!r}")
            self.queue.ack(message, success=False)
            return True

        logger.info(f"📥 Worker picked {message.kind} job {message.payload.get('jobId')}")
        try:
            handler(message.payload)
        except Exception as e:
            logger.error(f"Handler for {message.kind} raised: {e}", exc_info=True)
            self.queue.ack(message, success=False)
            return True

        self.queue.ack(message, success=True)
        return True

    def _loop(self):
        while not self._stop.is_set():
            try:
                worked = self.run_once()
            except Exception as e:
                logger.error(f"Worker loop error: {e}", exc_info=True)
                worked = False
            if not worked:
                self._stop.wait(self.poll_seconds)

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.concurrency):
            thread = threading.Thread(target=self._loop, name=f"job-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"🚀 Started {self.concurrency} job worker thread(s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("🛑 Job workers stopped")
