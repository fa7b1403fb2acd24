# scripts/run_worker.py
# Standalone job runner: consumes graph_fetch / embeddings jobs from the
# database queue, for deployments where the API process does not run workers.
import sys
import os
import time
import logging

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from dotenv import load_dotenv
load_dotenv(".env.local" if os.getenv("APP_ENV", "local") == "local" else ".env")

from database.db import init_db
from services.job_queue import DatabaseJobQueue
from services.job_worker import JobWorker

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def main():
    init_db()
    worker = JobWorker(queue=DatabaseJobQueue())
    worker.start()
    print("🛠️ Job worker running. Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    main()
