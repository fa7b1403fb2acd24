# api/main.py
from dotenv import load_dotenv
import os

env = os.getenv("APP_ENV", "local")
if env == "local":
    load_dotenv(".env.local")
else:
    load_dotenv(".env")

from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging
from database.db import init_db
from fastapi.middleware.cors import CORSMiddleware

from api.routers import (
    health,
    search,
    graph_jobs,
    embeddings,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)
logger.info(f"🔧 Loaded environment: {env}")

RUN_JOB_WORKERS = os.getenv("RUN_JOB_WORKERS", "true").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting literature pipeline API, initializing DB")
    try:
        init_db()
    except Exception as e:
        logger.error(f"❌ Failed to initialize database: {e}", exc_info=True)
        raise

    worker = None
    if RUN_JOB_WORKERS:
        from services.job_worker import JobWorker
        worker = JobWorker()
        worker.start()

    yield

    if worker is not None:
        worker.stop()
    logger.info("🛑 Shutting down literature pipeline API")


app = FastAPI(
    title="Literature Ingestion API",
    version="1.0.0",
    description="Search fan-out, article deduplication and background graph / embedding jobs.",
    lifespan=lifespan
)

# CORS Configuration
origins = []
if env == "local":
    origins = ["http://localhost:3000", "http://localhost:5173"]
else:
    origins_str = os.getenv("ALLOWED_ORIGINS", "")
    origins = [origin.strip() for origin in origins_str.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(search.router, prefix="/projects", tags=["Search"])
app.include_router(graph_jobs.router, prefix="/projects", tags=["Citation Graph"])
app.include_router(embeddings.router, prefix="/projects", tags=["Embeddings"])


@app.get("/")
async def root():
    return {"message": "Literature pipeline running 🚀"}
