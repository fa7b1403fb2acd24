# services/embedding_worker.py
import os
import time
import logging
from typing import Dict

from sqlalchemy.orm import Session

from clients.chroma_client import get_client as get_vector_index
from clients.embedding_client import embedding_model
from database.db import SessionLocal
from database.models.article_model import Article
from services import job_service
from services.embedding_service import (
    build_embedding_text,
    embed_with_cache,
    find_missing_article_ids,
    upsert_embedding,
)

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_DELAY_MS = int(os.getenv("EMBEDDING_BATCH_DELAY_MS", "200"))
DEFAULT_BATCH_SIZE = 50


class EmbeddingJob:
    def __init__(self, db: Session, payload: Dict):
        self.db = db
        self.job_id = payload["jobId"]
        self.project_id = payload["projectId"]
        self.article_ids = payload.get("articleIds") or None
        self.include_references = payload.get("includeReferences", True)
        self.include_cited_by = payload.get("includeCitedBy", True)
        self.batch_size = max(int(payload.get("batchSize") or DEFAULT_BATCH_SIZE), 1)
        self.token = job_service.CancellationToken(db, self.job_id)
        self.processed = 0
        self.errors = 0

    def _index(self, article: Article, vector):
        try:
            get_vector_index().upsert_vector(
                article.id,
                vector,
                {"project_id": self.project_id, "year": article.year or 0},
            )
        except Exception as e:
            logger.warning(f"Similarity index update failed for article {article.id}: {e}")

    def _embed_one(self, article_id: str, model: str):
        article = self.db.get(Article, article_id)
        text = build_embedding_text(article) if article else ""
        if not text:
            self.errors += 1
            return

        try:
            vector = embed_with_cache(text, model)
            upsert_embedding(self.db, article_id, vector, model)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self.errors += 1
            logger.warning(f"Embedding failed for article {article_id}: {e}")
            return

        self._index(article, vector)
        self.processed += 1

    def run(self):
        if not job_service.claim_job(self.db, self.job_id):
            return

        missing = find_missing_article_ids(
            self.db,
            self.project_id,
            include_references=self.include_references,
            include_cited_by=self.include_cited_by,
            article_ids=self.article_ids,
        )
        total = len(missing)
        logger.info(f"🧮 Embedding job {self.job_id}: {total} articles without embeddings")

        if not job_service.update_progress(
            self.db, self.job_id, total=total, phase=job_service.format_phase("embeddings", f"0/{total}")
        ):
            return

        model = embedding_model()
        for i, article_id in enumerate(missing, 1):
            if self.token.is_cancelled():
                return

            self._embed_one(article_id, model)

            if not job_service.update_progress(
                self.db,
                self.job_id,
                processed=self.processed,
                errors=self.errors,
                phase=job_service.format_phase("embeddings", f"{i}/{total}"),
            ):
                return

            if i % self.batch_size == 0 and i < total:
                time.sleep(EMBEDDING_BATCH_DELAY_MS / 1000)

        job_service.complete_job(self.db, self.job_id)


def handle_embeddings(payload: Dict, session_factory=SessionLocal):
    """Queue handler for `embeddings` messages."""
    db = session_factory()
    try:
        EmbeddingJob(db, payload).run()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Embedding job {payload.get('jobId')} crashed: {e}", exc_info=True)
        job_service.fail_job(db, payload["jobId"], str(e) or e.__class__.__name__)
    finally:
        db.close()
