# services/graph_fetch_worker.py
"""
Reference / citation expansion for a project's articles.

Phases (each reported as "[Phase: name] detail" in the job message):
  references  PubMed eLink refs + cited-by for every article with a pmid
  neighbors   import metadata of neighbor pmids not stored yet
  citations   Europe PMC citation counts
  crossref    reference DOIs for articles that only have a DOI
"""
import os
import math
import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from clients import pubmed_client, crossref_client
from database.db import SessionLocal
from database.models.article_model import Article
from database.models.project_model import ProjectArticle, ArticleStatus
from services import job_service
from services.identity_resolver import resolve_article

logger = logging.getLogger(__name__)

GRAPH_BATCH_SIZE = int(os.getenv("GRAPH_BATCH_SIZE", "50"))
GRAPH_MAX_NEIGHBOR_IMPORT = int(os.getenv("GRAPH_MAX_NEIGHBOR_IMPORT", "2000"))
EUROPE_PMC_LIMIT = 200
EUROPE_PMC_THROTTLE_SECONDS = 0.1
CROSSREF_REFERENCE_LIMIT = 100
CROSSREF_THROTTLE_SECONDS = 0.2
SECONDS_PER_ARTICLE_ESTIMATE = 0.8


def _chunks(items: List, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _target_query(db: Session, project_id: str, selected_only: bool, article_ids: Optional[List[str]]):
    query = (
        db.query(Article.id, Article.pmid)
        .join(ProjectArticle, ProjectArticle.article_id == Article.id)
        .filter(ProjectArticle.project_id == project_id, ProjectArticle.status != ArticleStatus.DELETED.value)
    )
    if selected_only:
        query = query.filter(ProjectArticle.status == ArticleStatus.SELECTED.value)
    if article_ids:
        query = query.filter(Article.id.in_(article_ids))
    return query


def count_graph_targets(db: Session, project_id: str, selected_only: bool = False, article_ids: Optional[List[str]] = None) -> int:
    """Dry-run count used to size the job before it is created."""
    return _target_query(db, project_id, selected_only, article_ids).filter(Article.pmid.isnot(None)).count()


class GraphFetchJob:
    def __init__(self, db: Session, payload: Dict):
        self.db = db
        self.job_id = payload["jobId"]
        self.project_id = payload["projectId"]
        self.selected_only = bool(payload.get("selectedOnly"))
        self.article_ids = payload.get("articleIds") or None
        self.token = job_service.CancellationToken(db, self.job_id)
        self.processed = 0
        self.errors = 0

    # -----------------------
    # Progress helpers
    # -----------------------
    def _progress(self, phase: str, detail: str, **extra) -> bool:
        return job_service.update_progress(
            self.db,
            self.job_id,
            processed=self.processed,
            errors=self.errors,
            phase=job_service.format_phase(phase, detail),
            **extra,
        )

    def _targets(self) -> List[Tuple[str, str]]:
        rows = (
            _target_query(self.db, self.project_id, self.selected_only, self.article_ids)
            .filter(Article.pmid.isnot(None))
            .order_by(Article.pmid)
            .all()
        )
        return [(r.id, r.pmid) for r in rows]

    # -----------------------
    # Phase 1: references / cited-by
    # -----------------------
    def fetch_references(self, targets: List[Tuple[str, str]]) -> bool:
        total = len(targets)
        throttle = pubmed_client.throttle_seconds()

        for batch in _chunks(targets, GRAPH_BATCH_SIZE):
            if self.token.is_cancelled():
                return False

            pmids = [pmid for _, pmid in batch]
            try:
                links = pubmed_client.get_links(pmids)
            except Exception as e:
                logger.warning(f"eLink batch of {len(batch)} failed for job {self.job_id}: {e}")
                self.errors += len(batch)
                links = None

            if links is not None:
                now = datetime.now(timezone.utc)
                for article_id, pmid in batch:
                    article = self.db.get(Article, article_id)
                    if article is None:
                        continue
                    neighbors = links.get(pmid) or {}
                    article.reference_pmids = neighbors.get("references", [])
                    article.cited_by_pmids = neighbors.get("cited_by", [])
                    article.references_fetched_at = now
                    self.processed += 1
                self.db.commit()

            done = self.processed + self.errors
            if not self._progress("references", f"{done}/{total} articles"):
                return False
            time.sleep(throttle)

        return True

    # -----------------------
    # Phase 2: neighbor metadata
    # -----------------------
    def _missing_neighbor_pmids(self, article_ids: List[str]) -> List[str]:
        neighbors = set()
        for chunk in _chunks(article_ids, 500):
            rows = (
                self.db.query(Article.reference_pmids, Article.cited_by_pmids)
                .filter(Article.id.in_(chunk))
                .all()
            )
            for refs, cited in rows:
                neighbors.update(refs or [])
                neighbors.update(cited or [])

        ordered = sorted(neighbors, key=int)
        known = set()
        for chunk in _chunks(ordered, 500):
            known.update(pmid for (pmid,) in self.db.query(Article.pmid).filter(Article.pmid.in_(chunk)).all())

        return [p for p in ordered if p not in known][:GRAPH_MAX_NEIGHBOR_IMPORT]

    def import_neighbors(self, targets: List[Tuple[str, str]]) -> bool:
        missing = self._missing_neighbor_pmids([article_id for article_id, _ in targets])
        total_ids = len(missing)
        if not self._progress("neighbors", f"0/{total_ids} ids", fetched_ids=0, total_ids=total_ids):
            return False

        throttle = pubmed_client.throttle_seconds()
        fetched = 0
        for chunk in _chunks(missing, GRAPH_BATCH_SIZE):
            if self.token.is_cancelled():
                return False

            try:
                records = pubmed_client.fetch_by_pmids(chunk)
            except Exception as e:
                logger.warning(f"Neighbor metadata fetch failed for {len(chunk)} ids: {e}")
                records = []

            for record in records:
                try:
                    resolve_article(self.db, record)
                    self.db.commit()
                except Exception as e:
                    self.db.rollback()
                    logger.warning(f"Could not store neighbor pmid={record.get('pmid')}: {e}")

            fetched += len(chunk)
            if not self._progress("neighbors", f"{fetched}/{total_ids} ids", fetched_ids=fetched):
                return False
            time.sleep(throttle)

        return True

    # -----------------------
    # Phase 3: citation counts
    # -----------------------
    def fetch_citation_counts(self, targets: List[Tuple[str, str]]) -> bool:
        subset = targets[:EUROPE_PMC_LIMIT]
        for i, (article_id, pmid) in enumerate(subset, 1):
            if self.token.is_cancelled():
                return False
            try:
                count = pubmed_client.europe_pmc_citation_count(pmid)
                article = self.db.get(Article, article_id)
                if article is not None:
                    article.citation_count = count
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Europe PMC count failed for pmid={pmid}: {e}")

            if not self._progress("citations", f"{i}/{len(subset)} articles"):
                return False
            time.sleep(EUROPE_PMC_THROTTLE_SECONDS)
        return True

    # -----------------------
    # Phase 4: Crossref references for DOI-only articles
    # -----------------------
    def fetch_crossref_references(self) -> bool:
        rows = (
            _target_query(self.db, self.project_id, self.selected_only, self.article_ids)
            .filter(Article.pmid.is_(None), Article.doi.isnot(None), Article.reference_dois.is_(None))
            .order_by(Article.id)
            .limit(CROSSREF_REFERENCE_LIMIT)
            .all()
        )
        for i, row in enumerate(rows, 1):
            if self.token.is_cancelled():
                return False
            article = self.db.get(Article, row.id)
            try:
                work = crossref_client.get_work(article.doi)
                if work:
                    article.reference_dois = crossref_client.reference_dois(work)
                    if article.citation_count is None and work.get("is-referenced-by-count") is not None:
                        article.citation_count = work["is-referenced-by-count"]
                    self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Crossref references failed for doi={article.doi}: {e}")

            if not self._progress("crossref", f"{i}/{len(rows)} articles"):
                return False
            time.sleep(CROSSREF_THROTTLE_SECONDS)
        return True

    # -----------------------
    # Driver
    # -----------------------
    def run(self):
        if not job_service.claim_job(self.db, self.job_id):
            return

        targets = self._targets()
        total = len(targets)
        logger.info(f"🕸️ Graph job {self.job_id}: {total} articles with pmid in project {self.project_id}")

        if not job_service.update_progress(
            self.db, self.job_id, total=total, phase=job_service.format_phase("references", f"0/{total} articles")
        ):
            return

        if total == 0:
            job_service.complete_job(self.db, self.job_id)
            return

        if not self.fetch_references(targets):
            return

        if self.errors >= total:
            job_service.fail_job(self.db, self.job_id, "PubMed eLink was unreachable for every batch")
            return

        for phase in (
            lambda: self.import_neighbors(targets),
            lambda: self.fetch_citation_counts(targets),
            self.fetch_crossref_references,
        ):
            if not phase():
                return

        job_service.complete_job(self.db, self.job_id)


def handle_graph_fetch(payload: Dict, session_factory=SessionLocal):
    """Queue handler for `graph_fetch` messages."""
    db = session_factory()
    try:
        GraphFetchJob(db, payload).run()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Graph job {payload.get('jobId')} crashed: {e}", exc_info=True)
        job_service.fail_job(db, payload["jobId"], str(e) or e.__class__.__name__)
    finally:
        db.close()


def estimate_seconds(total_articles: int) -> int:
    return math.ceil(total_articles * SECONDS_PER_ARTICLE_ESTIMATE)
