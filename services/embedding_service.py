# services/embedding_service.py
import os
import logging
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from api.models.job_models import EmbeddingStatsResponse, SemanticSearchHit, SemanticSearchResponse
from clients.chroma_client import get_client as get_vector_index
from clients.embedding_client import embed_text, embedding_model
from database.models.article_model import Article, ArticleEmbedding
from database.models.project_model import ProjectArticle, ArticleStatus
from services.embedding_cache import embedding_cache

logger = logging.getLogger(__name__)

EMBEDDING_MAX_ARTICLES_PER_JOB = int(os.getenv("EMBEDDING_MAX_ARTICLES_PER_JOB", "1000"))
IN_CLAUSE_CHUNK = 500


def _chunks(items: List, size: int = IN_CLAUSE_CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def build_embedding_text(article: Article) -> str:
    parts = [p.strip() for p in (article.title, article.abstract) if p and p.strip()]
    return "\n\n".join(parts)


def embed_with_cache(text: str, model: Optional[str] = None) -> List[float]:
    model = model or embedding_model()
    vector = embedding_cache.get(text, model)
    if vector is None:
        vector = embed_text(text, model)
        embedding_cache.set(text, model, vector)
    return vector


def neighborhood_article_ids(
    db: Session,
    project_id: str,
    include_references: bool = True,
    include_cited_by: bool = True,
) -> Set[str]:
    """
    Project articles (not deleted) plus, by flag, stored articles one
    reference / cited-by hop away.
    """
    rows = (
        db.query(Article.id, Article.reference_pmids, Article.cited_by_pmids)
        .join(ProjectArticle, ProjectArticle.article_id == Article.id)
        .filter(ProjectArticle.project_id == project_id, ProjectArticle.status != ArticleStatus.DELETED.value)
        .all()
    )

    ids = {r.id for r in rows}
    neighbor_pmids = set()
    for r in rows:
        if include_references:
            neighbor_pmids.update(r.reference_pmids or [])
        if include_cited_by:
            neighbor_pmids.update(r.cited_by_pmids or [])

    for chunk in _chunks(sorted(neighbor_pmids)):
        ids.update(article_id for (article_id,) in db.query(Article.id).filter(Article.pmid.in_(chunk)).all())
    return ids


def _embedded_ids(db: Session, article_ids: Iterable[str]) -> Set[str]:
    embedded = set()
    for chunk in _chunks(sorted(article_ids)):
        embedded.update(
            article_id
            for (article_id,) in db.query(ArticleEmbedding.article_id).filter(ArticleEmbedding.article_id.in_(chunk)).all()
        )
    return embedded


def find_missing_article_ids(
    db: Session,
    project_id: str,
    include_references: bool = True,
    include_cited_by: bool = True,
    article_ids: Optional[List[str]] = None,
    limit: int = EMBEDDING_MAX_ARTICLES_PER_JOB,
) -> List[str]:
    """(neighborhood or explicit ids) minus articles that already hold an embedding."""
    if article_ids:
        candidates = set()
        for chunk in _chunks(sorted(set(article_ids))):
            candidates.update(a for (a,) in db.query(Article.id).filter(Article.id.in_(chunk)).all())
    else:
        candidates = neighborhood_article_ids(db, project_id, include_references, include_cited_by)

    missing = sorted(candidates - _embedded_ids(db, candidates))
    return missing[:limit]


def upsert_embedding(db: Session, article_id: str, vector: List[float], model: str):
    row = db.get(ArticleEmbedding, article_id)
    if row is None:
        db.add(ArticleEmbedding(article_id=article_id, embedding=vector, model=model))
    else:
        row.embedding = vector
        row.model = model


def embedding_stats(db: Session, project_id: str) -> EmbeddingStatsResponse:
    ids = neighborhood_article_ids(db, project_id)
    with_embeddings = len(_embedded_ids(db, ids))
    return EmbeddingStatsResponse(
        total_articles=len(ids),
        with_embeddings=with_embeddings,
        without_embeddings=len(ids) - with_embeddings,
        model=embedding_model(),
        cache=embedding_cache.stats(),
    )


def semantic_search(db: Session, project_id: str, query: str, limit: int = 10, include_neighbors: bool = True) -> SemanticSearchResponse:
    """Nearest articles to `query` within the project's (optionally expanded) neighborhood."""
    ids = neighborhood_article_ids(db, project_id, include_neighbors, include_neighbors)
    if not ids:
        return SemanticSearchResponse(query=query, results=[])

    vector = embed_with_cache(query)
    matches = get_vector_index().query_vector(vector, n_results=limit, article_ids=sorted(ids))

    articles = {}
    for chunk in _chunks([m["id"] for m in matches]):
        articles.update({a.id: a for a in db.query(Article).filter(Article.id.in_(chunk)).all()})

    hits = []
    for match in matches:
        article = articles.get(match["id"])
        if article is None:
            continue
        hits.append(SemanticSearchHit(
            article_id=article.id,
            title=article.title,
            year=article.year,
            pmid=article.pmid,
            doi=article.doi,
            similarity=round(1.0 - float(match["distance"]), 4),
        ))
    return SemanticSearchResponse(query=query, results=hits)
