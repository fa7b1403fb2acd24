# services/identity_resolver.py
"""
Canonical article resolution.

Source records arrive with a PubMed id, a DOI, both or neither. Lookup order
is pmid, then DOI, then insert. Publication types attached on resolution are
merged by union and never removed. Uniqueness is enforced by the store's own
constraints; a concurrent first insert of the same identifier surfaces as an
IntegrityError, which is absorbed by re-running the lookup.
"""
import logging
from typing import Dict, Iterable, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models.article_model import Article
from database.models.project_model import ProjectArticle, ArticleStatus
from services.stats_service import extract_stats, has_any_stats, calculate_stats_quality
from utils.id_normalization import normalize_doi, normalize_pmid, split_authors, parse_year
from utils.sanitization import clean_text

logger = logging.getLogger(__name__)


def _clean_types(types: Optional[Iterable[str]]) -> Set[str]:
    return {t.strip() for t in (types or []) if t and t.strip()}


def _merge_publication_types(article: Article, types: Set[str]) -> bool:
    """Unions `types` into the article. Returns True only if the set grew."""
    current = set(article.publication_types or [])
    merged = current | types
    if merged == current:
        return False
    article.publication_types = sorted(merged)
    return True


def _find_existing(db: Session, pmid: Optional[str], doi: Optional[str]) -> Optional[Article]:
    if pmid:
        found = db.query(Article).filter(Article.pmid == pmid).one_or_none()
        if found:
            return found
    if doi:
        return db.query(Article).filter(Article.doi == doi).one_or_none()
    return None


def _backfill_identifiers(db: Session, article: Article, pmid: Optional[str], doi: Optional[str]) -> bool:
    changed = False
    if pmid and not article.pmid:
        if not db.query(Article.id).filter(Article.pmid == pmid).first():
            article.pmid = pmid
            changed = True
    if doi and not article.doi:
        if not db.query(Article.id).filter(Article.doi == doi).first():
            article.doi = doi
            changed = True
    return changed


def _update_existing(db: Session, article: Article, pmid, doi, types: Set[str]) -> str:
    grew = _merge_publication_types(article, types)
    backfilled = _backfill_identifiers(db, article, pmid, doi)
    if grew or backfilled:
        try:
            with db.begin_nested():
                db.flush()
        except IntegrityError:
            # Another writer claimed the identifier we tried to backfill
            logger.warning(f"Identifier backfill raced for article {article.id}; keeping existing ids")
            db.refresh(article)
            if _merge_publication_types(article, types):
                db.flush()
    return article.id


def _build_article(record: Dict, pmid: Optional[str], doi: Optional[str], types: Set[str]) -> Article:
    abstract = clean_text(record.get("abstract")) or None
    stats = extract_stats(abstract)
    has_stats = has_any_stats(stats)

    return Article(
        pmid=pmid,
        doi=doi,
        title=clean_text(record.get("title")) or "(no title)",
        abstract=abstract,
        authors=split_authors(record.get("authors")),
        year=parse_year(record.get("year")),
        journal=clean_text(record.get("journal")) or None,
        url=record.get("url"),
        source=record.get("source") or "pubmed",
        has_stats=has_stats,
        stats_json=stats if has_stats else None,
        stats_quality=calculate_stats_quality(stats) if has_stats else 0,
        publication_types=sorted(types),
        raw_payload=record,
    )


def resolve_article(db: Session, record: Dict, publication_types: Optional[Iterable[str]] = None) -> str:
    """
    Returns the id of the canonical Article for `record`, creating it if needed.
    The caller owns the transaction and commits.
    """
    pmid = normalize_pmid(record.get("pmid"))
    doi = normalize_doi(record.get("doi"))
    types = _clean_types(publication_types)

    existing = _find_existing(db, pmid, doi)
    if existing:
        return _update_existing(db, existing, pmid, doi, types)

    if not types:
        types = _clean_types(record.get("publication_types"))

    article = _build_article(record, pmid, doi, types)
    try:
        with db.begin_nested():
            db.add(article)
            db.flush()
    except IntegrityError:
        logger.info(f"Concurrent insert for pmid={pmid} doi={doi}; re-reading existing article")
        existing = _find_existing(db, pmid, doi)
        if existing is None:
            raise
        return _update_existing(db, existing, pmid, doi, types)

    logger.debug(f"Created article {article.id} (pmid={pmid}, doi={doi})")
    return article.id


def add_article_to_project(
    db: Session,
    project_id: str,
    article_id: str,
    user_id: Optional[str],
    source_query: Optional[str] = None,
    status: str = ArticleStatus.CANDIDATE.value,
) -> bool:
    """Links an article to a project. Returns False if it was already linked."""
    exists = (
        db.query(ProjectArticle.id)
        .filter(ProjectArticle.project_id == project_id, ProjectArticle.article_id == article_id)
        .first()
    )
    if exists:
        return False

    try:
        with db.begin_nested():
            db.add(ProjectArticle(
                project_id=project_id,
                article_id=article_id,
                status=status,
                source_query=source_query,
                added_by=user_id,
            ))
            db.flush()
    except IntegrityError:
        return False
    return True


def get_project_identifiers(db: Session, project_id: str) -> Tuple[Set[str], Set[str]]:
    """(pmids, dois) of every article already in the project, any status."""
    rows = (
        db.query(Article.pmid, Article.doi)
        .join(ProjectArticle, ProjectArticle.article_id == Article.id)
        .filter(ProjectArticle.project_id == project_id)
        .all()
    )
    pmids = {r.pmid for r in rows if r.pmid}
    dois = {r.doi for r in rows if r.doi}
    return pmids, dois
