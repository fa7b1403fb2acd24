# services/search_service.py
import os
import math
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from api.models.search_models import SearchRequest, SearchResponse, SearchFilters, SourceCounts
from clients import pubmed_client, doaj_client, crossref_client
from database.models.article_model import Article
from services.identity_resolver import resolve_article, add_article_to_project, get_project_identifiers
from services.llm_factory import LLMFactory, ConfigurationError
from services.stats_service import detect_stats_with_ai, extract_stats, has_any_stats, calculate_stats_quality
from services.translation_service import translate_batch, TRANSLATION_BATCH_SIZE
from utils.id_normalization import normalize_doi, normalize_pmid

logger = logging.getLogger(__name__)

SEARCH_MIN_MULTIPLIER = int(os.getenv("SEARCH_MIN_MULTIPLIER", "2"))
SEARCH_MAX_MULTIPLIER = int(os.getenv("SEARCH_MAX_MULTIPLIER", "5"))
POST_PROCESS_CONCURRENCY = 3

SOURCE_LABELS = {"pubmed": "PubMed", "doaj": "DOAJ", "wiley": "Wiley"}
SOURCE_QUERY_TAGS = {"doaj": " [DOAJ]", "wiley": " [Wiley]"}


@dataclass
class SourceBatch:
    source: str
    total: int
    items: List[Dict]
    publication_types: List[str] = field(default_factory=list)


@dataclass
class _IngestState:
    existing_pmids: Set[str]
    existing_dois: Set[str]
    processed_pmids: Set[str] = field(default_factory=set)
    processed_dois: Set[str] = field(default_factory=set)
    added: int = 0
    skipped: int = 0
    new_article_ids: List[str] = field(default_factory=list)

    def is_known(self, pmid: Optional[str], doi: Optional[str]) -> bool:
        if pmid and (pmid in self.processed_pmids or pmid in self.existing_pmids):
            return True
        if doi and (doi in self.processed_dois or doi in self.existing_dois):
            return True
        return False

    def mark(self, pmid: Optional[str], doi: Optional[str]):
        if pmid:
            self.processed_pmids.add(pmid)
        if doi:
            self.processed_dois.add(doi)


def fetch_multiplier(existing_count: int, max_results: int) -> int:
    """Grows with the project size, since more results will turn out to be duplicates."""
    return min(SEARCH_MAX_MULTIPLIER, max(SEARCH_MIN_MULTIPLIER, math.ceil(existing_count / max_results) + 1))


def per_source_limit(max_results: int, n_sources: int, multiplier: int) -> int:
    return math.ceil(max_results / max(n_sources, 1)) * multiplier


# ---------------------------------------------------------
# Source fan-out
# ---------------------------------------------------------

def _search_pubmed(query: str, filters: SearchFilters, limit: int) -> List[SourceBatch]:
    kwargs = dict(
        year_from=filters.year_from,
        year_to=filters.year_to,
        free_full_text=filters.free_full_text,
        humans=filters.humans,
        language=filters.language,
    )
    types = [t for t in filters.publication_types if t and t.strip()]

    if len(types) <= 1:
        total, items = pubmed_client.search_pubmed(query, limit, publication_types=types or None, **kwargs)
        return [SourceBatch("pubmed", total, items, types)]

    # PubMed's [pt] filter is OR-only, so each type gets its own sub-search
    per_type = math.ceil(limit / len(types))
    batches = []
    for pub_type in types:
        try:
            total, items = pubmed_client.search_pubmed(query, per_type, publication_types=[pub_type], **kwargs)
        except Exception as e:
            logger.error(f"PubMed sub-search for type {pub_type!r} failed: {e}", exc_info=True)
            continue
        batches.append(SourceBatch("pubmed", total, items, [pub_type]))
    return batches


def _search_doaj(query: str, filters: SearchFilters, limit: int) -> List[SourceBatch]:
    total, items = doaj_client.search_doaj(query, limit, year_from=filters.year_from, year_to=filters.year_to)
    return [SourceBatch("doaj", total, items)]


def _search_wiley(query: str, filters: SearchFilters, limit: int) -> List[SourceBatch]:
    total, items = crossref_client.search_wiley(query, limit, year_from=filters.year_from, year_to=filters.year_to)
    return [SourceBatch("wiley", total, items)]


SOURCE_SEARCHERS = {
    "pubmed": _search_pubmed,
    "doaj": _search_doaj,
    "wiley": _search_wiley,
}


async def _fetch_source(source: str, query: str, filters: SearchFilters, limit: int) -> List[SourceBatch]:
    searcher = SOURCE_SEARCHERS[source]
    try:
        return await asyncio.to_thread(searcher, query, filters, limit)
    except Exception as e:
        logger.error(f"❌ Source {source} failed, treating as zero results: {e}", exc_info=True)
        return []


async def fetch_all_sources(sources: List[str], query: str, filters: SearchFilters, limit: int) -> Dict[str, List[SourceBatch]]:
    results = await asyncio.gather(*[_fetch_source(s, query, filters, limit) for s in sources])
    return dict(zip(sources, results))


# ---------------------------------------------------------
# Ingestion
# ---------------------------------------------------------

def _ingest_item(
    db: Session,
    project_id: str,
    user_id: Optional[str],
    item: Dict,
    pub_types: List[str],
    source_query: str,
    state: _IngestState,
) -> bool:
    """Returns True when the item was newly added to the project."""
    pmid = normalize_pmid(item.get("pmid"))
    doi = normalize_doi(item.get("doi"))

    if state.is_known(pmid, doi):
        state.skipped += 1
        if pub_types:
            # Known article found under another type filter: grow its type set
            try:
                resolve_article(db, item, pub_types)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.warning(f"Failed to merge publication types for pmid={pmid} doi={doi}: {e}")
        return False

    try:
        article_id = resolve_article(db, item, pub_types)
        linked = add_article_to_project(db, project_id, article_id, user_id, source_query)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store search result pmid={pmid} doi={doi}: {e}", exc_info=True)
        return False

    state.mark(pmid, doi)
    if not linked:
        state.skipped += 1
        return False

    state.added += 1
    state.new_article_ids.append(article_id)
    return True


# ---------------------------------------------------------
# Post-processing (new articles only, each record best-effort)
# ---------------------------------------------------------

async def _bounded_map(func, args_list, limit: int):
    semaphore = asyncio.Semaphore(limit)

    async def _run(args):
        async with semaphore:
            try:
                return await asyncio.to_thread(func, *args)
            except Exception as e:
                logger.warning(f"Post-processing call {func.__name__} failed: {e}")
                return None

    return await asyncio.gather(*[_run(a) for a in args_list])


async def enrich_articles(db: Session, article_ids: List[str]) -> int:
    articles = db.query(Article).filter(Article.id.in_(article_ids), Article.doi.isnot(None)).all()
    if not articles:
        return 0

    works = await _bounded_map(crossref_client.get_work, [(a.doi,) for a in articles], POST_PROCESS_CONCURRENCY)

    enriched = 0
    for article, work in zip(articles, works):
        if not work:
            continue
        try:
            data = crossref_client.extract_enrichment(work)
            if not article.abstract and data.get("abstract"):
                article.abstract = data["abstract"]
                stats = extract_stats(article.abstract)
                if has_any_stats(stats):
                    article.has_stats = True
                    article.stats_json = stats
                    article.stats_quality = calculate_stats_quality(stats)
            if not article.journal and data.get("journal"):
                article.journal = data["journal"]
            if not article.year and data.get("year"):
                article.year = data["year"]
            if data.get("citedByCount") is not None and article.citation_count is None:
                article.citation_count = data["citedByCount"]
            article.raw_payload = {**(article.raw_payload or {}), "crossref": data}
            db.commit()
            enriched += 1
        except Exception as e:
            db.rollback()
            logger.warning(f"Crossref enrichment failed for article {article.id}: {e}")
    return enriched


async def translate_articles(db: Session, article_ids: List[str]) -> int:
    articles = db.query(Article).filter(Article.id.in_(article_ids), Article.title_translated.is_(None)).all()
    translated = 0
    for start in range(0, len(articles), TRANSLATION_BATCH_SIZE):
        batch = articles[start:start + TRANSLATION_BATCH_SIZE]
        payload = [{"id": a.id, "title": a.title, "abstract": a.abstract or ""} for a in batch]
        try:
            result = await asyncio.to_thread(translate_batch, payload)
        except Exception as e:
            logger.warning(f"Translation batch failed ({len(batch)} articles): {e}")
            continue

        for article in batch:
            entry = result.get(article.id)
            if not entry:
                continue
            article.title_translated = entry["title"] or None
            article.abstract_translated = entry["abstract"] or None
            translated += 1
        db.commit()
    return translated


async def detect_article_stats(db: Session, article_ids: List[str]) -> int:
    articles = db.query(Article).filter(Article.id.in_(article_ids), Article.abstract.isnot(None)).all()
    if not articles:
        return 0

    results = await _bounded_map(detect_stats_with_ai, [(a.abstract,) for a in articles], POST_PROCESS_CONCURRENCY)

    found = 0
    for article, result in zip(articles, results):
        if not result:
            continue
        try:
            if result["hasStats"]:
                article.has_stats = True
                article.stats_json = {**(article.stats_json or {}), "ai": result}
                article.stats_quality = max(article.stats_quality or 0, result["quality"])
                found += 1
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Failed to store stats for article {article.id}: {e}")
    return found


# ---------------------------------------------------------
# Entry point
# ---------------------------------------------------------

def _build_message(sources: List[str], counts: Dict[str, SourceCounts], added: int, skipped: int) -> str:
    if len(sources) > 1:
        parts = [f"{SOURCE_LABELS.get(s, s)}: {counts[s].added} of {counts[s].count}" for s in sources]
        return f"Added {added} new articles ({', '.join(parts)}), {skipped} already in project"
    return f"{added} new added, {skipped} already in project"


def _check_configuration(filters: SearchFilters):
    needs_llm = filters.translate or filters.detect_stats
    if needs_llm and not LLMFactory.is_configured(LLMFactory.default_provider()):
        raise ConfigurationError("Translation / statistics detection requested but no LLM API key is configured")


async def run_search(db: Session, project_id: str, user_id: Optional[str], request: SearchRequest) -> SearchResponse:
    """
    Fans the query out to every selected source, then ingests results in
    source order until `max_results` new articles were added to the project.
    """
    _check_configuration(request.filters)

    sources = list(dict.fromkeys(request.sources))
    existing_pmids, existing_dois = get_project_identifiers(db, project_id)
    existing_count = len(existing_pmids) + len(existing_dois)

    multiplier = fetch_multiplier(existing_count, request.max_results)
    limit = per_source_limit(request.max_results, len(sources), multiplier)
    logger.info(
        f"🔍 Search '{request.query}' for project {project_id}: sources={sources}, "
        f"existing={existing_count}, multiplier={multiplier}, per-source={limit}"
    )

    fetched_batches = await fetch_all_sources(sources, request.query, request.filters, limit)

    state = _IngestState(existing_pmids=existing_pmids, existing_dois=existing_dois)
    counts = {s: SourceCounts() for s in sources}
    total_found = 0
    fetched = 0

    for source in sources:
        source_query = f"{request.query}{SOURCE_QUERY_TAGS.get(source, '')}"
        for batch in fetched_batches.get(source, []):
            total_found += batch.total
            fetched += len(batch.items)
            counts[source].count += batch.total

            for item in batch.items:
                if state.added >= request.max_results:
                    break
                if _ingest_item(db, project_id, user_id, item, batch.publication_types, source_query, state):
                    counts[source].added += 1

    response = SearchResponse(
        total_found=total_found,
        fetched=fetched,
        added=state.added,
        skipped=state.skipped,
        sources=counts,
    )

    new_ids = state.new_article_ids
    if new_ids:
        filters = request.filters
        if filters.enrich:
            response.enriched = await enrich_articles(db, new_ids)
        if filters.translate:
            response.translated = await translate_articles(db, new_ids)
        if filters.detect_stats:
            response.stats_found = await detect_article_stats(db, new_ids)

    response.message = _build_message(sources, counts, state.added, state.skipped)
    logger.info(f"✅ Search done for project {project_id}: {response.message}")
    return response
