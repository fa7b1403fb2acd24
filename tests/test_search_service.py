# tests/test_search_service.py
import asyncio
from unittest.mock import patch

import pytest

from api.models.search_models import SearchFilters, SearchRequest
from clients.http_utils import SourceError
from database.models.article_model import Article
from database.models.project_model import ProjectArticle
from services.llm_factory import ConfigurationError
from services.search_service import fetch_multiplier, per_source_limit, run_search


def _pubmed_item(pmid, doi=None, title=None):
    return {
        "source": "pubmed",
        "pmid": pmid,
        "doi": doi,
        "title": title or f"Article {pmid}",
        "abstract": "No numbers here.",
        "authors": "Smith J",
        "journal": "J Test",
        "year": 2020,
        "url": f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
        "publication_types": [],
    }


def _doaj_item(doi, title="Open article"):
    return {"source": "doaj", "pmid": None, "doi": doi, "title": title, "year": 2022}


def _run(db, request, project_id="p1"):
    return asyncio.run(run_search(db, project_id, "user-1", request))


@pytest.fixture(autouse=True)
def no_enrichment():
    with patch("services.search_service.crossref_client.get_work", return_value=None) as mocked:
        yield mocked


def _project_links(db, project_id="p1"):
    return db.query(ProjectArticle).filter(ProjectArticle.project_id == project_id).count()


def test_fetch_multiplier_grows_with_project_size():
    assert fetch_multiplier(0, 50) == 2
    assert fetch_multiplier(120, 50) == 4
    assert fetch_multiplier(10_000, 50) == 5


def test_per_source_limit():
    assert per_source_limit(50, 1, 2) == 100
    assert per_source_limit(50, 3, 2) == 34


def test_duplicates_already_in_project_are_skipped(db, make_article):
    make_article(project_id="p1", pmid="1", title="Existing")

    items = [_pubmed_item("1"), _pubmed_item("2"), _pubmed_item("3")]
    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(120, items)):
        result = _run(db, SearchRequest(query="aspirin"))

    assert result.added == 2
    assert result.skipped == 1
    assert result.fetched == 3
    assert result.total_found == 120
    assert result.sources["pubmed"].count == 120
    assert result.message == "2 new added, 1 already in project"
    assert _project_links(db) == 3


def test_ingestion_stops_at_max_results(db):
    items = [_pubmed_item(str(i)) for i in range(1, 6)]
    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(5, items)):
        result = _run(db, SearchRequest(query="aspirin", max_results=2))

    assert result.added == 2
    assert result.fetched == 5
    assert _project_links(db) == 2


def test_target_bounded_with_mostly_duplicates(db):
    # 400 articles already in the project; every fifth hit is new
    existing = [Article(pmid=str(i), title=f"Old {i}") for i in range(1, 401)]
    db.add_all(existing)
    db.flush()
    db.add_all([ProjectArticle(project_id="p1", article_id=a.id) for a in existing])
    db.commit()

    items = []
    for i in range(500):
        pmid = str(10_000 + i) if i % 5 == 4 else str(i % 400 + 1)
        items.append(_pubmed_item(pmid))

    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(5000, items)) as search:
        result = _run(db, SearchRequest(query="aspirin", max_results=50))

    # ceil(400 / 50) + 1 = 9, capped at 5
    assert search.call_args[0][1] == 250
    assert result.added == 50
    assert result.skipped == 200
    assert _project_links(db) == 450


def test_multiplier_counts_identifiers_not_articles(db):
    # 60 articles carrying both a pmid and a DOI are 120 known identifiers
    articles = [Article(pmid=str(i), doi=f"10.1/{i}", title=f"Old {i}") for i in range(1, 61)]
    db.add_all(articles)
    db.flush()
    db.add_all([ProjectArticle(project_id="p1", article_id=a.id) for a in articles])
    db.commit()

    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(0, [])) as search:
        _run(db, SearchRequest(query="aspirin", max_results=50))

    # ceil(120 / 50) + 1 = 4
    assert search.call_args[0][1] == 200


def test_failing_source_does_not_fail_search(db):
    items = [_pubmed_item("1"), _pubmed_item("2")]
    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(2, items)), \
            patch("services.search_service.doaj_client.search_doaj", side_effect=SourceError("doaj", "HTTP 503")):
        result = _run(db, SearchRequest(query="aspirin", sources=["pubmed", "doaj"]))

    assert result.added == 2
    assert result.sources["doaj"].count == 0
    assert result.sources["pubmed"].added == 2
    assert result.message == "Added 2 new articles (PubMed: 2 of 2, DOAJ: 0 of 0), 0 already in project"


def test_same_doi_across_sources_is_added_once(db):
    pubmed = [_pubmed_item("10", doi="10.1/shared")]
    doaj = [_doaj_item("https://doi.org/10.1/SHARED"), _doaj_item("10.1/other")]
    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(1, pubmed)), \
            patch("services.search_service.doaj_client.search_doaj", return_value=(2, doaj)):
        result = _run(db, SearchRequest(query="aspirin", sources=["pubmed", "doaj"]))

    assert result.added == 2
    assert result.skipped == 1
    assert db.query(Article).count() == 2

    doaj_link = (
        db.query(ProjectArticle)
        .join(Article, Article.id == ProjectArticle.article_id)
        .filter(Article.doi == "10.1/other")
        .one()
    )
    assert doaj_link.source_query == "aspirin [DOAJ]"


def test_article_found_under_several_types_collects_all(db):
    def _by_type(query, limit, publication_types=None, **kwargs):
        return 1, [_pubmed_item("42")]

    filters = SearchFilters(publication_types=["Review", "Meta-Analysis"])
    with patch("services.search_service.pubmed_client.search_pubmed", side_effect=_by_type) as search:
        result = _run(db, SearchRequest(query="aspirin", filters=filters))

    assert search.call_count == 2
    assert result.added == 1
    assert result.skipped == 1
    article = db.query(Article).filter(Article.pmid == "42").one()
    assert article.publication_types == ["Meta-Analysis", "Review"]


def test_translation_requires_configured_llm(db, monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "openrouter")
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

    request = SearchRequest(query="aspirin", filters=SearchFilters(translate=True))
    with patch("services.search_service.pubmed_client.search_pubmed") as search:
        with pytest.raises(ConfigurationError):
            _run(db, request)
    search.assert_not_called()


def test_translation_runs_only_on_new_articles(db, make_article):
    make_article(project_id="p1", pmid="1", title="Existing")
    items = [_pubmed_item("1"), _pubmed_item("2", title="Nuevo")]

    def _translate(batch):
        return {item["id"]: {"title": f"T:{item['title']}", "abstract": ""} for item in batch}

    request = SearchRequest(query="aspirin", filters=SearchFilters(translate=True))
    with patch("services.search_service.LLMFactory.is_configured", return_value=True), \
            patch("services.search_service.pubmed_client.search_pubmed", return_value=(2, items)), \
            patch("services.search_service.translate_batch", side_effect=_translate) as translate:
        result = _run(db, request)

    assert result.translated == 1
    sent = translate.call_args[0][0]
    assert [item["title"] for item in sent] == ["Nuevo"]
    assert db.query(Article).filter(Article.pmid == "2").one().title_translated == "T:Nuevo"
    assert db.query(Article).filter(Article.pmid == "1").one().title_translated is None


def test_crossref_enrichment_fills_missing_fields(db, no_enrichment):
    no_enrichment.return_value = {
        "container-title": ["Crossref Journal"],
        "is-referenced-by-count": 17,
        "publisher": "Wiley",
    }
    item = _pubmed_item("7", doi="10.1/enrich")
    item["journal"] = None

    with patch("services.search_service.pubmed_client.search_pubmed", return_value=(1, [item])):
        result = _run(db, SearchRequest(query="aspirin"))

    assert result.enriched == 1
    article = db.query(Article).filter(Article.pmid == "7").one()
    assert article.journal == "Crossref Journal"
    assert article.citation_count == 17
    assert article.raw_payload["crossref"]["publisher"] == "Wiley"
