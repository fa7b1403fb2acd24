# clients/doaj_client.py
import time
import logging
import urllib.parse
from typing import List, Dict, Optional, Tuple

from clients.http_utils import get_with_retry
from utils.sanitization import strip_markup
from utils.id_normalization import normalize_doi, parse_year

logger = logging.getLogger(__name__)

DOAJ_SEARCH_URL = "https://doaj.org/api/search/articles"
DOAJ_PAGE_SIZE = 100
DOAJ_MAX_TOTAL = 500
DOAJ_THROTTLE_SECONDS = 0.5


def _build_query(query: str, year_from: Optional[int], year_to: Optional[int]) -> str:
    parts = [f'(bibjson.title:"{query}" OR bibjson.abstract:"{query}")']
    if year_from or year_to:
        parts.append(f"bibjson.year:[{year_from or 1900} TO {year_to or 3000}]")
    return " AND ".join(parts)


def _parse_result(result: Dict) -> Optional[Dict]:
    bib = result.get("bibjson") or {}

    authors = []
    for a in bib.get("author") or []:
        name = a.get("name") or f"{a.get('family', '')} {a.get('given', '')}".strip()
        if name:
            authors.append(name)

    doi = None
    for ident in bib.get("identifier") or []:
        if ident.get("type", "").lower() == "doi":
            doi = normalize_doi(ident.get("id"))
            break

    url = f"https://doi.org/{doi}" if doi else None
    if not url:
        for link in bib.get("link") or []:
            if link.get("type") == "fulltext" and link.get("url"):
                url = link["url"]
                break

    return {
        "source": "doaj",
        "pmid": None,
        "doi": doi,
        "title": strip_markup(bib.get("title")) or "(no title)",
        "abstract": strip_markup(bib.get("abstract")) or None,
        "authors": ", ".join(authors) or None,
        "journal": (bib.get("journal") or {}).get("title"),
        "year": parse_year(bib.get("year")),
        "url": url or f"https://doaj.org/article/{result.get('id', '')}",
        "publication_types": [],
        "keywords": bib.get("keywords") or [],
    }


def search_doaj(
    query: str,
    max_results: int,
    year_from: Optional[int] = None,
    year_to: Optional[int] = None,
) -> Tuple[int, List[Dict]]:
    """
    Paged DOAJ search. Returns (total reported, records up to max_results).
    Raises SourceError on transport failure.
    """
    encoded = urllib.parse.quote(_build_query(query, year_from, year_to), safe="")
    wanted = min(max_results, DOAJ_MAX_TOTAL)

    items: List[Dict] = []
    total = 0
    page = 1
    while len(items) < wanted:
        time.sleep(DOAJ_THROTTLE_SECONDS)
        resp = get_with_retry(
            f"{DOAJ_SEARCH_URL}/{encoded}",
            "doaj",
            params={"page": page, "pageSize": DOAJ_PAGE_SIZE},
            headers={"Accept": "application/json"},
        )
        data = resp.json()
        total = int(data.get("total") or 0)
        results = data.get("results") or []
        for r in results:
            record = _parse_result(r)
            if record:
                items.append(record)
        if not results or page * DOAJ_PAGE_SIZE >= total:
            break
        page += 1

    logger.info(f"🔎 DOAJ: {total} hits, fetched {len(items)}")
    return total, items[:wanted]
