# clients/crossref_client.py
"""
Crossref REST API: DOI lookups for enrichment, reference lists for the graph
worker, and the Wiley search (Wiley has no public search API, so it is a
Crossref query filtered to member 311).
"""
import os
import time
import logging
import urllib.parse
from typing import List, Dict, Optional, Tuple

from clients.http_utils import get_with_retry
from utils.sanitization import strip_markup
from utils.id_normalization import normalize_doi

logger = logging.getLogger(__name__)

CROSSREF_API_URL = "https://api.crossref.org"
WILEY_MEMBER_ID = "311"
WILEY_PAGE_SIZE = 100
WILEY_MAX_TOTAL = 500
WILEY_THROTTLE_SECONDS = 0.5


def _headers() -> Dict[str, str]:
    mailto = os.getenv("CROSSREF_MAILTO")
    return {"Accept": "application/json", **({"From": mailto} if mailto else {})}


def get_work(doi: str) -> Optional[Dict]:
    """Returns the Crossref work for a DOI, or None when Crossref does not know it."""
    doi = normalize_doi(doi)
    if not doi:
        return None
    url = f"{CROSSREF_API_URL}/works/{urllib.parse.quote(doi, safe='/')}"
    resp = get_with_retry(url, "crossref", headers=_headers(), allow_404=True)
    if resp is None:
        return None
    return resp.json().get("message")


def _first(values) -> Optional[str]:
    if isinstance(values, list):
        return values[0] if values else None
    return values


def _work_year(work: Dict) -> Optional[int]:
    for key in ("published", "issued", "published-print", "published-online"):
        parts = (work.get(key) or {}).get("date-parts") or []
        if parts and parts[0] and parts[0][0]:
            try:
                return int(parts[0][0])
            except (TypeError, ValueError):
                continue
    return None


def extract_enrichment(work: Dict) -> Dict:
    data = {
        "publisher": work.get("publisher"),
        "volume": work.get("volume"),
        "issue": work.get("issue"),
        "pages": work.get("page"),
        "issn": _first(work.get("ISSN")),
        "citedByCount": work.get("is-referenced-by-count"),
        "referencesCount": work.get("references-count"),
        "subjects": work.get("subject") or [],
        "journal": _first(work.get("container-title")),
        "year": _work_year(work),
        "abstract": strip_markup(work.get("abstract")) or None,
    }
    for lic in work.get("license") or []:
        if "creativecommons" in (lic.get("URL") or "") or lic.get("content-version") == "vor":
            data["license"] = lic.get("URL")
            break
    return {k: v for k, v in data.items() if v not in (None, [], "")}


def reference_dois(work: Dict) -> List[str]:
    dois = []
    for ref in work.get("reference") or []:
        doi = normalize_doi(ref.get("DOI"))
        if doi and doi not in dois:
            dois.append(doi)
    return dois


def work_to_record(work: Dict, source: str) -> Dict:
    authors = []
    for a in work.get("author") or []:
        given = (a.get("given") or "")[:1]
        name = f"{a.get('family', '')} {given}".strip()
        if name:
            authors.append(name)

    doi = normalize_doi(work.get("DOI"))
    return {
        "source": source,
        "pmid": None,
        "doi": doi,
        "title": strip_markup(_first(work.get("title"))) or "(no title)",
        "abstract": strip_markup(work.get("abstract")) or None,
        "authors": ", ".join(authors) or None,
        "journal": _first(work.get("container-title")),
        "year": _work_year(work),
        "url": work.get("URL") or (f"https://doi.org/{doi}" if doi else None),
        "publication_types": [],
    }


def search_wiley(
    query: str,
    max_results: int,
    year_from: Optional[int] = None,
    year_to: Optional[int] = None,
) -> Tuple[int, List[Dict]]:
    """
    Returns (total reported, records up to max_results).
    Raises SourceError on transport failure.
    """
    filters = [f"member:{WILEY_MEMBER_ID}"]
    if year_from:
        filters.append(f"from-pub-date:{year_from}-01-01")
    if year_to:
        filters.append(f"until-pub-date:{year_to}-12-31")

    wanted = min(max_results, WILEY_MAX_TOTAL)
    items: List[Dict] = []
    total = 0
    offset = 0
    while len(items) < wanted:
        time.sleep(WILEY_THROTTLE_SECONDS)
        rows = min(WILEY_PAGE_SIZE, wanted - len(items))
        resp = get_with_retry(
            f"{CROSSREF_API_URL}/works",
            "wiley",
            params={"query": query, "filter": ",".join(filters), "rows": rows, "offset": offset},
            headers=_headers(),
        )
        message = resp.json().get("message") or {}
        total = int(message.get("total-results") or 0)
        works = message.get("items") or []
        items.extend(work_to_record(w, "wiley") for w in works)
        offset += rows
        if not works or offset >= total:
            break

    logger.info(f"🔎 Wiley (Crossref): {total} hits, fetched {len(items)}")
    return total, items[:wanted]
