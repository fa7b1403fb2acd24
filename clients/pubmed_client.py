# clients/pubmed_client.py
"""
NCBI E-utilities (esearch / efetch / elink) and Europe PMC citation counts.
NCBI allows 3 req/s anonymously and 10 req/s with an API key; callers
throttle with `throttle_seconds()` between requests.
"""
import os
import time
import logging
from typing import List, Dict, Optional, Tuple

from defusedxml import ElementTree as ET

from clients.http_utils import get_with_retry, SourceError
from utils.sanitization import clean_text
from utils.id_normalization import normalize_doi, normalize_pmid, parse_year

logger = logging.getLogger(__name__)

EUTILS_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
EUROPE_PMC_URL = "https://www.ebi.ac.uk/europepmc/webservices/rest"
EFETCH_BATCH_SIZE = 200
PUBMED_MAX_TOTAL = 2000


def _api_key() -> Optional[str]:
    return os.getenv("PUBMED_API_KEY") or None


def throttle_seconds() -> float:
    return 0.1 if _api_key() else 0.35


def _params(**kwargs) -> Dict:
    params = dict(kwargs)
    key = _api_key()
    if key:
        params["api_key"] = key
    return params


def build_term(
    query: str,
    publication_types: Optional[List[str]] = None,
    free_full_text: bool = False,
    humans: bool = False,
    language: Optional[str] = None,
) -> str:
    terms = [f"({query})"]
    if free_full_text:
        terms.append("free full text[sb]")
    if humans:
        terms.append("humans[mh]")
    if language:
        terms.append(f"{language}[la]")
    if publication_types:
        pt = " OR ".join(f'"{t}"[pt]' for t in publication_types)
        terms.append(f"({pt})")
    return " AND ".join(terms)


def search_pubmed(
    query: str,
    max_results: int,
    publication_types: Optional[List[str]] = None,
    year_from: Optional[int] = None,
    year_to: Optional[int] = None,
    free_full_text: bool = False,
    humans: bool = False,
    language: Optional[str] = None,
) -> Tuple[int, List[Dict]]:
    """
    Returns (total hits reported by PubMed, parsed records up to max_results).
    Raises SourceError on transport failure.
    """
    term = build_term(query, publication_types, free_full_text, humans, language)
    params = _params(db="pubmed", term=term, retmode="json", usehistory="y", retmax=0)
    if year_from or year_to:
        params["datetype"] = "pdat"
        params["mindate"] = str(year_from or 1800)
        params["maxdate"] = str(year_to or 3000)

    resp = get_with_retry(f"{EUTILS_URL}/esearch.fcgi", "pubmed", params=params)
    result = resp.json().get("esearchresult", {})
    webenv = result.get("webenv")
    query_key = result.get("querykey")
    if not webenv or not query_key:
        raise SourceError("pubmed", "esearch did not return webenv/querykey")

    count = int(result.get("count") or 0)
    wanted = min(count, max_results, PUBMED_MAX_TOTAL)
    logger.info(f"🔎 PubMed: {count} hits for {term!r}, fetching {wanted}")

    items: List[Dict] = []
    for start in range(0, wanted, EFETCH_BATCH_SIZE):
        time.sleep(throttle_seconds())
        fetch_params = _params(
            db="pubmed",
            query_key=query_key,
            WebEnv=webenv,
            retstart=start,
            retmax=min(EFETCH_BATCH_SIZE, wanted - start),
            retmode="xml",
        )
        resp = get_with_retry(f"{EUTILS_URL}/efetch.fcgi", "pubmed", params=fetch_params)
        items.extend(parse_efetch_xml(resp.content))

    return count, items


def fetch_by_pmids(pmids: List[str]) -> List[Dict]:
    if not pmids:
        return []
    params = _params(db="pubmed", id=",".join(pmids), retmode="xml")
    resp = get_with_retry(f"{EUTILS_URL}/efetch.fcgi", "pubmed", params=params)
    return parse_efetch_xml(resp.content)


def parse_efetch_xml(xml_content) -> List[Dict]:
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise SourceError("pubmed", f"efetch returned malformed XML: {e}")

    records = []
    for article in root.findall(".//PubmedArticle"):
        try:
            record = _parse_article(article)
        except Exception as e:
            logger.warning(f"Skipping unparsable PubMed record: {e}")
            continue
        if record:
            records.append(record)
    return records


def _element_text(elem) -> str:
    if elem is None:
        return ""
    return clean_text("".join(elem.itertext()))


def _parse_article(article) -> Optional[Dict]:
    medline = article.find("MedlineCitation")
    if medline is None:
        return None

    pmid = normalize_pmid(medline.findtext("PMID"))
    if not pmid:
        return None

    art = medline.find("Article")
    if art is None:
        return None

    abstract_parts = [_element_text(a) for a in art.findall("Abstract/AbstractText")]
    abstract = " ".join(p for p in abstract_parts if p)

    authors = []
    for author in art.findall("AuthorList/Author"):
        last = author.findtext("LastName") or ""
        initials = author.findtext("Initials") or ""
        name = f"{last} {initials}".strip()
        if name:
            authors.append(name)

    year = parse_year(art.findtext("Journal/JournalIssue/PubDate/Year"))
    if year is None:
        year = parse_year(art.findtext("ArticleDate/Year") or art.findtext("Journal/JournalIssue/PubDate/MedlineDate"))

    doi = None
    for id_elem in article.findall("PubmedData/ArticleIdList/ArticleId"):
        if id_elem.get("IdType") == "doi":
            doi = normalize_doi(id_elem.text)
            break

    pub_types = [pt.text.strip() for pt in art.findall("PublicationTypeList/PublicationType") if pt.text]

    return {
        "source": "pubmed",
        "pmid": pmid,
        "doi": doi,
        "title": _element_text(art.find("ArticleTitle")),
        "abstract": abstract or None,
        "authors": ", ".join(authors) or None,
        "journal": clean_text(art.findtext("Journal/Title")) or None,
        "year": year,
        "url": f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
        "publication_types": [],
        "pubmed_publication_types": pub_types,
    }


def _parse_elink(xml_content) -> Dict[str, List[str]]:
    root = ET.fromstring(xml_content)
    links: Dict[str, List[str]] = {}
    for link_set in root.findall("LinkSet"):
        source_pmid = normalize_pmid(link_set.findtext("IdList/Id"))
        if not source_pmid:
            continue
        neighbors = []
        for link_id in link_set.findall("LinkSetDb/Link/Id"):
            pmid = normalize_pmid(link_id.text)
            if pmid and pmid != source_pmid and pmid not in neighbors:
                neighbors.append(pmid)
        links[source_pmid] = neighbors
    return links


def get_links(pmids: List[str]) -> Dict[str, Dict[str, List[str]]]:
    """
    One eLink round trip per direction for a batch of pmids.
    Returns {pmid: {"references": [...], "cited_by": [...]}}.
    Raises SourceError when either request fails.
    """
    if not pmids:
        return {}

    def _link(linkname: str) -> Dict[str, List[str]]:
        # repeated id= params keep one LinkSet per source pmid
        params = [("dbfrom", "pubmed"), ("db", "pubmed"), ("linkname", linkname), ("retmode", "xml")]
        params.extend(("id", pmid) for pmid in pmids)
        key = _api_key()
        if key:
            params.append(("api_key", key))
        resp = get_with_retry(f"{EUTILS_URL}/elink.fcgi", "pubmed", params=params)
        try:
            return _parse_elink(resp.content)
        except ET.ParseError as e:
            raise SourceError("pubmed", f"elink returned malformed XML: {e}")

    refs = _link("pubmed_pubmed_refs")
    time.sleep(throttle_seconds() / 2)
    cited_by = _link("pubmed_pubmed_citedin")

    return {
        pmid: {"references": refs.get(pmid, []), "cited_by": cited_by.get(pmid, [])}
        for pmid in pmids
    }


def europe_pmc_citation_count(pmid: str) -> int:
    url = f"{EUROPE_PMC_URL}/MED/{pmid}/citations"
    resp = get_with_retry(url, "europepmc", params={"format": "json", "pageSize": 1}, max_retries=2, allow_404=True)
    if resp is None:
        return 0
    return int(resp.json().get("hitCount") or 0)
