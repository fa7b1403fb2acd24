# utils/id_normalization.py
from typing import Optional, List, Iterable, Union
import re

DOI_PREFIXES = (
    "https://doi.org/",
    "http://doi.org/",
    "https://dx.doi.org/",
    "http://dx.doi.org/",
    "doi:",
)


def normalize_pmid(raw_id) -> Optional[str]:
    """
    PubMed accession ids are numeric. Returns the digit string or None.
    """
    if raw_id is None:
        return None
    value = str(raw_id).strip()
    if not re.fullmatch(r"\d+", value, re.ASCII):
        return None
    # "00123" and "123" are the same record
    return str(int(value))


def normalize_doi(raw_doi: Optional[str]) -> Optional[str]:
    if not raw_doi or not str(raw_doi).strip():
        return None

    doi = str(raw_doi).strip().lower()
    for prefix in DOI_PREFIXES:
        if doi.startswith(prefix):
            doi = doi[len(prefix):].strip()
            break

    return doi or None


def split_authors(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Free-text author strings ("Smith J, Doe A") become an ordered list.
    Lists are cleaned but kept in order.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = list(raw)
    return [p.strip() for p in parts if p and str(p).strip()]


def parse_year(raw) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    match = re.search(r"(1[89]\d{2}|20\d{2})", str(raw))
    return int(match.group(1)) if match else None
