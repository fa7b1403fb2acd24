# File: api/models/search_models.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Dict, List, Literal, Optional

SearchSource = Literal["pubmed", "doaj", "wiley"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchFilters(CamelModel):
    publication_types: List[str] = []
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    free_full_text: bool = False
    humans: bool = False
    language: Optional[str] = None

    # Post-processing toggles, applied to newly added articles only
    translate: bool = False
    enrich: bool = True
    detect_stats: bool = False


class SearchRequest(CamelModel):
    query: str = Field(..., min_length=1)
    sources: List[SearchSource] = ["pubmed"]
    filters: SearchFilters = SearchFilters()
    max_results: int = Field(50, ge=1, le=1000)


class SourceCounts(CamelModel):
    count: int = 0
    added: int = 0


class SearchResponse(CamelModel):
    total_found: int = 0
    fetched: int = 0
    added: int = 0
    skipped: int = 0
    translated: int = 0
    enriched: int = 0
    stats_found: int = 0
    sources: Dict[str, SourceCounts] = {}
    message: str = ""
