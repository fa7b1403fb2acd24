# File: api/models/job_models.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from api.models.search_models import CamelModel


class JobStatusResponse(CamelModel):
    has_job: bool = False
    job_id: Optional[str] = None
    status: Optional[str] = None
    progress: int = 0
    total_units: int = 0
    processed_units: int = 0
    error_count: int = 0
    elapsed_seconds: Optional[int] = None
    error_message: Optional[str] = None
    is_stalled: bool = False
    cancel_reason: Optional[str] = None
    current_phase: Optional[str] = None
    phase_progress: Optional[str] = None
    seconds_since_progress: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CancelJobResponse(CamelModel):
    ok: bool = True
    job_id: str
    message: str = "Job cancelled"


class GraphFetchRequest(CamelModel):
    selected_only: bool = False
    article_ids: Optional[List[str]] = None


class GraphFetchResponse(CamelModel):
    ok: bool = True
    job_id: Optional[str] = None
    total_articles: int = 0
    estimated_seconds: int = 0
    message: str = ""


class EmbeddingJobRequest(CamelModel):
    article_ids: Optional[List[str]] = None
    include_references: bool = True
    include_cited_by: bool = True
    batch_size: int = Field(50, ge=1, le=500)


class EmbeddingJobResponse(CamelModel):
    job_id: Optional[str] = None
    status: str
    total_articles: int = 0
    message: str = ""


class JobSummary(CamelModel):
    job_id: str
    status: str
    total_units: int = 0
    processed_units: int = 0
    error_count: int = 0
    cancel_reason: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EmbeddingStatsResponse(CamelModel):
    total_articles: int = 0
    with_embeddings: int = 0
    without_embeddings: int = 0
    model: Optional[str] = None
    cache: Dict[str, Any] = {}


class SemanticSearchRequest(CamelModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=100)
    include_neighbors: bool = True


class SemanticSearchHit(CamelModel):
    article_id: str
    title: Optional[str] = None
    year: Optional[int] = None
    pmid: Optional[str] = None
    doi: Optional[str] = None
    similarity: float


class SemanticSearchResponse(CamelModel):
    query: str
    results: List[SemanticSearchHit] = []
