# api/routers/embeddings.py
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.dependencies.auth import get_current_user, get_db
from api.models.job_models import (
    CancelJobResponse,
    EmbeddingJobRequest,
    EmbeddingJobResponse,
    EmbeddingStatsResponse,
    JobStatusResponse,
    JobSummary,
    SemanticSearchRequest,
    SemanticSearchResponse,
)
from clients.embedding_client import ensure_configured
from database.models.job_model import JobKind
from services import job_service
from services.embedding_service import embedding_stats, find_missing_article_ids, semantic_search
from services.llm_factory import ConfigurationError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{project_id}/embeddings/jobs", response_model=EmbeddingJobResponse)
async def start_embedding_job(
    project_id: str,
    payload: EmbeddingJobRequest = EmbeddingJobRequest(),
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> EmbeddingJobResponse:
    try:
        ensure_configured()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        active = job_service.get_active_job(db, project_id, JobKind.EMBEDDINGS)
        if active:
            return EmbeddingJobResponse(
                job_id=active.id,
                status=active.status,
                total_articles=active.total_units or 0,
                message="An embedding job is already in progress",
            )

        missing = find_missing_article_ids(
            db,
            project_id,
            include_references=payload.include_references,
            include_cited_by=payload.include_cited_by,
            article_ids=payload.article_ids,
        )
        if not missing:
            return EmbeddingJobResponse(
                job_id=None,
                status="completed",
                total_articles=0,
                message="All articles already have embeddings",
            )

        params = {
            "articleIds": payload.article_ids,
            "includeReferences": payload.include_references,
            "includeCitedBy": payload.include_cited_by,
            "batchSize": payload.batch_size,
        }
        job, created = job_service.submit_job(db, JobKind.EMBEDDINGS, project_id, current_user, len(missing), params)
        return EmbeddingJobResponse(
            job_id=job.id,
            status=job.status,
            total_articles=job.total_units or 0,
            message=(
                f"Generating embeddings for {len(missing)} articles"
                if created else "An embedding job is already in progress"
            ),
        )
    except Exception:
        logger.error(f"Failed to start embedding job for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{project_id}/embeddings/jobs", response_model=List[JobSummary])
async def list_embedding_jobs(
    project_id: str,
    limit: int = Query(10, ge=1, le=100),
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[JobSummary]:
    jobs = job_service.list_jobs(db, project_id, JobKind.EMBEDDINGS, limit=limit)
    return [
        JobSummary(
            job_id=j.id,
            status=j.status,
            total_units=j.total_units or 0,
            processed_units=j.processed_units or 0,
            error_count=j.error_count or 0,
            cancel_reason=j.cancel_reason,
            params=j.params,
            created_at=j.created_at,
            completed_at=j.completed_at,
        )
        for j in jobs
    ]


@router.get("/{project_id}/embeddings/jobs/{job_id}", response_model=JobStatusResponse)
async def embedding_job_status(
    project_id: str,
    job_id: str,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> JobStatusResponse:
    try:
        status = job_service.get_job_status(db, project_id, JobKind.EMBEDDINGS, job_id=job_id)
    except Exception:
        logger.error(f"Failed to read embedding job {job_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    if not status.has_job:
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.post("/{project_id}/embeddings/jobs/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_embedding_job(
    project_id: str,
    job_id: str,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CancelJobResponse:
    try:
        cancelled_id = job_service.cancel_job(db, project_id, JobKind.EMBEDDINGS, job_id=job_id)
    except job_service.JobNotFoundError:
        raise HTTPException(status_code=404, detail="No active job found")
    except Exception:
        logger.error(f"Failed to cancel embedding job {job_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return CancelJobResponse(job_id=cancelled_id)


@router.get("/{project_id}/embeddings/stats", response_model=EmbeddingStatsResponse)
async def get_embedding_stats(
    project_id: str,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> EmbeddingStatsResponse:
    try:
        return embedding_stats(db, project_id)
    except Exception:
        logger.error(f"Failed to compute embedding stats for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{project_id}/embeddings/search", response_model=SemanticSearchResponse)
async def semantic_search_endpoint(
    project_id: str,
    payload: SemanticSearchRequest,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SemanticSearchResponse:
    try:
        return semantic_search(db, project_id, payload.query, payload.limit, payload.include_neighbors)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.error(f"Semantic search failed for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
