# api/routers/graph_jobs.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from api.dependencies.auth import get_current_user, get_db
from api.models.job_models import (
    CancelJobResponse,
    GraphFetchRequest,
    GraphFetchResponse,
    JobStatusResponse,
)
from database.models.job_model import JobKind
from services import job_service
from services.graph_fetch_worker import count_graph_targets, estimate_seconds

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{project_id}/articles/fetch-references", response_model=GraphFetchResponse)
async def start_fetch_references(
    project_id: str,
    payload: GraphFetchRequest = GraphFetchRequest(),
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        active = job_service.get_active_job(db, project_id, JobKind.GRAPH_FETCH)
        if active:
            return JSONResponse(
                status_code=409,
                content={"error": "A reference fetch job is already running", "jobId": active.id},
            )

        total = count_graph_targets(db, project_id, payload.selected_only, payload.article_ids)
        if total == 0:
            return GraphFetchResponse(
                ok=True,
                job_id=None,
                total_articles=0,
                message="No articles with a PubMed id to fetch references for",
            )

        params = {"selectedOnly": payload.selected_only, "articleIds": payload.article_ids}
        job, created = job_service.submit_job(db, JobKind.GRAPH_FETCH, project_id, current_user, total, params)
        if not created:
            return JSONResponse(
                status_code=409,
                content={"error": "A reference fetch job is already running", "jobId": job.id},
            )

        return GraphFetchResponse(
            ok=True,
            job_id=job.id,
            total_articles=total,
            estimated_seconds=estimate_seconds(total),
            message=f"Fetching references for {total} articles in the background",
        )
    except HTTPException:
        raise
    except Exception:
        logger.error(f"Failed to start reference fetch for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{project_id}/articles/fetch-references/status", response_model=JobStatusResponse)
async def fetch_references_status(
    project_id: str,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> JobStatusResponse:
    try:
        return job_service.get_job_status(db, project_id, JobKind.GRAPH_FETCH)
    except Exception:
        logger.error(f"Failed to read reference fetch status for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{project_id}/articles/fetch-references/cancel", response_model=CancelJobResponse)
async def cancel_fetch_references(
    project_id: str,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CancelJobResponse:
    try:
        job_id = job_service.cancel_job(db, project_id, JobKind.GRAPH_FETCH)
    except job_service.JobNotFoundError:
        raise HTTPException(status_code=404, detail="No active job found")
    except Exception:
        logger.error(f"Failed to cancel reference fetch for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return CancelJobResponse(job_id=job_id)
