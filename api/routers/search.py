# api/routers/search.py
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.dependencies.auth import get_current_user, get_db
from api.models.search_models import SearchRequest, SearchResponse
from services.llm_factory import ConfigurationError
from services.search_service import run_search

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{project_id}/search", response_model=SearchResponse)
async def search_endpoint(
    project_id: str,
    payload: SearchRequest,
    current_user: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SearchResponse:
    try:
        return await run_search(db, project_id, current_user, payload)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.error(f"Search failed for project {project_id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
