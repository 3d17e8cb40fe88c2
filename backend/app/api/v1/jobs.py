from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from app.api.v1.deps import get_current_pipeline
from app.core.exceptions import JobNotFoundError, JobStartError
from app.services.pipeline_service import PipelineService

router = APIRouter(prefix="/jobs", tags=["jobs"])

logger = logging.getLogger(__name__)


def require_api_key(
    x_api_key: Optional[str] = Header(default=None),
    pipeline: PipelineService = Depends(get_current_pipeline),
) -> None:
    """
    Si hay API_KEY configurada, la cabecera x-api-key debe coincidir.
    """
    expected = pipeline.settings.api_key
    if not expected:
        return
    if x_api_key is None or not secrets.compare_digest(expected, x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
        )


def not_found(job_id: str) -> JSONResponse:
    # Cuerpo distinto de un job existente pero incompleto
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"jobId": job_id, "status": "NotFound"},
    )


@router.api_route(
    "/start",
    methods=["POST", "GET"],
    summary="Start a weather imaging job",
    dependencies=[Depends(require_api_key)],
)
def start_job(pipeline: PipelineService = Depends(get_current_pipeline)) -> dict:
    try:
        job_id = pipeline.start_job()
    except JobStartError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Job could not be started: {e}",
        )
    return {"jobId": job_id}


@router.get("", summary="List recent jobs")
def list_jobs(
    top: Optional[int] = Query(default=None),
    pipeline: PipelineService = Depends(get_current_pipeline),
) -> dict:
    limit = top if top is not None else pipeline.settings.list_jobs_default_top
    limit = max(1, min(limit, 200))

    items = [
        {
            "id": view.job_id,
            "status": view.status.value,
            "createdAt": view.created_at.isoformat() if view.created_at else None,
            "updatedAt": view.updated_at.isoformat() if view.updated_at else None,
        }
        for view in pipeline.reporter.list_jobs(limit)
    ]
    return {"count": len(items), "items": items}


@router.get("/stuck", summary="Jobs that stopped advancing")
def list_stuck_jobs(pipeline: PipelineService = Depends(get_current_pipeline)) -> dict:
    items = [view.to_dict() for view in pipeline.stuck_jobs()]
    return {
        "staleAfterMinutes": pipeline.settings.stuck_job_after_minutes,
        "count": len(items),
        "items": items,
    }


@router.get("/{job_id}", summary="Get job status")
def get_job_status(job_id: str, pipeline: PipelineService = Depends(get_current_pipeline)):
    try:
        view = pipeline.get_status(job_id)
    except JobNotFoundError:
        return not_found(job_id)
    return view.to_dict()


@router.get("/{job_id}/images", summary="List the images produced by a job")
def get_job_images(job_id: str, pipeline: PipelineService = Depends(get_current_pipeline)) -> dict:
    logger.info("Listing images for job %s", job_id)
    images = [image.to_dict() for image in pipeline.reporter.list_images(job_id)]
    return {"jobId": job_id, "count": len(images), "images": images}
