from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.api.v1.deps import get_current_pipeline
from app.services.artifact_store import job_prefix
from app.services.pipeline_service import PipelineService

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


@router.get("/{job_id}/{name}", summary="Download a generated image")
def download_artifact(
    job_id: str, name: str, pipeline: PipelineService = Depends(get_current_pipeline)
) -> Response:
    """
    Sólo tiene sentido con los backends memory/local: con Azure las URLs
    de las imágenes apuntan directamente al blob con SAS.
    """
    try:
        data = pipeline.artifact_store.get(f"{job_prefix(job_id)}{name}")
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Image not found.",
        )
    return Response(content=data, media_type="image/jpeg")
