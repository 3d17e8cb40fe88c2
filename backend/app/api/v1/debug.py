from fastapi import APIRouter, Depends

from app.api.v1.deps import get_current_pipeline
from app.api.v1.jobs import require_api_key
from app.services.pipeline_service import PipelineService

router = APIRouter(
    prefix="/debug", tags=["debug"], dependencies=[Depends(require_api_key)]
)


@router.get("/queues", summary="Approximate message counts per queue")
def debug_queues(pipeline: PipelineService = Depends(get_current_pipeline)) -> dict:
    counts = pipeline.queue_counts()
    return {
        "queues": [
            {"name": name, "approximateMessagesCount": count}
            for name, count in counts.items()
        ]
    }
