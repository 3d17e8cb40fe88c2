"""Dependencias compartidas por los routers v1."""

from fastapi import Request

from app.services.pipeline_service import PipelineService, get_pipeline


def get_current_pipeline(request: Request) -> PipelineService:
    """
    Pipeline guardado en `app.state` por el lifespan. Si todavía no hay uno
    (p. ej. la app se usa sin lifespan) se construye desde la configuración.
    Es síncrona: FastAPI la ejecuta en su threadpool, fuera del event loop.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = get_pipeline()
        request.app.state.pipeline = pipeline
    return pipeline
