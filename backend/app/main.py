"""Punto de entrada de la API usando FastAPI.

Este módulo crea la aplicación, configura CORS y logging, registra los
routers y, si así se configura, arranca los consumidores de las colas en el
mismo proceso.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from app.api.v1.artifacts import router as artifacts_router
from app.api.v1.debug import router as debug_router
from app.api.v1.deps import get_current_pipeline
from app.api.v1.jobs import router as jobs_router
from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.services.pipeline_service import PipelineService, get_pipeline

settings = get_settings()
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Un pipeline ya presente en `app.state` tiene prioridad sobre la configuración
    if getattr(app.state, "pipeline", None) is None:
        # Con Azure construir el pipeline abre clientes y crea recursos
        app.state.pipeline = await run_in_threadpool(get_pipeline)
    pipeline = app.state.pipeline

    if settings.run_workers_in_process:
        pipeline.start_workers()
    try:
        yield
    finally:
        if settings.run_workers_in_process:
            pipeline.stop_workers()


# Instancia principal de FastAPI; aquí es donde se montan rutas y middleware.
app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configurable via `settings.allowed_origins` (definido en .env)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(o) for o in settings.allowed_origins],
    allow_credentials=settings.allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "x-api-key"],
)


@app.middleware("http")
async def ensure_cors_header(request: Request, call_next):
    """Repone las cabeceras CORS en respuestas que no pasan por CORSMiddleware
    (p. ej. errores no controlados). Con `*` responde `*`; si no, sólo hace
    eco de orígenes de la lista blanca.
    """
    origin = request.headers.get("origin")
    response = await call_next(request)

    if not origin:
        return response

    allowed = [str(o) for o in settings.allowed_origins]
    if allowed == ["*"]:
        response.headers["Access-Control-Allow-Origin"] = "*"
    elif origin in allowed:
        response.headers["Access-Control-Allow-Origin"] = origin
    else:
        return response

    if settings.allow_credentials:
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.get("/health")
def health(pipeline: PipelineService = Depends(get_current_pipeline)):
    return {
        "status": "ok",
        "storageBackend": pipeline.settings.storage_backend.value,
        "table": pipeline.settings.job_status_table_name,
        "queues": [pipeline.start_queue.name, pipeline.task_queue.name],
        "container": pipeline.settings.images_container_name,
    }


app.include_router(jobs_router, prefix="/api/v1")
app.include_router(artifacts_router, prefix="/api/v1")
app.include_router(debug_router, prefix="/api/v1")
