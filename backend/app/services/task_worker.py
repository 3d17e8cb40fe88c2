"""Tarea de estación: genera la imagen, la guarda y suma progreso al job.

Muchas instancias corren a la vez contra el mismo registro del job. El
incremento de `processed_units` se hace con el bucle optimista de
`update_job_with_retry`: sin bloqueos, reintentando con backoff ante
conflictos de versión. Si se agotan los intentos se registra el error y se
sigue adelante: la imagen ya está guardada y como mucho se pierde ese
incremento.

Una tarea entregada dos veces sobrescribe la misma imagen pero suma dos
veces al contador; ese sobreconteo es un riesgo aceptado.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from app.core.enums import JobStatus
from app.core.exceptions import RenderError
from app.models.job import Job
from app.models.messages import TaskMessage, decode_task_message
from app.services.artifact_store import ArtifactStore, artifact_key
from app.services.job_store import JobStore
from app.services.job_updates import update_job_with_retry
from app.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ArtifactRenderer(Protocol):
    def render(
        self, station_name: str, temperature: float | None, background: bytes | None = None
    ) -> bytes: ...


class BackgroundSource(Protocol):
    def fetch(self) -> bytes | None: ...


@dataclass
class TaskResult:
    job_id: str
    station_name: str
    artifact_key: str | None = None
    rendered: bool = False
    status_recorded: bool = False
    job_status: JobStatus | None = None


class StationTaskWorker:
    def __init__(
        self,
        job_store: JobStore,
        renderer: ArtifactRenderer,
        artifact_store: ArtifactStore,
        *,
        update_policy: RetryPolicy | None = None,
        background_source: BackgroundSource | None = None,
    ) -> None:
        self.job_store = job_store
        self.renderer = renderer
        self.artifact_store = artifact_store
        self.background_source = background_source
        self.update_policy = update_policy or RetryPolicy()

    def handle(self, raw: str) -> TaskResult:
        """Punto de entrada del consumidor de la cola image-jobs."""
        return self.process(decode_task_message(raw))

    def process(self, message: TaskMessage) -> TaskResult:
        result = TaskResult(job_id=message.job_id, station_name=message.station_name)
        key = artifact_key(message.job_id, message.station_name)

        background = self.background_source.fetch() if self.background_source else None
        try:
            data = self.renderer.render(
                message.station_name, message.temperature, background=background
            )
            self.artifact_store.put(key, data, content_type="image/jpeg")
        except (RenderError, OSError) as e:
            logger.error(
                "Error generating image for station %s of job %s: %s",
                message.station_name,
                message.job_id,
                e,
            )
            updated = self._record(message.job_id, failed=True)
            result.status_recorded = updated is not None
            result.job_status = updated.status if updated else None
            return result

        result.artifact_key = key
        result.rendered = True
        logger.info("Uploaded %s", key)

        updated = self._record(message.job_id, failed=False)
        result.status_recorded = updated is not None
        result.job_status = updated.status if updated else None
        return result

    def _record(self, job_id: str, *, failed: bool) -> Job | None:
        def mutator(job: Job) -> Job:
            if failed:
                job.record_failed_unit()
            else:
                job.record_processed_unit()
            return job

        def fallback() -> Job:
            # Registro perdido por un fallo anterior: se recrea con lo que
            # sabemos, esta única unidad
            return Job(
                id=job_id,
                status=JobStatus.PROCESSING,
                total_units=1,
                processed_units=0 if failed else 1,
                failed_units=1 if failed else 0,
            )

        operation = "failed-unit update" if failed else "progress update"
        updated = update_job_with_retry(
            self.job_store,
            job_id,
            mutator,
            self.update_policy,
            create_if_missing=fallback,
            operation=operation,
        )
        if updated is None:
            logger.error(
                "Status contribution lost for job %s: %s retries exhausted",
                job_id,
                operation,
            )
        return updated
