"""Fan-out: un mensaje de inicio se convierte en una tarea por estación.

Orden de operaciones:

1) Descargar las estaciones (reintentando fallos transitorios).
2) Aplicar el límite configurado de estaciones.
3) En una sola escritura condicionada: marcar el fan-out como hecho, fijar
   `total_units` y pasar el job a Processing. Si el mensaje de inicio llega
   de nuevo, la marca ya está puesta y no se reparte por segunda vez.
4) Encolar una tarea por estación.

Fijar el total antes de encolar garantiza que ninguna tarea ve
`total_units = 0` y que la última en terminar puede marcar el job como
completado.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol

from app.core.exceptions import PipelineError, StationSourceError, TransientError
from app.models.job import Job
from app.models.messages import TaskMessage, decode_start_message
from app.models.station import Station
from app.services.job_store import JobStore
from app.services.job_updates import update_job_with_retry
from app.services.retry import RetryPolicy
from app.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)


class StationSource(Protocol):
    def fetch_stations(self) -> List[Station]: ...


class FanoutAlreadyPerformed(PipelineError):
    """El job ya se repartió en una entrega anterior del mismo mensaje."""


@dataclass
class FanoutResult:
    job_id: str
    queued: int = 0
    skipped: bool = False


class StationFanoutWorker:
    def __init__(
        self,
        job_store: JobStore,
        station_source: StationSource,
        task_queue: WorkQueue,
        *,
        max_stations: int = 0,
        fetch_policy: RetryPolicy | None = None,
        update_policy: RetryPolicy | None = None,
    ) -> None:
        self.job_store = job_store
        self.station_source = station_source
        self.task_queue = task_queue
        self.max_stations = max_stations
        self.fetch_policy = fetch_policy or RetryPolicy(max_attempts=3, base_delay=1.0)
        self.update_policy = update_policy or RetryPolicy()

    def handle(self, raw: str) -> FanoutResult:
        """Punto de entrada del consumidor de la cola start-jobs."""
        message = decode_start_message(raw)
        return self.fan_out(message.job_id)

    def fan_out(self, job_id: str) -> FanoutResult:
        job = self.job_store.get(job_id)
        if job.fanout_started or job.status.is_terminal:
            logger.warning(
                "Job %s already fanned out (status %s); ignoring duplicate start message",
                job_id,
                job.status.value,
            )
            return FanoutResult(job_id=job_id, skipped=True)

        logger.info("Processing weather data for job %s", job_id)
        stations = self.select_stations(self._fetch_stations())

        try:
            self._claim(job_id, len(stations))
        except FanoutAlreadyPerformed:
            logger.warning("Job %s was fanned out concurrently; skipping", job_id)
            return FanoutResult(job_id=job_id, skipped=True)

        queued = 0
        try:
            for station in stations:
                message = TaskMessage(
                    job_id=job_id,
                    station_name=station.name,
                    temperature=station.temperature,
                )
                self.task_queue.enqueue(message.to_json())
                queued += 1
                logger.debug("Queued image task #%s for %s", queued, station.name)
        except Exception as e:
            # Con la marca ya puesta nadie volverá a repartir: el job no
            # podría completarse nunca, así que se marca como fallido
            logger.exception("Fan-out of job %s interrupted after %s tasks", job_id, queued)
            self._mark_failed(job_id, f"Fan-out interrupted after {queued} tasks: {e}")
            raise

        logger.info("Queued %s stations for job %s", queued, job_id)
        return FanoutResult(job_id=job_id, queued=queued)

    def select_stations(self, stations: List[Station]) -> List[Station]:
        if self.max_stations > 0 and len(stations) > self.max_stations:
            return stations[: self.max_stations]
        return stations

    # ---------- Helpers internos ----------

    def _fetch_stations(self) -> List[Station]:
        policy = self.fetch_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return self.station_source.fetch_stations()
            except StationSourceError as e:
                if attempt == policy.max_attempts:
                    logger.error(
                        "Station feed failed after %s attempts: %s", policy.max_attempts, e
                    )
                    raise
                logger.warning("Station feed failed (attempt %s): %s", attempt, e)
                policy.backoff(attempt)
        raise StationSourceError("Station feed retry budget is empty")

    def _claim(self, job_id: str, total_units: int) -> Job:
        def mutator(job: Job) -> Job:
            if job.fanout_started or job.status.is_terminal:
                raise FanoutAlreadyPerformed(job_id)
            job.register_fanout(total_units)
            return job

        updated = update_job_with_retry(
            self.job_store, job_id, mutator, self.update_policy, operation="fan-out"
        )
        if updated is None:
            raise TransientError(f"Could not record fan-out for job {job_id}")
        return updated

    def _mark_failed(self, job_id: str, error: str) -> None:
        def mutator(job: Job) -> Job:
            job.mark_failed(error)
            return job

        update_job_with_retry(
            self.job_store, job_id, mutator, self.update_policy, operation="mark failed"
        )
