from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import List

from app.core.config import Settings, get_settings
from app.core.enums import StorageBackend
from app.core.exceptions import MalformedMessageError
from app.models.job import Job
from app.models.messages import StartMessage, decode_message
from app.services.artifact_store import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
)
from app.services.background_source import HttpBackgroundSource
from app.services.fanout_worker import StationFanoutWorker, StationSource
from app.services.job_initiator import JobInitiator
from app.services.job_store import InMemoryJobStore, JobStore
from app.services.job_updates import update_job_with_retry
from app.services.queue_consumer import QueueConsumer
from app.services.render_service import RenderService
from app.services.retry import RetryPolicy
from app.services.station_source import BuienradarStationSource
from app.services.status_reporter import JobStatusView, StatusReporter
from app.services.task_worker import ArtifactRenderer, StationTaskWorker
from app.services.work_queue import InMemoryWorkQueue, WorkQueue

logger = logging.getLogger(__name__)


class PipelineService:
    """
    Ensambla el pipeline de un job de imágenes:
    inicio -> cola start-jobs -> fan-out -> cola image-jobs -> tareas -> JobStore.

    Es el único sitio que lee `Settings`; cada componente recibe por
    constructor los valores que necesita.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        job_store: JobStore | None = None,
        start_queue: WorkQueue | None = None,
        task_queue: WorkQueue | None = None,
        start_poison_queue: WorkQueue | None = None,
        task_poison_queue: WorkQueue | None = None,
        artifact_store: ArtifactStore | None = None,
        station_source: StationSource | None = None,
        renderer: ArtifactRenderer | None = None,
    ) -> None:
        self.settings = settings

        if settings.storage_backend == StorageBackend.AZURE and job_store is None:
            self._init_azure_backends(settings)
        else:
            self.job_store = job_store or InMemoryJobStore()
            self.start_queue = start_queue or InMemoryWorkQueue(settings.start_queue_name)
            self.task_queue = task_queue or InMemoryWorkQueue(settings.task_queue_name)
            self.start_poison_queue = start_poison_queue or InMemoryWorkQueue(
                f"{settings.start_queue_name}-poison"
            )
            self.task_poison_queue = task_poison_queue or InMemoryWorkQueue(
                f"{settings.task_queue_name}-poison"
            )
            if artifact_store is not None:
                self.artifact_store = artifact_store
            elif settings.storage_backend == StorageBackend.LOCAL:
                self.artifact_store = LocalArtifactStore(settings.data_dir)
            else:
                self.artifact_store = InMemoryArtifactStore()

        self.station_source = station_source or BuienradarStationSource(
            settings.stations_url, timeout=settings.station_fetch_timeout_s
        )
        self.renderer = renderer or RenderService()
        self.background_source = (
            HttpBackgroundSource(
                settings.background_image_url, timeout=settings.background_fetch_timeout_s
            )
            if settings.background_image_url
            else None
        )

        self.update_policy = RetryPolicy(
            max_attempts=settings.status_update_max_attempts,
            base_delay=settings.status_update_base_delay_s,
            max_delay=settings.status_update_max_delay_s,
        )

        self.initiator = JobInitiator(self.job_store, self.start_queue)
        self.fanout_worker = StationFanoutWorker(
            self.job_store,
            self.station_source,
            self.task_queue,
            max_stations=settings.stations_to_process,
            fetch_policy=RetryPolicy(max_attempts=settings.station_fetch_max_attempts, base_delay=1.0),
            update_policy=RetryPolicy(
                max_attempts=settings.fanout_update_max_attempts,
                base_delay=settings.status_update_base_delay_s,
                max_delay=settings.status_update_max_delay_s,
            ),
        )
        self.task_worker = StationTaskWorker(
            self.job_store,
            self.renderer,
            self.artifact_store,
            update_policy=self.update_policy,
            background_source=self.background_source,
        )
        self.reporter = StatusReporter(
            self.job_store,
            self.artifact_store,
            read_model=settings.status_read_model,
            expected_units=settings.expected_station_count,
        )

        self.start_consumer = QueueConsumer(
            self.start_queue,
            self.fanout_worker.handle,
            poison_queue=self.start_poison_queue,
            on_poison=self._fail_job_of,
            batch_size=settings.queue_batch_size,
            visibility_timeout=settings.queue_visibility_timeout_s,
            max_dequeue_count=settings.queue_max_dequeue_count,
            concurrency=1,
            poll_interval=settings.worker_poll_interval_s,
        )
        self.task_consumer = QueueConsumer(
            self.task_queue,
            self.task_worker.handle,
            poison_queue=self.task_poison_queue,
            on_poison=self._record_poisoned_task,
            batch_size=settings.queue_batch_size,
            visibility_timeout=settings.queue_visibility_timeout_s,
            max_dequeue_count=settings.queue_max_dequeue_count,
            concurrency=settings.task_worker_concurrency,
            poll_interval=settings.worker_poll_interval_s,
        )

    def _init_azure_backends(self, settings: Settings) -> None:
        from app.services.azure_storage import (
            BlobArtifactStore,
            StorageWorkQueue,
            TableJobStore,
        )

        conn = settings.storage_connection_string
        self.job_store = TableJobStore.from_connection_string(conn, settings.job_status_table_name)
        self.start_queue = StorageWorkQueue.from_connection_string(conn, settings.start_queue_name)
        self.task_queue = StorageWorkQueue.from_connection_string(conn, settings.task_queue_name)
        self.start_poison_queue = StorageWorkQueue.from_connection_string(
            conn, f"{settings.start_queue_name}-poison"
        )
        self.task_poison_queue = StorageWorkQueue.from_connection_string(
            conn, f"{settings.task_queue_name}-poison"
        )
        self.artifact_store = BlobArtifactStore.from_connection_string(
            conn, settings.images_container_name, settings.sas_expiry_minutes
        )

    # ---------- API usada por los endpoints ----------

    def start_job(self) -> str:
        return self.initiator.start_job()

    def get_status(self, job_id: str) -> JobStatusView:
        return self.reporter.get_status(job_id)

    def stuck_jobs(self) -> List[JobStatusView]:
        return self.reporter.find_stuck_jobs(
            timedelta(minutes=self.settings.stuck_job_after_minutes)
        )

    def queue_counts(self) -> dict:
        return {
            queue.name: queue.approximate_count()
            for queue in (
                self.start_queue,
                self.task_queue,
                self.start_poison_queue,
                self.task_poison_queue,
            )
        }

    # ---------- Workers en proceso ----------

    def run_until_idle(self, max_rounds: int = 100) -> None:
        """Vacía ambas colas en orden; útil en tests y en ejecuciones locales."""
        for _ in range(max_rounds):
            processed = self.start_consumer.drain() + self.task_consumer.drain()
            if processed == 0:
                return

    def start_workers(self) -> None:
        self.start_consumer.start()
        self.task_consumer.start()

    def stop_workers(self) -> None:
        self.start_consumer.stop()
        self.task_consumer.stop()

    # ---------- Mensajes venenosos ----------

    def _fail_job_of(self, raw: str) -> None:
        """Un mensaje de inicio agotó sus entregas: el job no avanzará."""
        try:
            message = decode_message(raw)
        except MalformedMessageError:
            return
        if not isinstance(message, StartMessage):
            return

        def mutator(job: Job) -> Job:
            job.mark_failed("Fan-out failed after repeated delivery attempts")
            return job

        update_job_with_retry(
            self.job_store, message.job_id, mutator, self.update_policy, operation="mark failed"
        )
        logger.error("Job %s marked as Failed after poisoned start message", message.job_id)

    def _record_poisoned_task(self, raw: str) -> None:
        try:
            message = decode_message(raw)
        except MalformedMessageError:
            return

        def mutator(job: Job) -> Job:
            job.record_failed_unit()
            return job

        update_job_with_retry(
            self.job_store, message.job_id, mutator, self.update_policy, operation="failed-unit update"
        )


@lru_cache
def get_pipeline() -> PipelineService:
    """Instancia única por proceso, creada a partir de la configuración."""
    return PipelineService(get_settings())
