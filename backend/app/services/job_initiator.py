"""Arranque de jobs: registro inicial y mensaje para el fan-out."""

from __future__ import annotations

import logging
from typing import Callable
from uuid import uuid4

from app.core.exceptions import JobAlreadyExistsError, JobStartError
from app.models.job import Job
from app.models.messages import StartMessage
from app.services.job_store import JobStore
from app.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    # uuid4 usa os.urandom: identificadores aleatorios criptográficamente
    return str(uuid4())


class JobInitiator:
    """
    Crea el registro `Created` de un job y encola su mensaje de inicio.
    El job es visible para las consultas en cuanto se escribe el registro.
    """

    def __init__(
        self,
        job_store: JobStore,
        start_queue: WorkQueue,
        id_factory: Callable[[], str] = new_job_id,
    ) -> None:
        self.job_store = job_store
        self.start_queue = start_queue
        self.id_factory = id_factory

    def start_job(self) -> str:
        """Devuelve el id del job nuevo o lanza JobStartError."""
        job = self._create_record()

        try:
            self.start_queue.enqueue(StartMessage(job_id=job.id).to_json())
        except Exception as e:
            # El registro queda en Created sin consumidor; se detecta por
            # antigüedad de updated_at en el listado de jobs atascados
            logger.exception("Could not enqueue start message for job %s", job.id)
            raise JobStartError(f"Job {job.id} created but not queued: {e}") from e

        logger.info("Started job %s", job.id)
        return job.id

    def _create_record(self) -> Job:
        # Una colisión de uuid4 es improbable, pero se reintenta una vez
        for attempt in (1, 2):
            job_id = self.id_factory()
            try:
                return self.job_store.create(Job(id=job_id))
            except JobAlreadyExistsError:
                logger.warning("Job id collision on %s (attempt %s)", job_id, attempt)
        raise JobStartError("Could not allocate a unique job id")
