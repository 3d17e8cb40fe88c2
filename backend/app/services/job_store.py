"""Almacén de Jobs con escrituras condicionadas por versión.

Todas las tareas de estación corren en paralelo y compiten por el mismo
registro. Por eso la única forma de modificar un job tras crearlo es
`conditional_update`: se lee el registro, se calcula el nuevo valor a partir
de él y se escribe sólo si la versión leída sigue vigente.

`InMemoryJobStore` sirve para desarrollo y tests; `TableJobStore`
(en `azure_storage.py`) usa Azure Table Storage y su ETag como versión.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from app.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    VersionConflictError,
)
from app.models.job import Job, utc_now

JobMutator = Callable[[Job], Job]


class JobStore(ABC):
    """Contrato común a todos los backends."""

    @abstractmethod
    def create(self, job: Job) -> Job:
        """Guarda un job nuevo. Lanza JobAlreadyExistsError si el id ya existe."""

    @abstractmethod
    def get(self, job_id: str) -> Job:
        """Devuelve el job o lanza JobNotFoundError."""

    @abstractmethod
    def conditional_update(
        self, job_id: str, mutator: JobMutator, expected_version: Optional[str]
    ) -> Job:
        """Aplica `mutator` sólo si la versión almacenada es `expected_version`.

        Lanza VersionConflictError si otro escritor se adelantó y
        JobNotFoundError si el job no existe. Devuelve el registro guardado,
        con su versión nueva.
        """

    @abstractmethod
    def list_jobs(self, top: int = 50) -> List[Job]:
        """Listado acotado, más recientes primero."""

    @abstractmethod
    def list_stale(self, cutoff: datetime, top: int = 200) -> List[Job]:
        """Jobs sin terminar con `updated_at` anterior a `cutoff`, más antiguos primero.

        El filtro se aplica sobre todo el almacén antes de acotar a `top`.
        """

    def find(self, job_id: str) -> Optional[Job]:
        try:
            return self.get(job_id)
        except JobNotFoundError:
            return None


class InMemoryJobStore(JobStore):
    """
    Gestión de jobs en memoria, segura entre hilos.
    Cada llamada devuelve copias: nadie fuera del store toca el registro real.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _new_version() -> str:
        return uuid4().hex

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise JobAlreadyExistsError(job.id)
            stored = job.model_copy(deep=True)
            stored.version = self._new_version()
            self._jobs[job.id] = stored
            return stored.model_copy(deep=True)

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    def conditional_update(
        self, job_id: str, mutator: JobMutator, expected_version: Optional[str]
    ) -> Job:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if current.version != expected_version:
                raise VersionConflictError(job_id, expected_version)

            candidate = mutator(current.model_copy(deep=True))
            current.check_successor(candidate)
            candidate.updated_at = utc_now()
            candidate.version = self._new_version()
            self._jobs[job_id] = candidate
            return candidate.model_copy(deep=True)

    def list_jobs(self, top: int = 50) -> List[Job]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[:top]]

    def list_stale(self, cutoff: datetime, top: int = 200) -> List[Job]:
        with self._lock:
            stale = [
                job
                for job in self._jobs.values()
                if not job.status.is_terminal and job.updated_at < cutoff
            ]
            stale.sort(key=lambda j: j.updated_at)
            return [job.model_copy(deep=True) for job in stale[:top]]
