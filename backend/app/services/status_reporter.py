"""Consultas de estado: sólo lectura, nunca bloquean al pipeline.

Hay dos modelos de lectura porque la tabla de jobs y el listado de imágenes
pueden ir retrasados el uno respecto al otro:

- `job_store`: se lee el registro del job tal cual.
- `artifacts`: se cuentan las imágenes bajo `{jobId}/` y se comparan con un
  número esperado configurado. Sin imágenes no hay forma de distinguir un job
  desconocido de uno recién creado, así que se responde "no encontrado".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from app.core.enums import JobStatus, StatusReadModel
from app.core.exceptions import JobNotFoundError
from app.models.job import Job, utc_now
from app.services.artifact_store import ArtifactStore, job_prefix
from app.services.job_store import JobStore


@dataclass
class JobStatusView:
    job_id: str
    status: JobStatus
    total_units: int
    processed_units: int
    failed_units: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "totalUnits": self.total_units,
            "processedUnits": self.processed_units,
            "failedUnits": self.failed_units,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "error": self.error_message,
        }


@dataclass
class ImageRef:
    name: str
    blob_name: str
    url: str

    def to_dict(self) -> dict:
        return {"name": self.name, "blobName": self.blob_name, "url": self.url}


class StatusReporter:
    def __init__(
        self,
        job_store: JobStore,
        artifact_store: ArtifactStore,
        *,
        read_model: StatusReadModel = StatusReadModel.JOB_STORE,
        expected_units: int = 50,
    ) -> None:
        self.job_store = job_store
        self.artifact_store = artifact_store
        self.read_model = read_model
        self.expected_units = expected_units

    def get_status(self, job_id: str) -> JobStatusView:
        """Estado del job según el modelo de lectura; JobNotFoundError si no existe."""
        if self.read_model == StatusReadModel.ARTIFACTS:
            return self.status_from_artifacts(job_id)
        return self.status_from_job_store(job_id)

    def status_from_job_store(self, job_id: str) -> JobStatusView:
        return _view_of(self.job_store.get(job_id))

    def status_from_artifacts(self, job_id: str) -> JobStatusView:
        count = len(self.artifact_store.list(job_prefix(job_id)))
        if count == 0:
            raise JobNotFoundError(job_id)
        expected = self.expected_units
        status = (
            JobStatus.COMPLETED if expected > 0 and count >= expected else JobStatus.PROCESSING
        )
        return JobStatusView(
            job_id=job_id,
            status=status,
            total_units=expected,
            processed_units=count,
        )

    def list_images(self, job_id: str) -> List[ImageRef]:
        """Imágenes ya guardadas del job, con su URL de descarga."""
        prefix = job_prefix(job_id)
        return [
            ImageRef(
                name=key[len(prefix):],
                blob_name=key,
                url=self.artifact_store.url_for(key),
            )
            for key in self.artifact_store.list(prefix)
        ]

    def list_jobs(self, top: int = 50) -> List[JobStatusView]:
        return [_view_of(job) for job in self.job_store.list_jobs(top)]

    def find_stuck_jobs(self, stale_after: timedelta, top: int = 200) -> List[JobStatusView]:
        """Jobs sin terminar cuyo `updated_at` es más antiguo que `stale_after`."""
        cutoff = utc_now() - stale_after
        return [_view_of(job) for job in self.job_store.list_stale(cutoff, top)]


def _view_of(job: Job) -> JobStatusView:
    return JobStatusView(
        job_id=job.id,
        status=job.status,
        total_units=job.total_units,
        processed_units=job.processed_units,
        failed_units=job.failed_units,
        created_at=job.created_at,
        updated_at=job.updated_at,
        error_message=job.error_message,
    )
