"""Enumeraciones compartidas que describen estados y modos de despliegue."""

from enum import Enum


class JobStatus(str, Enum):
    """Estados posibles de un job de imágenes meteorológicas."""

    CREATED = "Created"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Sólo se avanza: Created -> Processing -> Completed; Failed desde cualquier no terminal."""
        if target == self:
            return True
        if self.is_terminal:
            return False
        if target == JobStatus.FAILED:
            return True
        return _STATUS_ORDER[target] > _STATUS_ORDER[self]


_STATUS_ORDER = {
    JobStatus.CREATED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
}


class StorageBackend(str, Enum):
    """Dónde viven el JobStore, las colas y los artefactos."""

    MEMORY = "memory"
    LOCAL = "local"  # colas y jobs en memoria, imágenes en disco
    AZURE = "azure"


class StatusReadModel(str, Enum):
    """Cómo se reconstruye el progreso de un job para las consultas."""

    JOB_STORE = "job_store"
    ARTIFACTS = "artifacts"
