"""Excepciones del pipeline de jobs.

Cada resultado que el llamador debe distinguir tiene su propia clase:
no encontrado, conflicto de versión, fallo transitorio o mensaje mal formado.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base de todos los errores propios del pipeline."""


class JobAlreadyExistsError(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job already exists: {job_id}")
        self.job_id = job_id


class JobNotFoundError(PipelineError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class VersionConflictError(PipelineError):
    """El registro cambió entre la lectura y la escritura condicionada."""

    def __init__(self, job_id: str, expected_version: str | None) -> None:
        super().__init__(
            f"Version conflict on job {job_id} (expected version {expected_version})"
        )
        self.job_id = job_id
        self.expected_version = expected_version


class InvalidTransitionError(PipelineError):
    """Un mutador intentó retroceder el estado o decrementar el progreso."""


class JobStartError(PipelineError):
    """No se pudo crear o encolar un job nuevo."""


class TransientError(PipelineError):
    """Fallo que puede resolverse reintentando (red, API externa)."""


class StationSourceError(TransientError):
    """La fuente de estaciones no respondió correctamente."""


class MalformedMessageError(PipelineError):
    """Mensaje de cola ilegible: reintentar no lo arregla, se descarta."""

    def __init__(self, reason: str, raw: str | bytes | None = None) -> None:
        super().__init__(reason)
        self.raw = raw


class RenderError(PipelineError):
    """No se pudo generar la imagen de una estación."""
