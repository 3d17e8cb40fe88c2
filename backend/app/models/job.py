"""Definición del modelo de datos de un Job.

Un job representa una ejecución completa del pipeline (descargar las
medidas, repartir una tarea por estación y generar una imagen por cada una).
El registro vive en el JobStore y sólo se modifica mediante escrituras
condicionadas a su `version`, así que los métodos de este modelo nunca
persisten nada: devuelven o modifican una copia que el llamador envía al
store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from app.core.enums import JobStatus
from app.core.exceptions import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    """Modelo principal que describe el estado de un job."""

    id: str
    status: JobStatus = JobStatus.CREATED  # Estado actual en el ciclo de vida
    total_units: int = 0  # Tareas de estación esperadas (0 hasta el fan-out)
    processed_units: int = 0  # Tareas terminadas; nunca decrece
    failed_units: int = 0  # Tareas cuya imagen no se pudo generar

    # Marca de fan-out ya realizado; evita repartir dos veces si el
    # mensaje de inicio se entrega de nuevo
    fanout_started: bool = False
    error_message: Optional[str] = None  # Texto explicando por qué falló

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # Token de concurrencia asignado por el store en cada escritura
    version: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        """Condición de completado: hay unidades esperadas y se procesaron todas."""
        return self.total_units > 0 and self.processed_units >= self.total_units

    def advance_to(self, status: JobStatus) -> None:
        """Cambia el estado sólo si la transición avanza."""
        if not self.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def register_fanout(self, total_units: int) -> None:
        """Fija el total esperado tras encolar las tareas de estación."""
        self.total_units = total_units
        self.fanout_started = True
        if self.status == JobStatus.CREATED:
            self.advance_to(JobStatus.PROCESSING)
        # Las tareas pueden haber terminado antes de que llegue el total
        if self.is_complete and not self.status.is_terminal:
            self.advance_to(JobStatus.COMPLETED)

    def record_processed_unit(self) -> None:
        """Suma una tarea terminada y marca el job completado si corresponde."""
        self.processed_units += 1
        if self.status.is_terminal:
            return
        if self.is_complete:
            self.advance_to(JobStatus.COMPLETED)
        elif self.status == JobStatus.CREATED:
            self.advance_to(JobStatus.PROCESSING)

    def record_failed_unit(self) -> None:
        self.failed_units += 1

    def mark_failed(self, error_message: str) -> None:
        """Registra un fallo; no hace nada si el job ya terminó."""
        if self.status.is_terminal:
            return
        self.advance_to(JobStatus.FAILED)
        self.error_message = error_message

    def check_successor(self, successor: "Job") -> None:
        """Valida que `successor` respeta los invariantes frente a este registro."""
        if successor.id != self.id:
            raise InvalidTransitionError(
                f"Job id changed from {self.id} to {successor.id}"
            )
        if successor.processed_units < self.processed_units:
            raise InvalidTransitionError(
                f"Job {self.id}: processed_units cannot decrease "
                f"({self.processed_units} -> {successor.processed_units})"
            )
        if not self.status.can_transition_to(successor.status):
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.status.value} "
                f"to {successor.status.value}"
            )
        if successor.status == JobStatus.COMPLETED and not successor.is_complete:
            raise InvalidTransitionError(
                f"Job {self.id}: Completed requires processed_units >= total_units > 0"
            )
