"""Bucle leer-calcular-escribir sobre el JobStore.

Es el protocolo que usan todos los escritores concurrentes: leer el registro
actual, aplicar el cambio sobre esa lectura y enviarlo condicionado a la
versión leída. Ante un conflicto se espera (backoff creciente) y se vuelve a
leer, hasta agotar el número de intentos.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from app.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    VersionConflictError,
)
from app.models.job import Job
from app.services.job_store import JobMutator, JobStore
from app.services.retry import RetryPolicy

logger = logging.getLogger(__name__)


def update_job_with_retry(
    store: JobStore,
    job_id: str,
    mutator: JobMutator,
    policy: RetryPolicy,
    *,
    create_if_missing: Optional[Callable[[], Job]] = None,
    operation: str = "update",
) -> Optional[Job]:
    """Aplica `mutator` con control optimista. Devuelve el job guardado o None.

    None significa que se agotaron los intentos; el llamador decide cómo
    informarlo. Si el job no existe y se pasa `create_if_missing`, se crea
    ese registro en su lugar; sin él, JobNotFoundError se propaga.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            current = store.get(job_id)
        except JobNotFoundError:
            if create_if_missing is None:
                raise
            try:
                created = store.create(create_if_missing())
                logger.warning(
                    "Job %s was missing during %s; created fallback record", job_id, operation
                )
                return created
            except JobAlreadyExistsError:
                # Otro worker lo creó entre medias: volvemos a leer
                continue

        try:
            return store.conditional_update(job_id, mutator, current.version)
        except VersionConflictError:
            if attempt < policy.max_attempts:
                logger.debug(
                    "Version conflict on job %s during %s (attempt %s/%s), backing off",
                    job_id,
                    operation,
                    attempt,
                    policy.max_attempts,
                )
                policy.backoff(attempt)

    logger.error(
        "Giving up %s on job %s after %s attempts", operation, job_id, policy.max_attempts
    )
    return None
