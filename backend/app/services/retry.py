"""Política de reintentos con backoff acotado.

La usan el fan-out (conflictos al fijar el total, fallos de la fuente de
estaciones) y las tareas de estación (conflictos al sumar progreso).
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """Número máximo de intentos y retardo exponencial entre ellos."""

    max_attempts: int = 10
    base_delay: float = 0.05
    exponential_base: float = 2.0
    max_delay: float = 2.0
    # Fracción aleatoria añadida al retardo para desincronizar a los workers
    jitter: float = 0.5
    sleep: Callable[[float], None] = time.sleep

    def calculate_delay(self, attempt: int) -> float:
        """Retardo tras el intento `attempt` (1-based), sin contar el jitter."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        return min(delay, self.max_delay)

    def backoff(self, attempt: int) -> float:
        delay = self.calculate_delay(attempt)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        self.sleep(delay)
        return delay
