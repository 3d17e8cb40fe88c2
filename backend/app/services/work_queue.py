"""Colas de trabajo entre etapas del pipeline.

Semántica de Azure Storage Queues: entrega al-menos-una-vez, cada mensaje
recibido queda invisible durante `visibility_timeout` segundos y vuelve a
aparecer si el consumidor no lo borra antes. `dequeue_count` cuenta las
entregas, lo que permite detectar mensajes venenosos.
"""

from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List
from uuid import uuid4


@dataclass(frozen=True)
class QueueMessage:
    """Un mensaje recibido; `receipt` identifica esta entrega concreta."""

    id: str
    body: str
    dequeue_count: int
    receipt: str


class WorkQueue(ABC):
    name: str

    @abstractmethod
    def enqueue(self, body: str) -> str:
        """Encola `body` y devuelve el id del mensaje."""

    @abstractmethod
    def receive(self, max_messages: int = 1, visibility_timeout: int = 300) -> List[QueueMessage]:
        """Recibe hasta `max_messages` mensajes visibles y los oculta."""

    @abstractmethod
    def delete(self, message: QueueMessage) -> bool:
        """Borra el mensaje si la entrega sigue siendo la vigente."""

    @abstractmethod
    def release(self, message: QueueMessage, delay: int = 0) -> bool:
        """Devuelve el mensaje a la cola para que se reintente tras `delay` segundos."""

    @abstractmethod
    def approximate_count(self) -> int:
        """Mensajes en la cola, visibles o no."""


@dataclass
class _Entry:
    seq: int
    body: str
    visible_at: float
    dequeue_count: int = 0
    receipt: str = ""


class InMemoryWorkQueue(WorkQueue):
    """Cola en memoria con timeout de visibilidad, para desarrollo y tests."""

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def enqueue(self, body: str) -> str:
        message_id = uuid4().hex
        with self._lock:
            self._entries[message_id] = _Entry(
                seq=next(self._seq), body=body, visible_at=self._clock()
            )
        return message_id

    def receive(self, max_messages: int = 1, visibility_timeout: int = 300) -> List[QueueMessage]:
        with self._lock:
            now = self._clock()
            visible = sorted(
                (
                    (message_id, entry)
                    for message_id, entry in self._entries.items()
                    if entry.visible_at <= now
                ),
                key=lambda item: item[1].seq,
            )
            received: List[QueueMessage] = []
            for message_id, entry in visible[:max_messages]:
                entry.visible_at = now + visibility_timeout
                entry.dequeue_count += 1
                entry.receipt = uuid4().hex
                received.append(
                    QueueMessage(
                        id=message_id,
                        body=entry.body,
                        dequeue_count=entry.dequeue_count,
                        receipt=entry.receipt,
                    )
                )
            return received

    def delete(self, message: QueueMessage) -> bool:
        with self._lock:
            entry = self._entries.get(message.id)
            if entry is None or entry.receipt != message.receipt:
                return False
            del self._entries[message.id]
            return True

    def release(self, message: QueueMessage, delay: int = 0) -> bool:
        with self._lock:
            entry = self._entries.get(message.id)
            if entry is None or entry.receipt != message.receipt:
                return False
            entry.visible_at = self._clock() + delay
            entry.receipt = uuid4().hex
            return True

    def approximate_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def peek_bodies(self) -> List[str]:
        """Cuerpos pendientes en orden de llegada (depuración y tests)."""
        with self._lock:
            return [e.body for e in sorted(self._entries.values(), key=lambda e: e.seq)]
