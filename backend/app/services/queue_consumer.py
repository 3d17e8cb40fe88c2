"""Consumidor genérico de una WorkQueue.

Reparte cada mensaje recibido a su handler en un pool de hilos y decide qué
hacer con él según el resultado:

- éxito: se borra de la cola;
- mensaje mal formado (o job inexistente): se registra y se descarta;
- cualquier otro error: se devuelve a la cola para reintentarlo;
- demasiadas entregas: se mueve a la cola `<nombre>-poison`.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Optional

from app.core.exceptions import JobNotFoundError, MalformedMessageError
from app.services.work_queue import QueueMessage, WorkQueue

logger = logging.getLogger(__name__)

PERMANENT_ERRORS = (MalformedMessageError, JobNotFoundError)


class MessageOutcome(str, Enum):
    COMPLETED = "completed"
    DROPPED = "dropped"
    RETRY = "retry"
    POISONED = "poisoned"


class QueueConsumer:
    def __init__(
        self,
        queue: WorkQueue,
        handler: Callable[[str], Any],
        *,
        poison_queue: Optional[WorkQueue] = None,
        on_poison: Optional[Callable[[str], None]] = None,
        batch_size: int = 16,
        visibility_timeout: int = 300,
        max_dequeue_count: int = 5,
        concurrency: int = 1,
        retry_delay: int = 0,
        poll_interval: float = 1.0,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.poison_queue = poison_queue
        self.on_poison = on_poison
        self.batch_size = batch_size
        self.visibility_timeout = visibility_timeout
        self.max_dequeue_count = max_dequeue_count
        self.concurrency = max(1, concurrency)
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Procesamiento ----------

    def process_message(self, message: QueueMessage) -> MessageOutcome:
        if message.dequeue_count > self.max_dequeue_count:
            return self._poison(message)

        try:
            self.handler(message.body)
        except PERMANENT_ERRORS as e:
            logger.error(
                "Dropping message %s from %s: %s", message.id, self.queue.name, e
            )
            self.queue.delete(message)
            return MessageOutcome.DROPPED
        except Exception:
            logger.exception(
                "Handler failed for message %s from %s (delivery %s); will retry",
                message.id,
                self.queue.name,
                message.dequeue_count,
            )
            self.queue.release(message, self.retry_delay)
            return MessageOutcome.RETRY

        if not self.queue.delete(message):
            # El timeout de visibilidad venció antes de terminar: habrá
            # otra entrega del mismo mensaje
            logger.warning(
                "Message %s from %s was redelivered before completion",
                message.id,
                self.queue.name,
            )
        return MessageOutcome.COMPLETED

    def process_batch(self) -> int:
        """Recibe un lote y lo procesa en paralelo. Devuelve cuántos recibió."""
        messages = self.queue.receive(
            max_messages=self.batch_size, visibility_timeout=self.visibility_timeout
        )
        if not messages:
            return 0
        list(self._get_executor().map(self.process_message, messages))
        return len(messages)

    def drain(self, max_batches: int = 1000) -> int:
        """Procesa hasta que la cola no entregue nada. Devuelve los mensajes vistos."""
        total = 0
        for _ in range(max_batches):
            received = self.process_batch()
            if received == 0:
                break
            total += received
        return total

    # ---------- Ejecución en segundo plano ----------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"poller-{self.queue.name}", daemon=True
        )
        self._thread.start()
        logger.info("Started consumer for queue %s", self.queue.name)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Stopped consumer for queue %s", self.queue.name)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                received = self.process_batch()
            except Exception:
                logger.exception("Polling queue %s failed", self.queue.name)
                received = 0
            if received == 0:
                self._stop.wait(self.poll_interval)

    # ---------- Helpers internos ----------

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix=f"consumer-{self.queue.name}",
            )
        return self._executor

    def _poison(self, message: QueueMessage) -> MessageOutcome:
        logger.error(
            "Message %s from %s exceeded %s deliveries; moving to poison queue",
            message.id,
            self.queue.name,
            self.max_dequeue_count,
        )
        if self.poison_queue is not None:
            self.poison_queue.enqueue(message.body)
        self.queue.delete(message)
        if self.on_poison is not None:
            try:
                self.on_poison(message.body)
            except Exception:
                logger.exception("Poison handler failed for message %s", message.id)
        return MessageOutcome.POISONED
