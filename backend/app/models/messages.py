"""Mensajes que viajan por las colas start-jobs e image-jobs.

Los mensajes son JSON con una etiqueta `kind` y nombres en camelCase. Se
validan al recibirlos: un payload ilegible es un error permanente.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.core.exceptions import MalformedMessageError


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: str = Field(alias="jobId", min_length=1)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class StartMessage(_Message):
    """Pide el fan-out de un job recién creado."""

    kind: Literal["start"] = "start"


class TaskMessage(_Message):
    """Pide la imagen de una estación concreta."""

    kind: Literal["task"] = "task"
    station_name: str = Field(alias="stationName", min_length=1)
    temperature: Optional[float] = None


WorkMessage = Annotated[Union[StartMessage, TaskMessage], Field(discriminator="kind")]

_work_message_adapter = TypeAdapter(WorkMessage)


def decode_message(raw: str | bytes) -> StartMessage | TaskMessage:
    """Convierte el cuerpo crudo de la cola en un mensaje tipado."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Message is not valid JSON: {e}", raw) from e

    if not isinstance(payload, dict):
        raise MalformedMessageError("Message must be a JSON object", raw)

    try:
        return _work_message_adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedMessageError(f"Invalid message: {e}", raw) from e


def decode_start_message(raw: str | bytes) -> StartMessage:
    message = decode_message(raw)
    if not isinstance(message, StartMessage):
        raise MalformedMessageError(f"Expected a start message, got {message.kind}", raw)
    return message


def decode_task_message(raw: str | bytes) -> TaskMessage:
    message = decode_message(raw)
    if not isinstance(message, TaskMessage):
        raise MalformedMessageError(f"Expected a task message, got {message.kind}", raw)
    return message
