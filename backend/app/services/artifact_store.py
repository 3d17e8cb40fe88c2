"""Almacén de las imágenes generadas.

Cada imagen se guarda bajo la clave `{jobId}/{estacion_saneada}.jpg`. Escribir
dos veces la misma clave la sobrescribe: así una tarea entregada de nuevo no
deja imágenes duplicadas.
"""

from __future__ import annotations

import hashlib
import re
import threading
import unicodedata
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

ARTIFACT_EXTENSION = ".jpg"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_station_name(station_name: str) -> str:
    """Nombre de estación apto para usar como segmento de clave.

    Los acentos se transliteran a ASCII. Si el resultado difiere del nombre
    original se le añade un hash corto de éste, de modo que dos estaciones
    distintas ("A B" y "A_B") nunca comparten clave.
    """
    ascii_name = (
        unicodedata.normalize("NFKD", station_name).encode("ascii", "ignore").decode("ascii")
    )
    safe = _UNSAFE_CHARS.sub("", re.sub(r"\s+", "_", ascii_name.strip()))
    # ".." o "." no deben poder escapar del prefijo del job
    safe = safe.strip(".") or "station"
    if safe != station_name:
        digest = hashlib.sha256(station_name.encode("utf-8")).hexdigest()[:8]
        safe = f"{safe}-{digest}"
    return safe


def job_prefix(job_id: str) -> str:
    return f"{job_id}/"


def artifact_key(job_id: str, station_name: str) -> str:
    return f"{job_prefix(job_id)}{sanitize_station_name(station_name)}{ARTIFACT_EXTENSION}"


class ArtifactStore(ABC):
    """Contrato mínimo que usa el pipeline: escribir, listar y dar una URL."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        """Escribe (o sobrescribe) el artefacto `key`."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Lee un artefacto; KeyError si no existe."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Claves que empiezan por `prefix`, ordenadas."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """URL con la que un cliente puede descargar el artefacto."""


class InMemoryArtifactStore(ArtifactStore):
    def __init__(self, url_prefix: str = "/api/v1/artifacts") -> None:
        self.url_prefix = url_prefix.rstrip("/")
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        with self._lock:
            self._blobs[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            return self._blobs[key]

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key}"


class LocalArtifactStore(ArtifactStore):
    """Guarda las imágenes en disco bajo `base_dir/{jobId}/...`."""

    def __init__(self, base_dir: Path, url_prefix: str = "/api/v1/artifacts") -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")

    def _path_for_key(self, key: str) -> Path:
        """Construye una ruta segura dentro de `base_dir` para una clave."""
        path = (self.base_dir / key).resolve()
        try:
            path.relative_to(self.base_dir.resolve())
        except ValueError as e:
            raise KeyError(key) from e
        return path

    def put(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        path = self._path_for_key(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Escribimos a un temporal y renombramos para no dejar ficheros a medias
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)

    def get(self, key: str) -> bytes:
        path = self._path_for_key(key)
        if not path.is_file():
            raise KeyError(key)
        return path.read_bytes()

    def list(self, prefix: str = "") -> List[str]:
        if not self.base_dir.exists():
            return []
        keys = (
            path.relative_to(self.base_dir).as_posix()
            for path in self.base_dir.rglob("*")
            if path.is_file() and not path.name.endswith(".tmp")
        )
        return sorted(k for k in keys if k.startswith(prefix))

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key}"
