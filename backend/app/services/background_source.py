"""Foto de fondo para las imágenes de estación.

Si la descarga falla la tarea sigue adelante: el renderer pinta entonces el
lienzo liso de siempre.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class HttpBackgroundSource:
    """Descarga una imagen (p. ej. una foto aleatoria de paisaje) por cada tarea."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def fetch(self) -> Optional[bytes]:
        """Bytes de la imagen, o None si no está disponible."""
        try:
            response = self._get_client().get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Background image unavailable (%s); using plain canvas", e)
            return None
        return response.content or None

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
