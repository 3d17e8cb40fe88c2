"""Configuración mínima de logging para la API y los workers."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configura el root logger una sola vez por proceso."""
    root = logging.getLogger()
    if root.handlers:
        # uvicorn o pytest ya instalaron handlers; sólo ajustamos el nivel
        root.setLevel(level.upper())
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
