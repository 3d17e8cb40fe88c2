from __future__ import annotations

"""Medida actual de una estación meteorológica."""

from pydantic import BaseModel


class Station(BaseModel):
    """
    Una entrada de `actual.stationmeasurements` del feed de Buienradar.
    """

    name: str
    temperature: float | None = None  # °C; algunas estaciones no la reportan
