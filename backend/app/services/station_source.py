"""Descarga de medidas actuales desde el feed JSON de Buienradar."""

from __future__ import annotations

import logging
from typing import Any, List

import httpx

from app.core.exceptions import StationSourceError
from app.models.station import Station

logger = logging.getLogger(__name__)


class BuienradarStationSource:
    """
    Cliente del feed `https://data.buienradar.nl/2.0/feed/json`.
    Cualquier fallo de red, HTTP o de formato se convierte en
    StationSourceError, que el fan-out trata como transitorio.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def fetch_stations(self) -> List[Station]:
        """Devuelve las estaciones en el orden en que las publica el feed."""
        try:
            response = self._get_client().get(self.url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise StationSourceError(f"Station feed request failed: {e}") from e
        except ValueError as e:
            raise StationSourceError(f"Station feed returned invalid JSON: {e}") from e

        stations = parse_station_measurements(payload)
        logger.info("Fetched %s stations from %s", len(stations), self.url)
        return stations

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def parse_station_measurements(payload: Any) -> List[Station]:
    """Extrae `actual.stationmeasurements`; sin ese bloque no hay estaciones."""
    if not isinstance(payload, dict):
        raise StationSourceError("Station feed payload is not a JSON object")

    actual = payload.get("actual")
    if not isinstance(actual, dict):
        return []
    measurements = actual.get("stationmeasurements")
    if not isinstance(measurements, list):
        return []

    stations: List[Station] = []
    for position, raw in enumerate(measurements, start=1):
        if not isinstance(raw, dict):
            continue
        name = raw.get("stationname") or f"Station {position}"
        temperature = raw.get("temperature")
        if not isinstance(temperature, (int, float)) or isinstance(temperature, bool):
            temperature = None
        stations.append(Station(name=str(name), temperature=temperature))
    return stations
