from typing import List

import pytest

from app.core.config import Settings
from app.core.exceptions import RenderError, StationSourceError
from app.models.station import Station
from app.services.pipeline_service import PipelineService
from app.services.retry import RetryPolicy


def no_wait(max_attempts: int = 10) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0, sleep=lambda _: None)


class StubStationSource:
    def __init__(self, stations: List[Station] | None = None, failures: int = 0) -> None:
        self.stations = stations or []
        self.failures = failures
        self.calls = 0

    def fetch_stations(self) -> List[Station]:
        self.calls += 1
        if self.calls <= self.failures:
            raise StationSourceError("feed unavailable")
        return list(self.stations)


class StubRenderer:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.rendered: List[str] = []
        self.backgrounds: List[bytes | None] = []

    def render(
        self, station_name: str, temperature: float | None, background: bytes | None = None
    ) -> bytes:
        self.backgrounds.append(background)
        if station_name in self.fail_for:
            raise RenderError(f"boom {station_name}")
        self.rendered.append(station_name)
        return f"{station_name}:{temperature}:{len(self.rendered)}".encode()


def stations(*names: str) -> List[Station]:
    return [Station(name=name, temperature=10.0 + i) for i, name in enumerate(names)]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        run_workers_in_process=False,
        status_update_base_delay_s=0.0,
        status_update_max_delay_s=0.0,
        status_update_max_attempts=200,
        queue_max_dequeue_count=3,
        task_worker_concurrency=4,
    )


@pytest.fixture
def make_pipeline(settings):
    def _make(station_list=None, renderer=None, **overrides) -> PipelineService:
        pipeline = PipelineService(
            settings.model_copy(update=overrides),
            station_source=StubStationSource(station_list or []),
            renderer=renderer or StubRenderer(),
        )
        pipeline.fanout_worker.fetch_policy = no_wait(3)
        return pipeline

    return _make
