import io

import httpx
from PIL import Image

from app.services.background_source import HttpBackgroundSource
from app.services.pipeline_service import PipelineService
from app.services.render_service import RenderService
from app.services.task_worker import StationTaskWorker

from conftest import StubRenderer, StubStationSource

PHOTO_URL = "https://images.example/random/800x600"


def png_bytes(size=(40, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color="green").save(buffer, format="PNG")
    return buffer.getvalue()


def source_with(handler) -> HttpBackgroundSource:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpBackgroundSource(PHOTO_URL, client=client)


def test_fetch_returns_image_bytes():
    photo = png_bytes()

    assert source_with(lambda request: httpx.Response(200, content=photo)).fetch() == photo


def test_unavailable_service_falls_back_to_none():
    assert source_with(lambda request: httpx.Response(503)).fetch() is None


def test_network_error_falls_back_to_none():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    assert source_with(handler).fetch() is None


def test_rendered_artifact_uses_downloaded_photo(settings):
    photo_source = source_with(lambda request: httpx.Response(200, content=png_bytes((40, 30))))
    pipeline = PipelineService(
        settings,
        station_source=StubStationSource(),
        renderer=RenderService(),
    )
    worker = StationTaskWorker(
        pipeline.job_store,
        pipeline.renderer,
        pipeline.artifact_store,
        background_source=photo_source,
    )

    result = worker.handle('{"kind": "task", "jobId": "job-1", "stationName": "Arcen"}')

    img = Image.open(io.BytesIO(pipeline.artifact_store.get(result.artifact_key)))
    assert img.size == (40, 30)


def test_pipeline_wires_background_source_only_when_configured(settings):
    plain = PipelineService(settings, station_source=StubStationSource(), renderer=StubRenderer())
    with_photo = PipelineService(
        settings.model_copy(update={"background_image_url": PHOTO_URL}),
        station_source=StubStationSource(),
        renderer=StubRenderer(),
    )

    assert plain.task_worker.background_source is None
    assert isinstance(with_photo.task_worker.background_source, HttpBackgroundSource)
    assert with_photo.task_worker.background_source.url == PHOTO_URL
