"""Backends de Azure con clientes simulados: no hace falta Azurite."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core import MatchConditions
from azure.core.exceptions import (
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import TableEntity, UpdateMode

from app.core.enums import JobStatus
from app.core.exceptions import (
    JobAlreadyExistsError,
    JobNotFoundError,
    VersionConflictError,
)
from app.models.job import Job
from app.services.azure_storage import (
    DEV_STORAGE_ACCOUNT,
    BlobArtifactStore,
    StorageWorkQueue,
    TableJobStore,
    entity_to_job,
    job_to_entity,
    parse_storage_connection_string,
)


def entity_for(job: Job, etag: str) -> TableEntity:
    entity = TableEntity(**job_to_entity(job))
    entity._metadata = {"etag": etag}
    return entity


def increment(job: Job) -> Job:
    job.record_processed_unit()
    return job


def test_connection_string_for_azurite():
    info = parse_storage_connection_string("UseDevelopmentStorage=true")

    assert info.account_name == DEV_STORAGE_ACCOUNT
    assert info.blob_endpoint.startswith("http://127.0.0.1:10000")


def test_connection_string_keeps_trailing_equals_in_key():
    info = parse_storage_connection_string(
        "DefaultEndpointsProtocol=https;AccountName=weather;AccountKey=abc==;"
        "EndpointSuffix=core.windows.net"
    )

    assert info.account_key == "abc=="
    assert info.blob_endpoint == "https://weather.blob.core.windows.net"


def test_connection_string_without_key_is_rejected():
    with pytest.raises(ValueError):
        parse_storage_connection_string("AccountName=weather")


def test_entity_round_trip_uses_etag_as_version():
    job = Job(id="job-1", status=JobStatus.PROCESSING, total_units=5, processed_units=2)

    restored = entity_to_job(entity_for(job, 'W/"1"'))

    assert restored.version == 'W/"1"'
    assert restored.total_units == 5
    assert restored.processed_units == 2
    assert restored.status == JobStatus.PROCESSING


def test_create_maps_existing_row_to_already_exists():
    table = MagicMock()
    table.create_entity.side_effect = ResourceExistsError("exists")

    with pytest.raises(JobAlreadyExistsError):
        TableJobStore(table).create(Job(id="job-1"))


def test_get_maps_missing_row_to_not_found():
    table = MagicMock()
    table.get_entity.side_effect = ResourceNotFoundError("missing")

    with pytest.raises(JobNotFoundError):
        TableJobStore(table).get("job-1")


def test_conditional_update_sends_etag_with_if_not_modified():
    table = MagicMock()
    job = Job(id="job-1", status=JobStatus.PROCESSING, total_units=2)
    table.get_entity.return_value = entity_for(job, "etag-1")
    table.update_entity.return_value = {"etag": "etag-2"}

    updated = TableJobStore(table).conditional_update("job-1", increment, "etag-1")

    assert updated.version == "etag-2"
    assert updated.processed_units == 1
    kwargs = table.update_entity.call_args.kwargs
    assert kwargs["etag"] == "etag-1"
    assert kwargs["match_condition"] == MatchConditions.IfNotModified
    assert kwargs["mode"] == UpdateMode.REPLACE
    assert kwargs["entity"]["ProcessedStations"] == 1


def test_conditional_update_with_stale_etag_conflicts_before_writing():
    table = MagicMock()
    table.get_entity.return_value = entity_for(Job(id="job-1"), "etag-2")

    with pytest.raises(VersionConflictError):
        TableJobStore(table).conditional_update("job-1", increment, "etag-1")
    table.update_entity.assert_not_called()


def test_precondition_failure_becomes_version_conflict():
    table = MagicMock()
    table.get_entity.return_value = entity_for(Job(id="job-1"), "etag-1")
    table.update_entity.side_effect = ResourceModifiedError("412")

    with pytest.raises(VersionConflictError):
        TableJobStore(table).conditional_update("job-1", increment, "etag-1")


def test_list_jobs_sorts_newest_first():
    older = Job(id="a", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    newer = Job(id="b", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
    table = MagicMock()
    table.query_entities.return_value = [entity_for(older, "1"), entity_for(newer, "2")]

    jobs = TableJobStore(table).list_jobs(top=1)

    assert [j.id for j in jobs] == ["b"]


def test_storage_queue_maps_messages_and_receipts():
    client = MagicMock()
    client.receive_messages.return_value = iter(
        [SimpleNamespace(id="m1", content="body", dequeue_count=3, pop_receipt="r1")]
    )
    queue = StorageWorkQueue(client, "image-jobs")

    [message] = queue.receive(max_messages=4, visibility_timeout=60)
    assert (message.body, message.dequeue_count, message.receipt) == ("body", 3, "r1")

    assert queue.delete(message)
    client.delete_message.assert_called_once_with("m1", pop_receipt="r1")

    client.update_message.side_effect = ResourceNotFoundError("gone")
    assert not queue.release(message, delay=5)


def test_blob_store_uploads_with_overwrite_and_builds_sas_url():
    container = MagicMock()
    container.container_name = "images"
    info = parse_storage_connection_string("UseDevelopmentStorage=true")
    store = BlobArtifactStore(container, info)

    store.put("job-1/De_Bilt.jpg", b"jpeg")

    kwargs = container.upload_blob.call_args.kwargs
    assert kwargs["name"] == "job-1/De_Bilt.jpg"
    assert kwargs["overwrite"] is True

    url = store.url_for("job-1/De_Bilt.jpg")
    assert url.startswith("http://127.0.0.1:10000/devstoreaccount1/images/job-1/De_Bilt.jpg?")
    assert "sig=" in url


def test_blob_store_missing_blob_is_key_error():
    container = MagicMock()
    container.download_blob.side_effect = ResourceNotFoundError("missing")
    store = BlobArtifactStore(container, parse_storage_connection_string("UseDevelopmentStorage=true"))

    with pytest.raises(KeyError):
        store.get("job-1/x.jpg")


def test_list_stale_pushes_filter_to_the_table():
    stale = Job(id="a", updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    table = MagicMock()
    table.query_entities.return_value = [entity_for(stale, "1")]
    cutoff = datetime(2024, 6, 1, tzinfo=timezone.utc)

    jobs = TableJobStore(table).list_stale(cutoff)

    assert [j.id for j in jobs] == ["a"]
    kwargs = table.query_entities.call_args.kwargs
    assert "LastUpdatedUtc lt @cutoff" in kwargs["query_filter"]
    assert kwargs["parameters"]["cutoff"] == cutoff
    assert {kwargs["parameters"]["created"], kwargs["parameters"]["processing"]} == {
        "Created",
        "Processing",
    }
