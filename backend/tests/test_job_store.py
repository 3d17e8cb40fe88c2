import threading
from datetime import timedelta

import pytest

from app.core.enums import JobStatus
from app.core.exceptions import (
    InvalidTransitionError,
    JobAlreadyExistsError,
    JobNotFoundError,
    VersionConflictError,
)
from app.models.job import Job, utc_now
from app.services.job_store import InMemoryJobStore
from app.services.job_updates import update_job_with_retry
from app.services.retry import RetryPolicy

from conftest import no_wait


def increment(job: Job) -> Job:
    job.record_processed_unit()
    return job


def test_create_and_get_returns_created_record():
    store = InMemoryJobStore()
    created = store.create(Job(id="job-1"))

    fetched = store.get("job-1")
    assert fetched.status == JobStatus.CREATED
    assert fetched.total_units == 0
    assert fetched.processed_units == 0
    assert fetched.version == created.version is not None


def test_create_twice_reports_already_exists():
    store = InMemoryJobStore()
    store.create(Job(id="job-1"))

    with pytest.raises(JobAlreadyExistsError):
        store.create(Job(id="job-1"))


def test_get_unknown_job_raises_not_found():
    store = InMemoryJobStore()
    with pytest.raises(JobNotFoundError):
        store.get("missing")
    assert store.find("missing") is None


def test_conditional_update_assigns_new_version():
    store = InMemoryJobStore()
    created = store.create(Job(id="job-1"))

    updated = store.conditional_update("job-1", increment, created.version)

    assert updated.processed_units == 1
    assert updated.version != created.version
    assert store.get("job-1").version == updated.version


def test_conditional_update_with_stale_version_conflicts():
    store = InMemoryJobStore()
    created = store.create(Job(id="job-1"))
    store.conditional_update("job-1", increment, created.version)

    with pytest.raises(VersionConflictError):
        store.conditional_update("job-1", increment, created.version)
    assert store.get("job-1").processed_units == 1


def test_conditional_update_on_unknown_job_raises_not_found():
    store = InMemoryJobStore()
    with pytest.raises(JobNotFoundError):
        store.conditional_update("missing", increment, "v1")


def test_returned_records_are_copies():
    store = InMemoryJobStore()
    job = store.create(Job(id="job-1"))
    job.processed_units = 99

    assert store.get("job-1").processed_units == 0


def test_store_rejects_decrementing_processed_units():
    store = InMemoryJobStore()
    created = store.create(Job(id="job-1", processed_units=3))

    def decrement(job: Job) -> Job:
        job.processed_units -= 1
        return job

    with pytest.raises(InvalidTransitionError):
        store.conditional_update("job-1", decrement, created.version)
    assert store.get("job-1").processed_units == 3


def test_store_rejects_status_regression():
    store = InMemoryJobStore()
    created = store.create(Job(id="job-1", status=JobStatus.PROCESSING))

    def back_to_created(job: Job) -> Job:
        job.status = JobStatus.CREATED
        return job

    with pytest.raises(InvalidTransitionError):
        store.conditional_update("job-1", back_to_created, created.version)


def test_concurrent_increments_lose_no_updates():
    store = InMemoryJobStore()
    store.create(Job(id="job-1"))
    policy = RetryPolicy(max_attempts=500, base_delay=0.0005, max_delay=0.005, jitter=1.0)
    workers = 50
    barrier = threading.Barrier(workers)
    results = []

    def worker():
        barrier.wait()
        results.append(update_job_with_retry(store, "job-1", increment, policy))

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r is not None for r in results)
    assert store.get("job-1").processed_units == workers


def test_two_racing_writers_both_succeed():
    store = InMemoryJobStore()
    store.create(Job(id="job-1", status=JobStatus.PROCESSING, total_units=5))

    first_read = store.get("job-1")
    second_read = store.get("job-1")
    store.conditional_update("job-1", increment, first_read.version)
    with pytest.raises(VersionConflictError):
        store.conditional_update("job-1", increment, second_read.version)

    # El perdedor vuelve a leer y reintenta
    assert update_job_with_retry(store, "job-1", increment, no_wait()) is not None
    assert store.get("job-1").processed_units == 2


def test_update_with_retry_gives_up_after_budget():
    class AlwaysConflicting(InMemoryJobStore):
        def conditional_update(self, job_id, mutator, expected_version):
            raise VersionConflictError(job_id, expected_version)

    store = AlwaysConflicting()
    store.create(Job(id="job-1"))
    delays = []
    policy = RetryPolicy(max_attempts=4, base_delay=0.1, jitter=0.0, sleep=delays.append)

    assert update_job_with_retry(store, "job-1", increment, policy) is None
    assert delays == [0.1, 0.2, 0.4]


def test_update_with_retry_creates_fallback_when_missing():
    store = InMemoryJobStore()

    created = update_job_with_retry(
        store,
        "job-1",
        increment,
        no_wait(),
        create_if_missing=lambda: Job(id="job-1", processed_units=1, total_units=1),
    )

    assert created is not None
    assert store.get("job-1").processed_units == 1


def test_update_with_retry_propagates_not_found_without_fallback():
    with pytest.raises(JobNotFoundError):
        update_job_with_retry(InMemoryJobStore(), "missing", increment, no_wait())


def test_list_jobs_newest_first_and_bounded():
    store = InMemoryJobStore()
    for i in range(5):
        store.create(Job(id=f"job-{i}"))

    listed = store.list_jobs(top=3)
    assert len(listed) == 3
    assert listed[0].created_at >= listed[-1].created_at


def test_list_stale_filters_whole_store_before_limiting():
    store = InMemoryJobStore()
    old = utc_now() - timedelta(hours=1)
    older = utc_now() - timedelta(hours=3)
    store.create(Job(id="old", created_at=old, updated_at=old))
    store.create(Job(id="older", status=JobStatus.PROCESSING, created_at=older, updated_at=older))
    store.create(Job(id="done", status=JobStatus.COMPLETED, created_at=older, updated_at=older))
    for i in range(10):
        store.create(Job(id=f"fresh-{i}"))

    cutoff = utc_now() - timedelta(minutes=30)
    assert [j.id for j in store.list_stale(cutoff)] == ["older", "old"]
    assert [j.id for j in store.list_stale(cutoff, top=1)] == ["older"]
