import pytest

from app.core.enums import JobStatus
from app.core.exceptions import InvalidTransitionError
from app.models.job import Job


def test_status_only_moves_forward():
    assert JobStatus.CREATED.can_transition_to(JobStatus.PROCESSING)
    assert JobStatus.PROCESSING.can_transition_to(JobStatus.COMPLETED)
    assert not JobStatus.PROCESSING.can_transition_to(JobStatus.CREATED)
    assert not JobStatus.COMPLETED.can_transition_to(JobStatus.PROCESSING)


def test_failed_reachable_only_from_non_terminal_states():
    assert JobStatus.CREATED.can_transition_to(JobStatus.FAILED)
    assert JobStatus.PROCESSING.can_transition_to(JobStatus.FAILED)
    assert not JobStatus.COMPLETED.can_transition_to(JobStatus.FAILED)


def test_register_fanout_moves_to_processing():
    job = Job(id="j")
    job.register_fanout(3)

    assert job.status == JobStatus.PROCESSING
    assert job.total_units == 3
    assert job.fanout_started


def test_zero_units_never_completes():
    job = Job(id="j")
    job.register_fanout(0)

    assert job.status == JobStatus.PROCESSING
    assert not job.is_complete


def test_last_processed_unit_completes_job():
    job = Job(id="j")
    job.register_fanout(2)

    job.record_processed_unit()
    assert job.status == JobStatus.PROCESSING
    job.record_processed_unit()
    assert job.status == JobStatus.COMPLETED


def test_processed_unit_before_fanout_moves_created_to_processing():
    job = Job(id="j")
    job.record_processed_unit()

    assert job.status == JobStatus.PROCESSING
    assert job.processed_units == 1


def test_fanout_after_all_units_processed_completes():
    job = Job(id="j", status=JobStatus.PROCESSING, processed_units=2)
    job.register_fanout(2)

    assert job.status == JobStatus.COMPLETED


def test_extra_units_after_completion_keep_completed():
    job = Job(id="j")
    job.register_fanout(1)
    job.record_processed_unit()
    job.record_processed_unit()

    assert job.status == JobStatus.COMPLETED
    assert job.processed_units == 2


def test_mark_failed_keeps_completed_jobs():
    job = Job(id="j")
    job.register_fanout(1)
    job.record_processed_unit()
    job.mark_failed("late failure")

    assert job.status == JobStatus.COMPLETED
    assert job.error_message is None


def test_advance_to_rejects_regression():
    job = Job(id="j", status=JobStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        job.advance_to(JobStatus.CREATED)


def test_check_successor_requires_completion_condition():
    before = Job(id="j", status=JobStatus.PROCESSING, total_units=3, processed_units=1)
    after = before.model_copy()
    after.status = JobStatus.COMPLETED

    with pytest.raises(InvalidTransitionError):
        before.check_successor(after)
