# tests/test_jobs.py
import pytest

from sluice_core.errors import CancelledError, DuplicateJobError, JobStateError
from sluice_core.jobs import JobTracker, cancel_key
from sluice_core.locks import LockManager, LockOutcome, LockResult
from sluice_core.models import JobAction, JobStatus


@pytest.fixture
def tracker(store, cache):
    return JobTracker(store, cache, cancel_ttl=3600)


@pytest.fixture
def granted(cache):
    return LockManager(cache).acquire(10, "test-worker")


def test_enqueue_is_idempotent_per_dataset(tracker, add_dataset):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)

    with pytest.raises(DuplicateJobError) as exc:
        tracker.enqueue(10, JobAction.SCHEDULED_SYNC)

    assert exc.value.existing_job_id == job.id
    assert job.status == JobStatus.PENDING


def test_start_requires_granted_lock(tracker, add_dataset):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)

    with pytest.raises(JobStateError):
        tracker.start(job, LockResult(LockOutcome.ALREADY_HELD))


def test_lifecycle_to_completed(tracker, store, add_dataset, granted):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC, row_limit=100)

    running = tracker.start(job, granted, "test-worker")
    tracker.report_progress(job.id, 40)
    tracker.report_progress(job.id, 20)
    assert store.get_job(job.id).rows_processed == 40

    assert tracker.complete(job.id, 90)
    done = store.get_job(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.worker_id == "test-worker"
    assert done.status == JobStatus.COMPLETED
    assert done.rows_processed == 90
    assert done.row_limit == 100
    assert done.completed_at is not None


def test_terminal_state_is_written_once(tracker, store, add_dataset, granted):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    tracker.start(job, granted)

    assert tracker.cancel(job.id, 10)
    assert not tracker.complete(job.id, 99)
    assert not tracker.fail(job.id, "late failure")
    assert store.get_job(job.id).status == JobStatus.CANCELLED


def test_start_twice_fails(tracker, add_dataset, granted):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    tracker.start(job, granted)
    with pytest.raises(JobStateError, match="no longer pending"):
        tracker.start(job, granted)


def test_fail_sanitizes_message(tracker, store, add_dataset):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)

    tracker.fail(job.id, "could not connect: postgresql://etl:hunter2@db/shop password=hunter2")

    message = store.get_job(job.id).error_message
    assert "hunter2" not in message
    assert store.get_job(job.id).status == JobStatus.FAILED


def test_cancel_pending_job_is_immediate(tracker, cache, add_dataset):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)

    cancelled = tracker.request_cancel(job.id)

    assert cancelled.status == JobStatus.CANCELLED
    assert cache.get(cancel_key(job.id)) is None


def test_cancel_running_job_sets_flag(tracker, cache, add_dataset, granted):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    tracker.start(job, granted)

    still_running = tracker.request_cancel(job.id)
    token = tracker.token(job.id)

    assert still_running.status == JobStatus.RUNNING
    assert cache.get(cancel_key(job.id)) == "true"
    assert cache.ttl(cancel_key(job.id)) == 3600
    assert token.is_cancelled()
    with pytest.raises(CancelledError):
        token.raise_if_cancelled(250)

    tracker.cancel(job.id, 250)
    assert cache.get(cancel_key(job.id)) is None


def test_cancel_terminal_job_is_rejected(tracker, add_dataset):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    tracker.request_cancel(job.id)

    with pytest.raises(JobStateError, match="already cancelled"):
        tracker.request_cancel(job.id)


def test_skip_only_from_pending(tracker, store, add_dataset, granted):
    add_dataset()
    job = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    assert tracker.skip(job.id, "locked")
    assert store.get_job(job.id).status == JobStatus.SKIPPED
    assert store.get_job(job.id).error_message == "locked"

    other = tracker.enqueue(10, JobAction.MANUAL_SYNC)
    tracker.start(other, granted)
    assert not tracker.skip(other.id, "locked")
