# src/sluice_core/jobs.py

import logging
from typing import Dict, List, Optional

from .cache import Cache
from .errors import CancelledError, DuplicateJobError, JobStateError, sanitize_message
from .locks import LockResult
from .models import Job, JobAction, JobStatus, utcnow
from .store import MetadataStore

logger = logging.getLogger(__name__)

CANCEL_PREFIX = "etl:cancel:"
DEFAULT_CANCEL_TTL = 3600


def cancel_key(job_id) -> str:
    return f"{CANCEL_PREFIX}{job_id}"


class CancellationToken:
    """Cooperative cancellation flag for one job, checked at read-batch boundaries."""

    def __init__(self, cache: Cache, job_id):
        self.cache = cache
        self.job_id = job_id

    def is_cancelled(self) -> bool:
        return self.cache.get(cancel_key(self.job_id)) == "true"

    def raise_if_cancelled(self, rows_processed: int = 0):
        if self.is_cancelled():
            raise CancelledError(self.job_id, rows_processed)


class JobTracker:
    """
    Job state machine.

    pending -> running -> completed | failed | cancelled
    pending -> skipped | cancelled

    Every transition is a conditional update on the current status, so a
    terminal state is written exactly once even with concurrent callers.
    """

    def __init__(self, store: MetadataStore, cache: Cache, cancel_ttl: int = DEFAULT_CANCEL_TTL):
        self.store = store
        self.cache = cache
        self.cancel_ttl = cancel_ttl

    def enqueue(
        self,
        dataset_id,
        action: JobAction,
        row_limit: Optional[int] = None,
        after_id: Optional[int] = None,
        ranges: Optional[List[Dict[str, int]]] = None,
    ) -> Job:
        job, created = self.store.enqueue_if_absent(dataset_id, action, row_limit, after_id, ranges)
        if not created:
            raise DuplicateJobError(dataset_id, job.id)
        logger.info(f"Enqueued job {job.id} ({job.action.value}) for dataset {dataset_id}")
        return job

    def start(self, job: Job, lock_result: LockResult, worker_id: Optional[str] = None) -> Job:
        if not lock_result.granted:
            raise JobStateError(f"Job {job.id} cannot start without the dataset lock")
        now = utcnow()
        fields = {"started_at": now, "last_progress_at": now, "rows_processed": 0}
        if worker_id:
            fields["worker_id"] = worker_id
        started = self.store.transition_job(job.id, [JobStatus.PENDING], JobStatus.RUNNING, **fields)
        if started is None:
            raise JobStateError(f"Job {job.id} is no longer pending")
        return started

    def report_progress(self, job_id, rows_processed: int):
        self.store.update_progress(job_id, rows_processed)

    def token(self, job_id) -> CancellationToken:
        return CancellationToken(self.cache, job_id)

    def complete(self, job_id, rows_processed: int) -> bool:
        self.store.update_progress(job_id, rows_processed)
        done = self.store.transition_job(
            job_id, [JobStatus.RUNNING], JobStatus.COMPLETED, completed_at=utcnow(), rows_processed=rows_processed
        )
        if done is None:
            logger.warning(f"Job {job_id} was not running; completion ignored")
        return done is not None

    def fail(self, job_id, error, rows_processed: Optional[int] = None) -> bool:
        fields = {"completed_at": utcnow(), "error_message": sanitize_message(str(error))[:2000]}
        if rows_processed is not None:
            self.store.update_progress(job_id, rows_processed)
        done = self.store.transition_job(job_id, [JobStatus.PENDING, JobStatus.RUNNING], JobStatus.FAILED, **fields)
        return done is not None

    def cancel(self, job_id, rows_processed: Optional[int] = None) -> bool:
        """Record the cancelled terminal state. Called by the worker once it has stopped."""
        if rows_processed is not None:
            self.store.update_progress(job_id, rows_processed)
        done = self.store.transition_job(
            job_id, [JobStatus.PENDING, JobStatus.RUNNING], JobStatus.CANCELLED,
            completed_at=utcnow(), error_message="Cancelled by user",
        )
        self.cache.delete(cancel_key(job_id))
        return done is not None

    def skip(self, job_id, reason: str) -> bool:
        done = self.store.transition_job(
            job_id, [JobStatus.PENDING], JobStatus.SKIPPED, completed_at=utcnow(), error_message=reason
        )
        return done is not None

    def request_cancel(self, job_id) -> Job:
        """
        Ask a job to stop.

        A pending job is cancelled immediately. A running job gets a cancel flag
        that the worker observes at its next read-batch boundary.
        """
        job = self.store.get_job(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job {job_id} already {job.status.value}")

        cancelled = self.store.transition_job(
            job_id, [JobStatus.PENDING], JobStatus.CANCELLED,
            completed_at=utcnow(), error_message="Cancelled by user",
        )
        if cancelled is not None:
            logger.info(f"Pending job {job_id} cancelled")
            return cancelled

        self.cache.set(cancel_key(job_id), "true", self.cancel_ttl)
        logger.info(f"Cancellation requested for running job {job_id}")
        return self.store.get_job(job_id)
