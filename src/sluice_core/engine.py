# src/sluice_core/engine.py

import logging
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional, Set

from .config import Connection, Dataset, DatasetStatus, LoadMode, Settings, SyncStrategy
from .connectors.base import BaseDestination, BaseSource
from .connectors.clickhouse import ClickHouseDestination
from .connectors.registry import open_source
from .errors import (
    CancelledError,
    JobStateError,
    LockContentionError,
    NotFoundError,
    SyncError,
    sanitize_message,
)
from .jobs import CancellationToken, JobTracker
from .locks import LockManager
from .logging_utils import SyncLogger
from .models import Job, JobAction, utcnow
from .schema import infer_column_mapping
from .store import MetadataStore
from .strategies import (
    ID_RANGE_ACTIONS,
    DeleteDate,
    DeleteIds,
    DeleteRange,
    Optimize,
    SyncPlan,
    Truncate,
    build_plan,
    coerce_id,
    modified_dates_query,
    target_column,
    validate_dataset,
)
from .writer import BatchWriter

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Connection], BaseSource]
DestinationFactory = Callable[[], BaseDestination]

_FULL_RELOAD_ACTIONS = (JobAction.INITIAL_SYNC, JobAction.FULL_REFRESH)

CONSISTENCY_TOLERANCE = 0.01


@dataclass
class SyncResult:
    rows: int = 0
    watermark: Any = None
    full_reload: bool = False
    total_rows: Optional[int] = None
    reset_watermark: bool = False
    warning: Optional[str] = None


def watermark_text(value: Any) -> Optional[str]:
    """
    Persisted form of the last loaded reference value.

    Datetimes keep microseconds and any UTC offset, so the next run's
    `reference > watermark` predicate compares against the exact value read.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def consistency_warning(expected: int, actual: int) -> Optional[str]:
    """Mismatch message when the target count is off by more than 1% of the expected count."""
    tolerance = math.ceil(expected * CONSISTENCY_TOLERANCE)
    if abs(actual - expected) <= tolerance:
        return None
    return (f"Row count mismatch: target has {actual:,} rows, expected {expected:,} "
            f"(difference {abs(actual - expected):,})")


class SyncEngine:
    """
    Runs one job end to end: lock, plan, stream, load, finalize.

    The lock is always released and the job always ends in a terminal state,
    whatever the outcome.
    """

    def __init__(
        self,
        store: MetadataStore,
        locks: LockManager,
        tracker: JobTracker,
        settings: Settings,
        worker_id: str,
        source_factory: Optional[SourceFactory] = None,
        destination_factory: Optional[DestinationFactory] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.locks = locks
        self.tracker = tracker
        self.settings = settings
        self.worker_id = worker_id
        self.source_factory = source_factory or (lambda conn: open_source(conn, settings.encryption_key))
        self.destination_factory = destination_factory or (lambda: ClickHouseDestination(settings))
        self.clock = clock
        self._active: Set[int] = set()
        self._active_lock = threading.Lock()

    @property
    def active_jobs(self):
        with self._active_lock:
            return sorted(self._active)

    def run_job(self, job: Job) -> Job:
        try:
            dataset = self.store.get_dataset(job.dataset_id)
        except NotFoundError as e:
            self.tracker.fail(job.id, e)
            logger.warning(f"Job {job.id} failed: {e}")
            return self.store.get_job(job.id)

        lock_result = self.locks.acquire(job.dataset_id, self.worker_id, self.settings.lock_ttl)
        if not lock_result.granted:
            contention = LockContentionError(job.dataset_id, lock_result.lock.holder if lock_result.lock else None)
            self.tracker.skip(job.id, str(contention))
            logger.info(f"Job {job.id} skipped: {contention}")
            return self.store.get_job(job.id)

        try:
            job = self.tracker.start(job, lock_result, self.worker_id)
        except JobStateError as e:
            logger.info(f"Job {job.id} not started: {e}")
            self.locks.release(job.dataset_id, self.worker_id)
            return self.store.get_job(job.id)

        with self._active_lock:
            self._active.add(job.id)

        if job.row_limit is not None or job.action in ID_RANGE_ACTIONS:
            dataset = dataset.model_copy(update={"row_limit": job.row_limit})

        sync_log = SyncLogger(dataset.label, job.id)
        sync_log.start_job(job.action.value, dataset.sync_strategy.value)
        progress = SyncResult()

        try:
            self.store.update_dataset(dataset.id, status=DatasetStatus.SYNCING, status_message=None)
            result = self._execute(job, dataset, progress, sync_log)
            self.tracker.complete(job.id, result.rows)
            self._finalize_dataset(dataset, result)
            if result.warning:
                sync_log.warning(result.warning)
            sync_log.success(f"{result.rows:,} rows loaded into {dataset.target_table} ({result.total_rows:,} total)")
            sync_log.complete_job("completed", result.rows)
        except CancelledError as e:
            self.tracker.cancel(job.id, progress.rows)
            self.store.update_dataset(dataset.id, status=DatasetStatus.ACTIVE,
                                      status_message=f"Last sync cancelled after {progress.rows} rows")
            sync_log.warning(str(e))
            sync_log.complete_job("cancelled", progress.rows)
        except SyncError as e:
            self._record_failure(job, dataset, e, progress.rows, sync_log)
        except Exception as e:
            logger.exception(f"Unexpected error in job {job.id}")
            self._record_failure(job, dataset, e, progress.rows, sync_log)
        finally:
            self.locks.release(job.dataset_id, self.worker_id)
            with self._active_lock:
                self._active.discard(job.id)

        return self.store.get_job(job.id)

    def _record_failure(self, job: Job, dataset: Dataset, error: Exception, rows: int, sync_log: SyncLogger):
        message = sanitize_message(str(error)) or type(error).__name__
        self.tracker.fail(job.id, message, rows)
        self.store.update_dataset(dataset.id, status=DatasetStatus.ERROR, status_message=message[:500])
        sync_log.error(message)
        sync_log.complete_job("failed", rows)

    def _finalize_dataset(self, dataset: Dataset, result: SyncResult):
        fields = {
            "status": DatasetStatus.ACTIVE,
            "status_message": result.warning,
            "last_sync_at": self.clock(),
        }
        if result.total_rows is not None:
            fields["total_rows"] = result.total_rows
        if result.watermark is not None:
            fields["last_sync_value"] = watermark_text(result.watermark)
        elif result.reset_watermark:
            # Reloaded from scratch; the next incremental run reads max() from the target
            fields["last_sync_value"] = None
        if result.full_reload:
            fields["last_full_refresh_at"] = self.clock()
        self.store.update_dataset(dataset.id, **fields)

    def _resolve_watermark(self, job: Job, dataset: Dataset, destination: BaseDestination) -> Any:
        if dataset.sync_strategy not in (SyncStrategy.TIMESTAMP, SyncStrategy.ID):
            return None
        if job.action in _FULL_RELOAD_ACTIONS + ID_RANGE_ACTIONS or job.action == JobAction.PARTIAL_REFRESH:
            return None
        if dataset.last_sync_value is not None:
            return dataset.last_sync_value
        if not destination.table_exists(dataset.target_table):
            return None
        return destination.max_value(dataset.target_table, target_column(dataset, dataset.reference_column))

    def _resolve_after_id(self, job: Job, dataset: Dataset, destination: BaseDestination) -> Any:
        if job.action != JobAction.NEW_RECORDS_SYNC:
            return None
        if job.after_id is not None:
            return job.after_id
        if not destination.table_exists(dataset.target_table):
            return 0
        current = destination.max_value(dataset.target_table, target_column(dataset, dataset.unique_column))
        return coerce_id(current) if current is not None else 0

    def _count_baseline(self, dataset: Dataset, plan: SyncPlan, destination: BaseDestination) -> Optional[int]:
        """Target rows before the load, or None when deletes or upsert merges make the final count unknowable."""
        if any(isinstance(m, Truncate) for m in plan.mutations):
            return 0
        if plan.mutations or dataset.load_mode == LoadMode.UPSERT:
            return None
        if not destination.table_exists(dataset.target_table):
            return 0
        return destination.count(dataset.target_table)

    def _modified_dates(self, job: Job, dataset: Dataset, source: BaseSource):
        if (dataset.sync_strategy != SyncStrategy.DATE_PARTITION or not dataset.detect_modified or dataset.last_sync_at is None):
            return []
        if job.action not in (JobAction.MANUAL_SYNC, JobAction.SCHEDULED_SYNC):
            return []
        query, params = modified_dates_query(dataset, source.dialect, dataset.last_sync_at)
        dates = []
        for batch in source.stream(query, params, self.settings.read_batch_size):
            dates.extend(r["partition_date"] for r in batch)
        return dates

    def _apply(self, mutation, target: str, destination: BaseDestination):
        if isinstance(mutation, Truncate):
            destination.truncate(target)
        elif not destination.table_exists(target):
            # Nothing loaded yet, nothing to delete or optimize
            return
        elif isinstance(mutation, DeleteRange):
            destination.delete_range(target, mutation.column, mutation.start, mutation.end)
        elif isinstance(mutation, DeleteDate):
            destination.delete_date(target, mutation.column, mutation.day)
        elif isinstance(mutation, DeleteIds):
            destination.delete_ids(target, mutation.column, mutation.start, mutation.end)
        elif isinstance(mutation, Optimize):
            destination.optimize(target, mutation.final)

    def _execute(self, job: Job, dataset: Dataset, progress: SyncResult, sync_log: SyncLogger) -> SyncResult:
        # Misconfiguration fails here, before any connection is opened
        validate_dataset(dataset, job.action)

        connection = self.store.get_connection(dataset.connection_id)
        token = self.tracker.token(job.id)
        destination = self.destination_factory()
        source = self.source_factory(connection)
        try:
            source.open()
            watermark = self._resolve_watermark(job, dataset, destination)
            progress.watermark = watermark
            plan = build_plan(
                dataset,
                source.dialect,
                action=job.action,
                now=self.clock(),
                watermark=watermark,
                modified_dates=self._modified_dates(job, dataset, source),
                after_id=self._resolve_after_id(job, dataset, destination),
                ranges=job.ranges,
            )
            sync_log.info(f"{len(plan.steps)} step(s), {len(plan.mutations)} mutation(s)", prefix="PLAN")
            baseline = self._count_baseline(dataset, plan, destination)
            self._load(job, dataset, plan, source, destination, token, progress, sync_log)

            progress.full_reload = plan.full_reload
            progress.reset_watermark = any(isinstance(m, Truncate) for m in plan.mutations)
            if destination.table_exists(dataset.target_table):
                for op in plan.post_load:
                    self._apply(op, dataset.target_table, destination)
                progress.total_rows = destination.count(dataset.target_table)
            else:
                progress.total_rows = 0
            if baseline is not None:
                progress.warning = consistency_warning(baseline + progress.rows, progress.total_rows)
            return progress
        finally:
            source.close()
            destination.close()

    def _load(self, job, dataset, plan: SyncPlan, source, destination, token: CancellationToken, progress, sync_log):
        target = dataset.target_table
        mapping = dataset.column_mapping
        writer: Optional[BatchWriter] = None
        batch_num = 0

        def on_flush(rows_in_flush, total):
            progress.rows = total
            self.tracker.report_progress(job.id, total)

        for step in plan.steps:
            for mutation in step.mutations:
                self._apply(mutation, target, destination)
            if step.label:
                sync_log.debug(step.label, prefix="STEP")

            stream = source.stream(step.query, step.params, self.settings.read_batch_size)
            try:
                for batch in stream:
                    token.raise_if_cancelled(progress.rows)

                    if plan.row_limit is not None:
                        remaining = plan.row_limit - progress.rows
                        if remaining <= 0:
                            break
                        batch = batch[:remaining]

                    if mapping is None:
                        mapping = infer_column_mapping(batch)
                        if mapping is None:
                            continue
                        if not self.store.set_column_mapping_if_absent(dataset.id, mapping):
                            mapping = self.store.get_dataset(dataset.id).column_mapping
                        dataset = dataset.model_copy(update={"column_mapping": mapping})

                    if writer is None:
                        destination.ensure_table(dataset, mapping)
                        writer = BatchWriter(
                            destination,
                            target,
                            mapping,
                            insert_batch_size=self.settings.insert_batch_size,
                            report_interval=self.settings.report_interval,
                            on_flush=on_flush,
                            max_memory_mb=self.settings.max_memory_mb,
                        )

                    writer.write(batch)
                    writer.flush()
                    batch_num += 1
                    sync_log.batch_progress(batch_num, len(batch), progress.rows)

                    if plan.watermark_column:
                        last = batch[-1].get(plan.watermark_column)
                        if last is not None:
                            progress.watermark = last

                    if plan.row_limit is not None and progress.rows >= plan.row_limit:
                        break
            finally:
                stream.close()

            token.raise_if_cancelled(progress.rows)
            if plan.row_limit is not None and progress.rows >= plan.row_limit:
                sync_log.info(f"Row limit {plan.row_limit} reached")
                break
