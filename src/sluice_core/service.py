# src/sluice_core/service.py
"""
Operator-facing operations: trigger and cancel jobs, run the worker, manage
locks and schedules.

The REST router and the CLI are thin layers over `SyncService`. Every method
here is safe to call while a job is running in the same process.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .cache import Cache, create_cache
from .config import Settings, load_settings
from .engine import DestinationFactory, SourceFactory, SyncEngine
from .errors import ConfigurationError, DuplicateJobError, SyncError
from .health import HealthReport, check_health, is_stale, read_heartbeats
from .jobs import JobTracker
from .locks import LockManager
from .models import Job, JobAction, JobFilter, Lock, Schedule, utcnow
from .scheduler import Scheduler
from .store import MetadataStore, create_store
from .strategies import normalize_ranges, validate_dataset
from .supervisor import WorkerState, WorkerSupervisor, default_worker_id

logger = logging.getLogger(__name__)

TRIGGER_ALIASES = {
    "manual": JobAction.MANUAL_SYNC,
    "scheduled": JobAction.SCHEDULED_SYNC,
    "initial": JobAction.INITIAL_SYNC,
    "full": JobAction.FULL_REFRESH,
    "partial": JobAction.PARTIAL_REFRESH,
    "new": JobAction.NEW_RECORDS_SYNC,
    "missing": JobAction.MISSING_SYNC,
}


def parse_trigger_type(value: Union[str, JobAction, None]) -> JobAction:
    if value is None:
        return JobAction.MANUAL_SYNC
    if isinstance(value, JobAction):
        return value
    key = value.strip().lower()
    if key in TRIGGER_ALIASES:
        return TRIGGER_ALIASES[key]
    try:
        return JobAction(key)
    except ValueError:
        valid = sorted({a.value for a in JobAction} | set(TRIGGER_ALIASES))
        raise ConfigurationError(f"Unknown trigger type '{value}'. Valid types: {', '.join(valid)}")


class SyncService:
    def __init__(
        self,
        store: MetadataStore,
        cache: Cache,
        settings: Settings,
        worker_id: Optional[str] = None,
        source_factory: Optional[SourceFactory] = None,
        destination_factory: Optional[DestinationFactory] = None,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.locks = LockManager(cache, settings.lock_ttl)
        self.tracker = JobTracker(store, cache, settings.cancel_ttl)
        self.engine = SyncEngine(
            store,
            self.locks,
            self.tracker,
            settings,
            worker_id or default_worker_id(),
            source_factory=source_factory,
            destination_factory=destination_factory,
        )
        self.scheduler = Scheduler(store, self.tracker)
        self.supervisor = WorkerSupervisor(self.engine, self.scheduler, cache, settings)

    # --- jobs ---

    def trigger(
        self,
        dataset_id,
        trigger_type: Union[str, JobAction, None] = None,
        row_limit: Optional[int] = None,
        after_id: Optional[int] = None,
        ranges: Optional[List[Any]] = None,
    ) -> Job:
        """
        Queue a sync. Raises DuplicateJobError if the dataset already has a pending or running job.

        `after_id` applies to new_records_sync and `ranges` to missing_sync; `row_limit`
        overrides the dataset's cap (for new_records_sync it is the only cap).
        """
        action = parse_trigger_type(trigger_type)
        dataset = self.store.get_dataset(dataset_id)
        validate_dataset(dataset, action)

        if after_id is not None and action != JobAction.NEW_RECORDS_SYNC:
            raise ConfigurationError("after_id only applies to new_records_sync")
        if ranges is not None and action != JobAction.MISSING_SYNC:
            raise ConfigurationError("ranges only apply to missing_sync")
        if row_limit is not None and row_limit < 1:
            raise ConfigurationError("row_limit must be positive")

        if action == JobAction.MISSING_SYNC:
            ranges = [{"start": start, "end": end} for start, end in normalize_ranges(ranges)]
        elif action != JobAction.NEW_RECORDS_SYNC and row_limit is None:
            row_limit = dataset.row_limit
        return self.tracker.enqueue(dataset.id, action, row_limit, after_id, ranges)

    def trigger_all(self) -> Dict[str, List[Dict[str, Any]]]:
        queued, skipped = [], []
        for dataset in self.store.list_datasets():
            try:
                job = self.trigger(dataset.id, JobAction.MANUAL_SYNC)
                queued.append(job.to_dict())
            except DuplicateJobError as e:
                skipped.append({"dataset_id": dataset.id, "reason": "already queued", "job_id": e.existing_job_id})
            except ConfigurationError as e:
                skipped.append({"dataset_id": dataset.id, "reason": str(e)})
        logger.info(f"trigger_all queued {len(queued)} job(s), skipped {len(skipped)}")
        return {"queued": queued, "skipped": skipped}

    def cancel(self, job_id) -> Job:
        return self.tracker.request_cancel(job_id)

    def get_job(self, job_id) -> Job:
        return self.store.get_job(job_id)

    def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[Job]:
        return self.store.list_jobs(job_filter or JobFilter())

    # --- worker ---

    def worker_status(self) -> Dict[str, Any]:
        """
        Status of the worker in this process, or, when none is running here,
        of the most recent worker seen through the shared heartbeat.
        """
        if self.supervisor.state != WorkerState.STOPPED:
            return self.supervisor.status()

        beats = read_heartbeats(self.cache)
        latest = max(beats.values(), key=lambda b: b.timestamp, default=None)
        if latest is None:
            return {
                "status": WorkerState.STOPPED.value,
                "worker_id": None,
                "last_heartbeat": None,
                "active_jobs": [],
                "worker_info": {"pid": None, "uptime": None, "started_at": None},
            }

        alive = not is_stale(latest, utcnow(), self.settings.heartbeat_ttl)
        return {
            "status": WorkerState.RUNNING.value if alive else "unresponsive",
            "worker_id": latest.worker_id,
            "last_heartbeat": latest.timestamp.isoformat(),
            "active_jobs": list(latest.active_jobs),
            "worker_info": {
                "pid": latest.pid,
                "uptime": latest.uptime,
                "started_at": latest.started_at.isoformat(),
            },
        }

    def worker_start(self) -> Dict[str, Any]:
        self.supervisor.start()
        return self.worker_status()

    def worker_stop(self, cancel_running: bool = False, timeout: Optional[float] = None) -> Dict[str, Any]:
        self.supervisor.stop(cancel_running=cancel_running, timeout=timeout)
        return self.worker_status()

    def worker_restart(self, cancel_running: bool = False, timeout: Optional[float] = None) -> Dict[str, Any]:
        self.supervisor.restart(cancel_running=cancel_running, timeout=timeout)
        return self.worker_status()

    # --- locks ---

    def list_locks(self) -> List[Lock]:
        return self.locks.list()

    def delete_lock(self, dataset_id) -> bool:
        running = self.store.active_jobs(dataset_id)
        if running:
            logger.warning(f"Clearing lock for dataset {dataset_id} while job {running[0].id} is {running[0].status.value}")
        return self.locks.force_clear(dataset_id)

    def delete_all_locks(self) -> int:
        return self.locks.force_clear_all()

    # --- schedules ---

    def list_schedules(self) -> List[Schedule]:
        return self.store.list_schedules()

    def update_schedule(self, dataset_id, interval_code: str) -> Schedule:
        return self.scheduler.set_interval(dataset_id, interval_code)

    def toggle_schedule(self, schedule_id, is_active: bool) -> Schedule:
        return self.scheduler.toggle(schedule_id, is_active)

    # --- health ---

    def health(self) -> HealthReport:
        return check_health(
            self.store,
            self.cache,
            self.locks,
            stuck_threshold=self.settings.stuck_threshold,
            heartbeat_ttl=self.settings.heartbeat_ttl,
        )

    def close(self):
        if self.supervisor.state != WorkerState.STOPPED:
            self.supervisor.stop()
        self.store.close()
        self.cache.close()


def build_service(settings: Optional[Settings] = None, config_file: Optional[str] = None) -> SyncService:
    """Wire a service from settings: Postgres metadata store and Redis cache when configured."""
    settings = settings or load_settings(config_file)
    store = create_store(settings.database_url)
    try:
        cache = create_cache(settings.redis_url)
    except SyncError:
        store.close()
        raise
    return SyncService(store, cache, settings)
