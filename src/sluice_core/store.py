# src/sluice_core/store.py
"""
Metadata store: connections, datasets, jobs and schedules.

Connections and datasets are owned by the admin service; the engine reads them
and writes back sync status. Jobs and schedules are written here.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from .config import ColumnMapping, Connection, Dataset
from .errors import ConnectionError, NotFoundError
from .models import ACTIVE_STATUSES, Job, JobAction, JobFilter, JobStatus, Schedule, utcnow

logger = logging.getLogger(__name__)


class MetadataStore(ABC):

    # --- configuration (read side) ---
    @abstractmethod
    def get_connection(self, connection_id) -> Connection:
        pass

    @abstractmethod
    def get_dataset(self, dataset_id) -> Dataset:
        pass

    @abstractmethod
    def list_datasets(self) -> List[Dataset]:
        pass

    # --- dataset write-back ---
    @abstractmethod
    def update_dataset(self, dataset_id, **fields) -> None:
        pass

    @abstractmethod
    def set_column_mapping_if_absent(self, dataset_id, mapping: ColumnMapping) -> bool:
        """Persist an inferred mapping unless one already exists."""
        pass

    # --- jobs ---
    @abstractmethod
    def enqueue_if_absent(
        self,
        dataset_id,
        action: JobAction,
        row_limit: Optional[int] = None,
        after_id: Optional[int] = None,
        ranges: Optional[List[Dict[str, int]]] = None,
    ) -> Tuple[Job, bool]:
        """
        Create a pending job unless the dataset already has a pending/running one.

        Returns (job, created); when created is False, job is the existing active job.
        """
        pass

    @abstractmethod
    def get_job(self, job_id) -> Job:
        pass

    @abstractmethod
    def claim_next_pending(self, worker_id: str) -> Optional[Job]:
        """Oldest unclaimed pending job, claimed for worker_id. At most one worker claims a job."""
        pass

    @abstractmethod
    def transition_job(self, job_id, from_statuses: Iterable[JobStatus], to_status: JobStatus, **fields) -> Optional[Job]:
        """Conditional status update. Returns the updated job, or None if the job was not in from_statuses."""
        pass

    @abstractmethod
    def update_progress(self, job_id, rows_processed: int) -> None:
        """Raise rows_processed to at least the given value on a running job."""
        pass

    @abstractmethod
    def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[Job]:
        pass

    def active_jobs(self, dataset_id=None) -> List[Job]:
        return self.list_jobs(JobFilter(dataset_id=dataset_id, statuses=list(ACTIVE_STATUSES), limit=10000))

    def running_jobs(self) -> List[Job]:
        return self.list_jobs(JobFilter(statuses=[JobStatus.RUNNING], limit=10000))

    # --- schedules ---
    @abstractmethod
    def list_schedules(self, active_only: bool = False) -> List[Schedule]:
        pass

    @abstractmethod
    def get_schedule(self, schedule_id) -> Schedule:
        pass

    @abstractmethod
    def get_schedule_for_dataset(self, dataset_id) -> Optional[Schedule]:
        pass

    @abstractmethod
    def upsert_schedule(self, dataset_id, cron_expression: Optional[str], interval_code: str,
                        next_run_at: Optional[datetime]) -> Schedule:
        pass

    @abstractmethod
    def update_schedule(self, schedule_id, **fields) -> Schedule:
        pass

    def close(self):
        pass


class MemoryStore(MetadataStore):
    """Thread-safe in-process store used by tests and local runs."""

    def __init__(self):
        self._lock = threading.RLock()
        self.connections: Dict[Any, Connection] = {}
        self.datasets: Dict[Any, Dataset] = {}
        self.jobs: Dict[int, Job] = {}
        self.schedules: Dict[int, Schedule] = {}
        self._job_ids = itertools.count(1)
        self._schedule_ids = itertools.count(1)

    def add_connection(self, connection: Connection) -> Connection:
        with self._lock:
            self.connections[connection.id] = connection
        return connection

    def add_dataset(self, dataset: Dataset) -> Dataset:
        with self._lock:
            self.datasets[dataset.id] = dataset
        return dataset

    def get_connection(self, connection_id):
        with self._lock:
            if connection_id not in self.connections:
                raise NotFoundError(f"Connection {connection_id} not found")
            return self.connections[connection_id].model_copy(deep=True)

    def get_dataset(self, dataset_id):
        with self._lock:
            if dataset_id not in self.datasets:
                raise NotFoundError(f"Dataset {dataset_id} not found")
            return self.datasets[dataset_id].model_copy(deep=True)

    def list_datasets(self):
        with self._lock:
            return [d.model_copy(deep=True) for d in self.datasets.values()]

    def update_dataset(self, dataset_id, **fields):
        with self._lock:
            current = self.get_dataset(dataset_id)
            self.datasets[dataset_id] = current.model_copy(update=fields)

    def set_column_mapping_if_absent(self, dataset_id, mapping):
        with self._lock:
            current = self.get_dataset(dataset_id)
            if current.column_mapping is not None:
                return False
            self.datasets[dataset_id] = current.model_copy(update={"column_mapping": mapping})
            return True

    def _copy(self, job: Job) -> Job:
        return Job(**vars(job))

    def enqueue_if_absent(self, dataset_id, action, row_limit=None, after_id=None, ranges=None):
        with self._lock:
            self.get_dataset(dataset_id)
            for job in self.jobs.values():
                if job.dataset_id == dataset_id and job.status in ACTIVE_STATUSES:
                    return self._copy(job), False
            job = Job(
                id=next(self._job_ids),
                dataset_id=dataset_id,
                action=JobAction(action),
                row_limit=row_limit,
                after_id=after_id,
                ranges=ranges,
                created_at=utcnow(),
            )
            self.jobs[job.id] = job
            return self._copy(job), True

    def get_job(self, job_id):
        with self._lock:
            if job_id not in self.jobs:
                raise NotFoundError(f"Job {job_id} not found")
            return self._copy(self.jobs[job_id])

    def claim_next_pending(self, worker_id):
        with self._lock:
            pending = [j for j in self.jobs.values() if j.status == JobStatus.PENDING and j.worker_id is None]
            if not pending:
                return None
            job = min(pending, key=lambda j: (j.created_at, j.id))
            job.worker_id = worker_id
            return self._copy(job)

    def transition_job(self, job_id, from_statuses, to_status, **fields):
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status not in set(from_statuses):
                return None
            job.status = to_status
            for key, value in fields.items():
                setattr(job, key, value)
            return self._copy(job)

    def update_progress(self, job_id, rows_processed):
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                return
            job.rows_processed = max(job.rows_processed, rows_processed)
            job.last_progress_at = utcnow()

    def list_jobs(self, job_filter=None):
        job_filter = job_filter or JobFilter()
        with self._lock:
            jobs = list(self.jobs.values())
        if job_filter.dataset_id is not None:
            jobs = [j for j in jobs if j.dataset_id == job_filter.dataset_id]
        if job_filter.statuses:
            jobs = [j for j in jobs if j.status in set(job_filter.statuses)]
        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return [self._copy(j) for j in jobs[:job_filter.limit]]

    def list_schedules(self, active_only=False):
        with self._lock:
            return [Schedule(**vars(s)) for s in self.schedules.values() if s.is_active or not active_only]

    def get_schedule(self, schedule_id):
        with self._lock:
            if schedule_id not in self.schedules:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            return Schedule(**vars(self.schedules[schedule_id]))

    def get_schedule_for_dataset(self, dataset_id):
        with self._lock:
            for s in self.schedules.values():
                if s.dataset_id == dataset_id:
                    return Schedule(**vars(s))
        return None

    def upsert_schedule(self, dataset_id, cron_expression, interval_code, next_run_at):
        with self._lock:
            existing = self.get_schedule_for_dataset(dataset_id)
            if existing:
                return self.update_schedule(existing.id, cron_expression=cron_expression,
                                            interval_code=interval_code, next_run_at=next_run_at)
            schedule = Schedule(id=next(self._schedule_ids), dataset_id=dataset_id, cron_expression=cron_expression,
                                interval_code=interval_code, is_active=cron_expression is not None,
                                next_run_at=next_run_at)
            self.schedules[schedule.id] = schedule
            return Schedule(**vars(schedule))

    def update_schedule(self, schedule_id, **fields):
        with self._lock:
            schedule = self.schedules.get(schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            for key, value in fields.items():
                setattr(schedule, key, value)
            return Schedule(**vars(schedule))


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS etl_jobs (
    id SERIAL PRIMARY KEY,
    dataset_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    last_progress_at TIMESTAMPTZ,
    rows_processed BIGINT NOT NULL DEFAULT 0,
    row_limit BIGINT,
    after_id BIGINT,
    ranges JSONB,
    error_message TEXT,
    worker_id TEXT
);
ALTER TABLE etl_jobs ADD COLUMN IF NOT EXISTS after_id BIGINT;
ALTER TABLE etl_jobs ADD COLUMN IF NOT EXISTS ranges JSONB;
CREATE UNIQUE INDEX IF NOT EXISTS etl_jobs_one_active_per_dataset
    ON etl_jobs (dataset_id) WHERE status IN ('pending', 'running');
CREATE TABLE IF NOT EXISTS etl_schedules (
    id SERIAL PRIMARY KEY,
    dataset_id INTEGER NOT NULL UNIQUE,
    cron_expression TEXT,
    interval_code TEXT NOT NULL DEFAULT 'manual',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_run_at TIMESTAMPTZ,
    next_run_at TIMESTAMPTZ
);
"""

_LEGACY_ACTIONS = {"incremental_sync": JobAction.SCHEDULED_SYNC}


def _job_from_row(row: Dict[str, Any]) -> Job:
    data = dict(row)
    data["status"] = JobStatus(data["status"])
    action = data["action"]
    data["action"] = _LEGACY_ACTIONS.get(action) or JobAction(action)
    return Job(**{k: data.get(k) for k in Job.__dataclass_fields__ if k in data})


def _schedule_from_row(row: Dict[str, Any]) -> Schedule:
    return Schedule(**{k: row.get(k) for k in Schedule.__dataclass_fields__ if k in row})


def _db_value(value: Any) -> Any:
    if isinstance(value, ColumnMapping):
        return Json(value.model_dump())
    if hasattr(value, "value"):
        return value.value
    return value


class PostgresStore(MetadataStore):
    """Metadata store backed by the platform's PostgreSQL database."""

    def __init__(self, connection_string: str):
        self.connection_string = connection_string

    @contextmanager
    def _cursor(self):
        try:
            conn = psycopg2.connect(self.connection_string)
        except psycopg2.OperationalError as e:
            raise ConnectionError(
                f"Metadata database connection failed: {e}",
                suggestions=["Check SLUICE_DATABASE_URL."],
            ) from e
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self):
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Metadata schema ensured")

    def get_connection(self, connection_id):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM data_connections WHERE id = %s", (connection_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return Connection(**{k: v for k, v in row.items() if k in Connection.model_fields and v is not None})

    def _dataset(self, row) -> Dataset:
        return Dataset(**{k: v for k, v in row.items() if k in Dataset.model_fields and v is not None})

    def get_dataset(self, dataset_id):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM datasets WHERE id = %s", (dataset_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Dataset {dataset_id} not found")
        return self._dataset(row)

    def list_datasets(self):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM datasets ORDER BY id")
            return [self._dataset(r) for r in cur.fetchall()]

    def update_dataset(self, dataset_id, **fields):
        if not fields:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(k)) for k in fields
        )
        query = sql.SQL("UPDATE datasets SET {} WHERE id = %s").format(assignments)
        with self._cursor() as cur:
            cur.execute(query, [_db_value(v) for v in fields.values()] + [dataset_id])

    def set_column_mapping_if_absent(self, dataset_id, mapping):
        with self._cursor() as cur:
            cur.execute(
                "UPDATE datasets SET column_mapping = %s WHERE id = %s AND column_mapping IS NULL",
                (Json(mapping.model_dump()), dataset_id),
            )
            return cur.rowcount == 1

    def enqueue_if_absent(self, dataset_id, action, row_limit=None, after_id=None, ranges=None):
        action = JobAction(action)
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO etl_jobs (dataset_id, action, status, row_limit, after_id, ranges, created_at)
                    SELECT %s, %s, 'pending', %s, %s, %s, NOW()
                    WHERE NOT EXISTS (
                        SELECT 1 FROM etl_jobs WHERE dataset_id = %s AND status IN ('pending', 'running')
                    )
                    RETURNING *
                    """,
                    (dataset_id, action.value, row_limit, after_id, Json(ranges) if ranges else None, dataset_id),
                )
                row = cur.fetchone()
        except pg_errors.UniqueViolation:
            # A concurrent enqueue won the race
            row = None
        if row is not None:
            return _job_from_row(row), True
        active = self.active_jobs(dataset_id)
        if not active:
            # The blocking job finished in between
            return self.enqueue_if_absent(dataset_id, action, row_limit, after_id, ranges)
        return active[0], False

    def get_job(self, job_id):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM etl_jobs WHERE id = %s", (job_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return _job_from_row(row)

    def claim_next_pending(self, worker_id):
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE etl_jobs SET worker_id = %s
                WHERE id = (
                    SELECT id FROM etl_jobs
                    WHERE status = 'pending' AND worker_id IS NULL
                    ORDER BY created_at, id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (worker_id,),
            )
            row = cur.fetchone()
        return _job_from_row(row) if row else None

    def transition_job(self, job_id, from_statuses, to_status, **fields):
        values = {"status": to_status.value, **fields}
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(k)) for k in values
        )
        query = sql.SQL("UPDATE etl_jobs SET {} WHERE id = %s AND status = ANY(%s) RETURNING *").format(assignments)
        params = [_db_value(v) for v in values.values()] + [job_id, [s.value for s in from_statuses]]
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return _job_from_row(row) if row else None

    def update_progress(self, job_id, rows_processed):
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE etl_jobs
                SET rows_processed = GREATEST(rows_processed, %s), last_progress_at = NOW()
                WHERE id = %s AND status = 'running'
                """,
                (rows_processed, job_id),
            )

    def list_jobs(self, job_filter=None):
        job_filter = job_filter or JobFilter()
        clauses, params = [], []
        if job_filter.dataset_id is not None:
            clauses.append("dataset_id = %s")
            params.append(job_filter.dataset_id)
        if job_filter.statuses:
            clauses.append("status = ANY(%s)")
            params.append([s.value for s in job_filter.statuses])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._cursor() as cur:
            cur.execute(f"SELECT * FROM etl_jobs {where} ORDER BY created_at DESC, id DESC LIMIT %s",
                        params + [job_filter.limit])
            return [_job_from_row(r) for r in cur.fetchall()]

    def list_schedules(self, active_only=False):
        with self._cursor() as cur:
            if active_only:
                cur.execute("SELECT * FROM etl_schedules WHERE is_active ORDER BY id")
            else:
                cur.execute("SELECT * FROM etl_schedules ORDER BY id")
            return [_schedule_from_row(r) for r in cur.fetchall()]

    def get_schedule(self, schedule_id):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM etl_schedules WHERE id = %s", (schedule_id,))
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return _schedule_from_row(row)

    def get_schedule_for_dataset(self, dataset_id):
        with self._cursor() as cur:
            cur.execute("SELECT * FROM etl_schedules WHERE dataset_id = %s", (dataset_id,))
            row = cur.fetchone()
        return _schedule_from_row(row) if row else None

    def upsert_schedule(self, dataset_id, cron_expression, interval_code, next_run_at):
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO etl_schedules (dataset_id, cron_expression, interval_code, is_active, next_run_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (dataset_id) DO UPDATE
                SET cron_expression = EXCLUDED.cron_expression,
                    interval_code = EXCLUDED.interval_code,
                    next_run_at = EXCLUDED.next_run_at
                RETURNING *
                """,
                (dataset_id, cron_expression, interval_code, cron_expression is not None, next_run_at),
            )
            return _schedule_from_row(cur.fetchone())

    def update_schedule(self, schedule_id, **fields):
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(k)) for k in fields
        )
        query = sql.SQL("UPDATE etl_schedules SET {} WHERE id = %s RETURNING *").format(assignments)
        with self._cursor() as cur:
            cur.execute(query, list(fields.values()) + [schedule_id])
            row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return _schedule_from_row(row)


def create_store(database_url: Optional[str]) -> MetadataStore:
    if database_url:
        return PostgresStore(database_url)
    logger.warning("No database_url configured; using in-memory metadata store")
    return MemoryStore()
