# src/sluice_core/models.py
"""Runtime records written by the engine: jobs, locks, schedules, heartbeats."""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes from the metadata store as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class JobAction(str, Enum):
    INITIAL_SYNC = "initial_sync"
    MANUAL_SYNC = "manual_sync"
    SCHEDULED_SYNC = "scheduled_sync"
    FULL_REFRESH = "full_refresh"
    PARTIAL_REFRESH = "partial_refresh"
    NEW_RECORDS_SYNC = "new_records_sync"
    MISSING_SYNC = "missing_sync"


@dataclass
class Job:
    """One execution of a dataset sync."""

    id: int
    dataset_id: int
    action: JobAction
    status: JobStatus = JobStatus.PENDING
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None
    rows_processed: int = 0
    row_limit: Optional[int] = None
    after_id: Optional[int] = None
    # missing_sync: inclusive [{"start": ..., "end": ...}] ranges of unique_column
    ranges: Optional[List[Dict[str, int]]] = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["status"] = self.status.value
        for key in ("created_at", "started_at", "completed_at", "last_progress_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Lock:
    dataset_id: int
    holder: str
    acquired_at: datetime
    ttl: int
    remaining_ttl: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["acquired_at"] = self.acquired_at.isoformat()
        return data


@dataclass
class Schedule:
    id: int
    dataset_id: int
    cron_expression: Optional[str]
    interval_code: str = "manual"
    is_active: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None


@dataclass
class Heartbeat:
    timestamp: datetime
    pid: int
    started_at: datetime
    uptime: float
    active_jobs: List[int] = field(default_factory=list)
    worker_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "uptime": self.uptime,
            "active_jobs": list(self.active_jobs),
            "worker_id": self.worker_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Heartbeat":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            pid=int(data["pid"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            uptime=float(data.get("uptime", 0)),
            active_jobs=list(data.get("active_jobs") or []),
            worker_id=data.get("worker_id"),
        )


@dataclass
class JobFilter:
    dataset_id: Optional[int] = None
    statuses: Optional[List[JobStatus]] = None
    limit: int = 100
