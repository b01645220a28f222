# src/sluice_core/health.py
"""
Stuck-job and crash detection.

These checks only report. Recovery (cancel a job, clear a lock) is always an
explicit operator action.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .cache import Cache
from .locks import LockManager
from .models import Heartbeat, Job, JobStatus, Lock, as_utc, utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_PREFIX = "etl:worker:heartbeat:"


def heartbeat_key(worker_id: str) -> str:
    return f"{HEARTBEAT_PREFIX}{worker_id}"


def write_heartbeat(cache: Cache, heartbeat: Heartbeat, ttl: int):
    cache.set(heartbeat_key(heartbeat.worker_id), json.dumps(heartbeat.to_dict()), ttl)


def read_heartbeats(cache: Cache) -> Dict[str, Heartbeat]:
    beats = {}
    for key in cache.keys(f"{HEARTBEAT_PREFIX}*"):
        raw = cache.get(key)
        if raw is None:
            continue
        try:
            beat = Heartbeat.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed heartbeat {key}: {e}")
            continue
        beats[key[len(HEARTBEAT_PREFIX):]] = beat
    return beats


def is_stale(heartbeat: Optional[Heartbeat], now: datetime, max_age: int) -> bool:
    if heartbeat is None:
        return True
    return as_utc(now) - as_utc(heartbeat.timestamp) > timedelta(seconds=max_age)


@dataclass
class StuckJob:
    job: Job
    running_seconds: float
    idle_seconds: float


@dataclass
class CrashSignature:
    reason: str
    jobs: List[Job] = field(default_factory=list)
    locks: List[Lock] = field(default_factory=list)


@dataclass
class HealthReport:
    checked_at: datetime
    heartbeats: Dict[str, Heartbeat]
    running_jobs: List[Job]
    locks: List[Lock]
    stuck_jobs: List[StuckJob]
    crash_signatures: List[CrashSignature]

    @property
    def healthy(self) -> bool:
        return not self.stuck_jobs and not self.crash_signatures

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.healthy,
            "workers": {wid: hb.to_dict() for wid, hb in self.heartbeats.items()},
            "running_jobs": [j.to_dict() for j in self.running_jobs],
            "locks": [lock.to_dict() for lock in self.locks],
            "stuck_jobs": [
                {"job": s.job.to_dict(), "running_seconds": s.running_seconds, "idle_seconds": s.idle_seconds}
                for s in self.stuck_jobs
            ],
            "crash_signatures": [
                {
                    "reason": c.reason,
                    "jobs": [j.to_dict() for j in c.jobs],
                    "locks": [lock.to_dict() for lock in c.locks],
                }
                for c in self.crash_signatures
            ],
        }


def find_stuck_jobs(jobs: List[Job], now: datetime, threshold: int) -> List[StuckJob]:
    """Running longer than threshold seconds with no progress reported within threshold."""
    now = as_utc(now)
    stuck = []
    for job in jobs:
        if job.status != JobStatus.RUNNING or job.started_at is None:
            continue
        running = (now - as_utc(job.started_at)).total_seconds()
        last_progress = as_utc(job.last_progress_at or job.started_at)
        idle = (now - last_progress).total_seconds()
        if running > threshold and idle > threshold:
            stuck.append(StuckJob(job, running, idle))
    return stuck


def detect_crash(
    heartbeats: Dict[str, Heartbeat],
    claimed_jobs: List[Job],
    locks: List[Lock],
    now: datetime,
    max_age: int,
) -> List[CrashSignature]:
    """
    claimed_jobs are active jobs with a worker_id: running, or pending and
    claimed but not started yet.
    """
    signatures = []

    orphaned = [
        j for j in claimed_jobs
        if is_stale(heartbeats.get(j.worker_id) if j.worker_id else None, now, max_age)
    ]
    if orphaned:
        signatures.append(CrashSignature(
            reason=f"Owning worker heartbeat is stale for {len(orphaned)} active job(s)",
            jobs=orphaned,
            locks=[lock for lock in locks if lock.dataset_id in {j.dataset_id for j in orphaned}],
        ))

    owned = {j.dataset_id for j in claimed_jobs}
    dangling = [lock for lock in locks if lock.dataset_id not in owned]
    if dangling:
        signatures.append(CrashSignature(
            reason=f"{len(dangling)} lock(s) held with no running job",
            locks=dangling,
        ))
    return signatures


def check_health(store, cache: Cache, locks: LockManager, stuck_threshold: int, heartbeat_ttl: int,
                 now: Optional[datetime] = None) -> HealthReport:
    now = now or utcnow()
    claimed = [j for j in store.active_jobs() if j.worker_id]
    running = [j for j in claimed if j.status == JobStatus.RUNNING]
    active_locks = locks.list()
    heartbeats = read_heartbeats(cache)
    report = HealthReport(
        checked_at=now,
        heartbeats=heartbeats,
        running_jobs=running,
        locks=active_locks,
        stuck_jobs=find_stuck_jobs(running, now, stuck_threshold),
        crash_signatures=detect_crash(heartbeats, claimed, active_locks, now, heartbeat_ttl),
    )
    for stuck in report.stuck_jobs:
        logger.warning(
            f"Job {stuck.job.id} looks stuck: running {stuck.running_seconds:.0f}s, "
            f"no progress for {stuck.idle_seconds:.0f}s"
        )
    for crash in report.crash_signatures:
        logger.warning(f"Possible worker crash: {crash.reason}. Cancel the jobs or clear the locks explicitly.")
    return report
