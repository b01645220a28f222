# tests/test_health.py
import logging
from datetime import datetime, timedelta, timezone

import pytest

from sluice_core.health import (
    HEARTBEAT_PREFIX,
    check_health,
    detect_crash,
    find_stuck_jobs,
    is_stale,
    read_heartbeats,
    write_heartbeat,
)
from sluice_core.locks import LockManager
from sluice_core.models import Heartbeat, Job, JobAction, JobStatus

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def beat(worker_id="worker-a", age=5):
    return Heartbeat(timestamp=NOW - timedelta(seconds=age), pid=4242, started_at=NOW - timedelta(hours=1),
                     uptime=3600.0, active_jobs=[1], worker_id=worker_id)


def running_job(job_id=1, dataset_id=10, worker_id="worker-a", started_ago=60, progress_ago=None):
    started = NOW - timedelta(seconds=started_ago)
    progress = None if progress_ago is None else NOW - timedelta(seconds=progress_ago)
    return Job(id=job_id, dataset_id=dataset_id, action=JobAction.MANUAL_SYNC, status=JobStatus.RUNNING,
               created_at=started, started_at=started, last_progress_at=progress, worker_id=worker_id)


@pytest.fixture
def locks(cache):
    return LockManager(cache)


def test_heartbeat_round_trip_through_cache(cache):
    write_heartbeat(cache, beat(), ttl=60)
    cache.set(f"{HEARTBEAT_PREFIX}broken", "{not json")

    beats = read_heartbeats(cache)

    assert list(beats) == ["worker-a"]
    assert beats["worker-a"].timestamp == NOW - timedelta(seconds=5)
    assert beats["worker-a"].active_jobs == [1]


def test_is_stale():
    assert not is_stale(beat(age=30), NOW, max_age=60)
    assert is_stale(beat(age=61), NOW, max_age=60)
    assert is_stale(None, NOW, max_age=60)


def test_long_running_job_with_progress_is_not_stuck():
    job = running_job(started_ago=7200, progress_ago=30)
    assert find_stuck_jobs([job], NOW, threshold=600) == []


def test_job_without_progress_is_stuck():
    job = running_job(started_ago=3600, progress_ago=900)

    stuck = find_stuck_jobs([job], NOW, threshold=600)

    assert [s.job.id for s in stuck] == [1]
    assert stuck[0].running_seconds == 3600
    assert stuck[0].idle_seconds == 900


def test_recent_job_without_progress_is_not_stuck():
    assert find_stuck_jobs([running_job(started_ago=120)], NOW, threshold=600) == []


def test_stale_heartbeat_with_running_job_is_a_crash(locks):
    locks.acquire(10, "worker-a")

    signatures = detect_crash({"worker-a": beat(age=300)}, [running_job()], locks.list(), NOW, max_age=60)

    assert len(signatures) == 1
    assert "stale" in signatures[0].reason
    assert [j.id for j in signatures[0].jobs] == [1]
    assert [lock.dataset_id for lock in signatures[0].locks] == [10]


def test_fresh_heartbeat_is_not_a_crash(locks):
    locks.acquire(10, "worker-a")
    assert detect_crash({"worker-a": beat(age=5)}, [running_job()], locks.list(), NOW, max_age=60) == []


def test_missing_heartbeat_for_other_worker_is_a_crash():
    job = running_job(worker_id="worker-b")
    signatures = detect_crash({"worker-a": beat()}, [job], [], NOW, max_age=60)
    assert [j.worker_id for j in signatures[0].jobs] == ["worker-b"]


def test_lock_without_job_is_dangling(locks):
    locks.acquire(22, "worker-gone")

    signatures = detect_crash({}, [], locks.list(), NOW, max_age=60)

    assert len(signatures) == 1
    assert "no running job" in signatures[0].reason
    assert signatures[0].locks[0].dataset_id == 22


def test_check_health_reports_and_logs(store, cache, locks, add_dataset, caplog):
    add_dataset()
    job, _ = store.enqueue_if_absent(10, JobAction.MANUAL_SYNC)
    store.claim_next_pending("worker-a")
    store.transition_job(job.id, [JobStatus.PENDING], JobStatus.RUNNING,
                         started_at=NOW - timedelta(hours=2), last_progress_at=NOW - timedelta(hours=1))
    locks.acquire(10, "worker-a")
    write_heartbeat(cache, beat(age=600), ttl=3600)

    with caplog.at_level(logging.WARNING, logger="sluice_core.health"):
        report = check_health(store, cache, locks, stuck_threshold=600, heartbeat_ttl=60, now=NOW)

    assert not report.healthy
    assert [s.job.id for s in report.stuck_jobs] == [job.id]
    assert len(report.crash_signatures) == 1
    assert "looks stuck" in caplog.text
    assert "Possible worker crash" in caplog.text

    data = report.to_dict()
    assert data["healthy"] is False
    assert data["workers"]["worker-a"]["pid"] == 4242
    assert data["running_jobs"][0]["status"] == "running"


def test_idle_system_is_healthy(store, cache, locks):
    report = check_health(store, cache, locks, stuck_threshold=600, heartbeat_ttl=60, now=NOW)
    assert report.healthy
    assert report.to_dict()["crash_signatures"] == []
