# src/sluice_core/supervisor.py

import logging
import os
import socket
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .cache import Cache
from .config import Settings
from .engine import SyncEngine
from .errors import JobStateError, NotFoundError
from .health import heartbeat_key, read_heartbeats, write_heartbeat
from .models import Heartbeat, Job, utcnow
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class WorkerSupervisor:
    """
    Owns the worker threads of one process.

    The consumer thread claims pending jobs and runs them one at a time. The
    control thread publishes the heartbeat and ticks the scheduler. Stopping
    never interrupts a job mid-batch: with cancel_running the active jobs get
    a cancel flag and wind down at their next batch boundary.
    """

    def __init__(
        self,
        engine: SyncEngine,
        scheduler: Scheduler,
        cache: Cache,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.worker_id = engine.worker_id
        self.pid = os.getpid()

        self.state = WorkerState.STOPPED
        self.started_at: Optional[datetime] = None
        self._started_monotonic: Optional[float] = None
        self._last_tick: Optional[float] = None
        self._stop = threading.Event()
        self._threads = []
        self._state_lock = threading.Lock()

    @property
    def store(self):
        return self.engine.store

    @property
    def uptime(self) -> float:
        if self._started_monotonic is None:
            return 0.0
        return time.monotonic() - self._started_monotonic

    def start(self) -> bool:
        with self._state_lock:
            if self.state != WorkerState.STOPPED:
                logger.info(f"Worker {self.worker_id} already {self.state.value}")
                return False
            self._stop.clear()
            self.started_at = self.clock()
            self._started_monotonic = time.monotonic()
            self._last_tick = None
            self._threads = [
                threading.Thread(target=self._consume_loop, name=f"sluice-consumer-{self.worker_id}", daemon=True),
                threading.Thread(target=self._control_loop, name=f"sluice-control-{self.worker_id}", daemon=True),
            ]
            for thread in self._threads:
                thread.start()
            self.state = WorkerState.RUNNING
        logger.info(f"Worker {self.worker_id} started")
        return True

    def stop(self, cancel_running: bool = False, timeout: Optional[float] = None) -> bool:
        """Stop the worker threads. Returns False if a job was still running when timeout expired."""
        with self._state_lock:
            if self.state == WorkerState.STOPPED:
                return True
            self.state = WorkerState.STOPPING
            self._stop.set()

        if cancel_running:
            for job_id in self.engine.active_jobs:
                try:
                    self.engine.tracker.request_cancel(job_id)
                    logger.info(f"Cancellation requested for job {job_id}")
                except (JobStateError, NotFoundError) as e:
                    logger.debug(f"Job {job_id} not cancelled: {e}")

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

        if any(t.is_alive() for t in self._threads):
            logger.warning(f"Worker {self.worker_id} still finishing jobs {self.engine.active_jobs}")
            return False

        with self._state_lock:
            self._threads = []
            self.state = WorkerState.STOPPED
        self.cache.delete(heartbeat_key(self.worker_id))
        logger.info(f"Worker {self.worker_id} stopped")
        return True

    def restart(self, cancel_running: bool = False, timeout: Optional[float] = None) -> bool:
        if not self.stop(cancel_running=cancel_running, timeout=timeout):
            return False
        return self.start()

    def run_forever(self, cancel_on_exit: bool = False):
        """Run until interrupted. Used by the `sluice worker` command."""
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop(cancel_running=cancel_on_exit)

    def heartbeat(self, now: Optional[datetime] = None) -> Heartbeat:
        beat = Heartbeat(
            timestamp=now or self.clock(),
            pid=self.pid,
            started_at=self.started_at or self.clock(),
            uptime=round(self.uptime, 1),
            active_jobs=self.engine.active_jobs,
            worker_id=self.worker_id,
        )
        write_heartbeat(self.cache, beat, self.settings.heartbeat_ttl)
        return beat

    def poll_once(self) -> Optional[Job]:
        """Claim and run the next pending job. Returns the finished job, or None if the queue is empty."""
        job = self.store.claim_next_pending(self.worker_id)
        if job is None:
            return None
        return self.engine.run_job(job)

    def _consume_loop(self):
        while not self._stop.is_set():
            try:
                finished = self.poll_once()
            except Exception:
                # Metadata store or cache unreachable; back off and try again
                logger.exception("Worker failed to claim a job")
                finished = None
            if finished is None:
                self._stop.wait(self.settings.poll_interval)

    def _control_loop(self):
        while not self._stop.is_set():
            try:
                self.heartbeat()
                now = time.monotonic()
                if self._last_tick is None or now - self._last_tick >= self.settings.scheduler_interval:
                    self._last_tick = now
                    self.scheduler.tick()
            except Exception:
                logger.exception("Worker control loop error")
            self._stop.wait(self.settings.heartbeat_interval)

    def status(self) -> Dict[str, Any]:
        beat = read_heartbeats(self.cache).get(self.worker_id)
        return {
            "status": self.state.value,
            "worker_id": self.worker_id,
            "last_heartbeat": beat.timestamp.isoformat() if beat else None,
            "active_jobs": self.engine.active_jobs,
            "worker_info": {
                "pid": self.pid,
                "uptime": round(self.uptime, 1),
                "started_at": self.started_at.isoformat() if self.started_at else None,
            },
        }
