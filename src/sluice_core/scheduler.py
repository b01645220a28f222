# src/sluice_core/scheduler.py

import logging
import re
from datetime import datetime
from typing import Callable, List, Optional

from croniter import croniter

from .errors import ConfigurationError, DuplicateJobError, NotFoundError
from .jobs import JobTracker
from .models import Job, JobAction, Schedule, as_utc, utcnow
from .store import MetadataStore

logger = logging.getLogger(__name__)

DEFAULT_DAILY_HOUR = 2

INTERVAL_CRON = {
    "1m": "* * * * *",
    "5m": "*/5 * * * *",
    "15m": "*/15 * * * *",
    "30m": "*/30 * * * *",
    "1h": "0 * * * *",
    "hourly": "0 * * * *",
    "6h": "0 */6 * * *",
    "12h": "0 */12 * * *",
    "1d": "0 0 * * *",
}

_DAILY_RE = re.compile(r"^daily(?:@(\d{1,2}))?$")
_MINUTES_RE = re.compile(r"^(\d{1,2})m$")
_HOURS_RE = re.compile(r"^(\d{1,2})h$")


def interval_to_cron(code: Optional[str], hour: int = DEFAULT_DAILY_HOUR) -> Optional[str]:
    """
    Translate an interval code to a cron expression.

    'manual' (or empty) means no schedule and returns None. Besides the fixed
    codes, 'Nm', 'Nh', 'daily' and 'daily@H' are accepted, and a raw 5-field
    cron expression is passed through after validation.
    """
    if code is None:
        return None
    code = code.strip()
    if code in ("", "manual"):
        return None
    if code in INTERVAL_CRON:
        return INTERVAL_CRON[code]

    m = _DAILY_RE.match(code)
    if m:
        at = int(m.group(1)) if m.group(1) is not None else hour
        if not 0 <= at <= 23:
            raise ConfigurationError(f"Invalid hour in interval '{code}'")
        return f"0 {at} * * *"

    m = _MINUTES_RE.match(code)
    if m and 1 <= int(m.group(1)) <= 59:
        return f"*/{int(m.group(1))} * * * *"

    m = _HOURS_RE.match(code)
    if m and 1 <= int(m.group(1)) <= 23:
        return f"0 */{int(m.group(1))} * * *"

    if len(code.split()) == 5 and croniter.is_valid(code):
        return code
    raise ConfigurationError(f"Unknown schedule interval '{code}'")


def next_run(cron_expression: str, after: datetime) -> datetime:
    return croniter(cron_expression, as_utc(after)).get_next(datetime)


class Scheduler:
    """Enqueues scheduled syncs. Safe to run from several workers: enqueue is idempotent."""

    def __init__(self, store: MetadataStore, tracker: JobTracker, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.tracker = tracker
        self.clock = clock

    def tick(self, now: Optional[datetime] = None) -> List[Job]:
        now = as_utc(now or self.clock())
        enqueued = []
        for schedule in self.store.list_schedules(active_only=True):
            if not schedule.cron_expression:
                continue
            if schedule.next_run_at is None:
                self.store.update_schedule(schedule.id, next_run_at=next_run(schedule.cron_expression, now))
                continue
            if as_utc(schedule.next_run_at) > now:
                continue

            job = self._enqueue(schedule)
            if job is not None:
                enqueued.append(job)
            self.store.update_schedule(
                schedule.id, last_run_at=now, next_run_at=next_run(schedule.cron_expression, now)
            )
        if enqueued:
            logger.info(f"Scheduler enqueued {len(enqueued)} job(s)")
        return enqueued

    def _enqueue(self, schedule: Schedule) -> Optional[Job]:
        try:
            dataset = self.store.get_dataset(schedule.dataset_id)
            return self.tracker.enqueue(schedule.dataset_id, JobAction.SCHEDULED_SYNC, dataset.row_limit)
        except DuplicateJobError as e:
            logger.debug(f"Schedule {schedule.id}: dataset {schedule.dataset_id} already queued (job {e.existing_job_id})")
        except NotFoundError:
            logger.warning(f"Schedule {schedule.id} points at missing dataset {schedule.dataset_id}")
        return None

    def set_interval(self, dataset_id, interval_code: str, now: Optional[datetime] = None) -> Schedule:
        cron = interval_to_cron(interval_code)
        now = now or self.clock()
        self.store.get_dataset(dataset_id)
        previous = self.store.get_schedule_for_dataset(dataset_id)
        schedule = self.store.upsert_schedule(
            dataset_id, cron, interval_code, next_run(cron, now) if cron else None
        )
        if cron is None and schedule.is_active:
            schedule = self.store.update_schedule(schedule.id, is_active=False)
        elif cron and previous is not None and previous.cron_expression is None:
            # Leaving 'manual' turns the schedule on; an operator pause is otherwise kept
            schedule = self.store.update_schedule(schedule.id, is_active=True)
        self.store.update_dataset(dataset_id, schedule=interval_code)
        logger.info(f"Dataset {dataset_id} schedule set to {interval_code} ({cron or 'manual'})")
        return schedule

    def toggle(self, schedule_id, is_active: bool, now: Optional[datetime] = None) -> Schedule:
        schedule = self.store.get_schedule(schedule_id)
        fields = {"is_active": is_active}
        if is_active:
            if not schedule.cron_expression:
                raise ConfigurationError(f"Schedule {schedule_id} is manual and cannot be activated")
            fields["next_run_at"] = next_run(schedule.cron_expression, now or self.clock())
        return self.store.update_schedule(schedule_id, **fields)
