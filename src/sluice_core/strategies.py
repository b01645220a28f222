# src/sluice_core/strategies.py
"""
Builds the extraction queries and target mutations for one sync.

Everything here is pure: no connection is opened, so a misconfigured dataset
fails with ConfigurationError before any extraction starts.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple

from .config import Dataset, LoadMode, SyncStrategy
from .dialects import Dialect
from .errors import ConfigurationError
from .models import JobAction, as_utc, utcnow
from .schema import sanitize_name

logger = logging.getLogger(__name__)

WEEKLY_FULL_REFRESH_INTERVAL = timedelta(days=7)

# Operator actions keyed on unique_column instead of the dataset strategy
ID_RANGE_ACTIONS = (JobAction.NEW_RECORDS_SYNC, JobAction.MISSING_SYNC)


@dataclass(frozen=True)
class Truncate:
    pass


@dataclass(frozen=True)
class DeleteRange:
    column: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class DeleteDate:
    column: str
    day: date


@dataclass(frozen=True)
class DeleteIds:
    """Inclusive id range, start <= column <= end."""
    column: str
    start: int
    end: int


@dataclass(frozen=True)
class Optimize:
    final: bool = True


@dataclass
class PlanStep:
    query: str
    params: Tuple[Any, ...] = ()
    mutations: List[Any] = field(default_factory=list)
    label: str = ""


@dataclass
class SyncPlan:
    strategy: SyncStrategy
    steps: List[PlanStep]
    post_load: List[Any] = field(default_factory=list)
    row_limit: Optional[int] = None
    watermark_column: Optional[str] = None
    full_reload: bool = False

    @property
    def mutations(self) -> List[Any]:
        return [m for step in self.steps for m in step.mutations]


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def date_window(now: datetime, days: int) -> Tuple[datetime, datetime]:
    """[start of day `days` ago, start of tomorrow)"""
    today = start_of_day(now)
    return today - timedelta(days=days), today + timedelta(days=1)


def sliding_window_dates(now: datetime, days: int) -> List[date]:
    today = now.date()
    return [today - timedelta(days=i) for i in range(days)]


def _require(dataset: Dataset, attribute: str, reason: str):
    if not getattr(dataset, attribute):
        raise ConfigurationError(f"Dataset '{dataset.label}' requires {attribute} for {reason}")


def target_column(dataset: Dataset, source_column: str) -> str:
    """Target name of a source column under the dataset's mapping."""
    if dataset.column_mapping:
        for entry in dataset.column_mapping.columns:
            if entry.source == source_column:
                return entry.target
    return sanitize_name(source_column)


def _base_where(dataset: Dataset, dialect: Optional[Dialect] = None, parameterized: bool = False) -> List[str]:
    if not dataset.custom_where:
        return []
    return [dialect.fragment(dataset.custom_where, parameterized) if dialect else dataset.custom_where]


def _relation(dataset: Dataset, dialect: Dialect, parameterized: bool) -> str:
    return dialect.source_relation(dataset.source_table, dialect.fragment(dataset.source_query, parameterized))


def _naive(now: datetime) -> datetime:
    # Source columns are compared as local wall-clock values
    return now.replace(tzinfo=None)


def validate_dataset(dataset: Dataset, action: JobAction = JobAction.MANUAL_SYNC):
    """Raise ConfigurationError if the dataset cannot run `action` with its strategy."""
    strategy = dataset.sync_strategy
    if action == JobAction.PARTIAL_REFRESH:
        _require(dataset, "partition_column", "partial_refresh")
    elif action not in (JobAction.INITIAL_SYNC, JobAction.FULL_REFRESH) + ID_RANGE_ACTIONS:
        if strategy in (SyncStrategy.TIMESTAMP, SyncStrategy.ID, SyncStrategy.DATE_DELETE_INSERT):
            _require(dataset, "reference_column", f"the {strategy.value} strategy")
        if strategy == SyncStrategy.DATE_PARTITION:
            _require(dataset, "partition_column", "the date_partition strategy")
            if dataset.detect_modified:
                _require(dataset, "modified_column", "modified-row detection")

    if action != JobAction.INITIAL_SYNC:
        _require(dataset, "unique_column", "a sync beyond the initial sample")
    if dataset.load_mode == LoadMode.UPSERT:
        _require(dataset, "unique_column", "load_mode=upsert")


def needs_weekly_full_refresh(dataset: Dataset, now: datetime) -> bool:
    if not dataset.weekly_full_refresh:
        return False
    if dataset.last_full_refresh_at is None:
        return True
    return as_utc(now) - as_utc(dataset.last_full_refresh_at) >= WEEKLY_FULL_REFRESH_INTERVAL


def modified_dates_query(dataset: Dataset, dialect: Dialect, since: datetime) -> Tuple[str, Tuple[Any, ...]]:
    """Distinct partition dates of source rows modified since the last sync."""
    relation = _relation(dataset, dialect, parameterized=True)
    where = _base_where(dataset, dialect, True) + [f"{dialect.quote(dataset.modified_column)} >= {dialect.placeholder}"]
    column = f"DISTINCT {dialect.as_date(dataset.partition_column)} AS partition_date"
    return dialect.select(relation, columns=column, where=where), (_naive(since),)


def _optimize_steps(dataset: Dataset) -> List[Any]:
    return [Optimize(final=True)] if dataset.load_mode == LoadMode.UPSERT else []


def _full_refresh_plan(dataset: Dataset, dialect: Dialect, full_reload: bool = False) -> SyncPlan:
    order_by = dialect.quote(dataset.unique_column) if dataset.unique_column else None
    query = dialect.select(
        _relation(dataset, dialect, False),
        where=_base_where(dataset),
        order_by=order_by,
        limit=dataset.row_limit,
    )
    return SyncPlan(
        strategy=dataset.sync_strategy,
        steps=[PlanStep(query=query, mutations=[Truncate()], label="truncate and reload")],
        post_load=_optimize_steps(dataset),
        row_limit=dataset.row_limit,
        full_reload=full_reload,
    )


def _incremental_plan(dataset: Dataset, dialect: Dialect, watermark: Any) -> SyncPlan:
    ref = dialect.quote(dataset.reference_column)
    parameterized = watermark is not None
    where = _base_where(dataset, dialect, parameterized)
    params: Tuple[Any, ...] = ()
    if parameterized:
        if dataset.sync_strategy == SyncStrategy.ID:
            watermark = coerce_id(watermark)
        where.append(f"{ref} > {dialect.placeholder}")
        params = (watermark,)
        label = f"{dataset.reference_column} > {watermark}"
    else:
        label = "first load, no watermark"

    query = dialect.select(_relation(dataset, dialect, parameterized), where=where, order_by=ref,
                           limit=dataset.row_limit)
    return SyncPlan(
        strategy=dataset.sync_strategy,
        steps=[PlanStep(query=query, params=params, label=label)],
        post_load=_optimize_steps(dataset),
        row_limit=dataset.row_limit,
        watermark_column=dataset.reference_column,
    )


def _delete_insert_plan(dataset: Dataset, dialect: Dialect, now: datetime) -> SyncPlan:
    start, end = date_window(_naive(now), dataset.delete_window_days)
    ref = dialect.quote(dataset.reference_column)
    where = _base_where(dataset, dialect, True) + [
        f"{ref} >= {dialect.placeholder}",
        f"{ref} < {dialect.placeholder}",
    ]
    query = dialect.select(_relation(dataset, dialect, True), where=where, order_by=ref, limit=dataset.row_limit)
    mutation = DeleteRange(target_column(dataset, dataset.reference_column), start, end)
    return SyncPlan(
        strategy=dataset.sync_strategy,
        steps=[PlanStep(query=query, params=(start, end), mutations=[mutation],
                        label=f"{start.date()}..{end.date()}")],
        post_load=_optimize_steps(dataset),
        row_limit=dataset.row_limit,
    )


def _partition_plan(dataset: Dataset, dialect: Dialect, now: datetime, modified_dates: Iterable[date]) -> SyncPlan:
    days = set(sliding_window_dates(_naive(now), dataset.refresh_window_days))
    extra = {d.date() if isinstance(d, datetime) else d for d in modified_dates if d is not None}
    if extra - days:
        logger.info(f"Modified rows found in {len(extra - days)} partition date(s) outside the window")
    days |= extra

    target = target_column(dataset, dataset.partition_column)
    day_expr = dialect.as_date(dataset.partition_column)
    relation = _relation(dataset, dialect, True)
    steps = []
    for day in sorted(days):
        where = _base_where(dataset, dialect, True) + [f"{day_expr} = {dialect.placeholder}"]
        query = dialect.select(relation, where=where, limit=dataset.row_limit)
        steps.append(PlanStep(query=query, params=(day,), mutations=[DeleteDate(target, day)], label=str(day)))

    return SyncPlan(
        strategy=dataset.sync_strategy,
        steps=steps,
        post_load=[Optimize(final=dataset.load_mode == LoadMode.UPSERT)],
        row_limit=dataset.row_limit,
    )


def normalize_ranges(ranges: Any) -> List[Tuple[int, int]]:
    """
    Validate missing_sync ranges.

    Accepts [{"start": 1, "end": 500}, ...] or [(1, 500), ...]; bounds are inclusive.

    Raises:
        ConfigurationError: If the list is empty or a range is malformed
    """
    if not ranges:
        raise ConfigurationError("missing_sync requires at least one id range")
    normalized = []
    for item in ranges:
        try:
            if isinstance(item, dict):
                start, end = item["start"], item["end"]
            else:
                start, end = item
            # str() first so 1.5 and True are rejected instead of truncated
            start, end = int(str(start)), int(str(end))
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(f"Invalid id range {item!r}: expected integer start and end")
        if start > end:
            raise ConfigurationError(f"Invalid id range {start}..{end}: start is after end")
        normalized.append((start, end))
    return normalized


def _new_records_plan(dataset: Dataset, dialect: Dialect, after_id: Any) -> SyncPlan:
    key = dialect.quote(dataset.unique_column)
    after_id = coerce_id(after_id) if after_id is not None else 0
    where = _base_where(dataset, dialect, True) + [f"{key} > {dialect.placeholder}"]
    query = dialect.select(_relation(dataset, dialect, True), where=where, order_by=key, limit=dataset.row_limit)
    return SyncPlan(
        strategy=dataset.sync_strategy,
        steps=[PlanStep(query=query, params=(after_id,), label=f"{dataset.unique_column} > {after_id}")],
        post_load=_optimize_steps(dataset),
        row_limit=dataset.row_limit,
    )


def _missing_ranges_plan(dataset: Dataset, dialect: Dialect, ranges: Any) -> SyncPlan:
    key = dialect.quote(dataset.unique_column)
    target = target_column(dataset, dataset.unique_column)
    relation = _relation(dataset, dialect, True)
    steps = []
    for start, end in normalize_ranges(ranges):
        where = _base_where(dataset, dialect, True) + [
            f"{key} >= {dialect.placeholder}",
            f"{key} <= {dialect.placeholder}",
        ]
        steps.append(PlanStep(
            query=dialect.select(relation, where=where, order_by=key),
            params=(start, end),
            mutations=[DeleteIds(target, start, end)],
            label=f"{dataset.unique_column} {start}..{end}",
        ))
    return SyncPlan(strategy=dataset.sync_strategy, steps=steps, post_load=_optimize_steps(dataset))


def coerce_id(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return value
    return value


def build_plan(
    dataset: Dataset,
    dialect: Dialect,
    action: JobAction = JobAction.MANUAL_SYNC,
    now: Optional[datetime] = None,
    watermark: Any = None,
    modified_dates: Iterable[date] = (),
    after_id: Any = None,
    ranges: Any = None,
) -> SyncPlan:
    """
    Build the plan for one job.

    Args:
        dataset: Dataset configuration
        dialect: Source SQL dialect
        action: Job action; full_refresh and initial_sync always truncate-reload
        now: Reference time for date windows
        watermark: Last loaded reference value (timestamp/id strategies)
        modified_dates: Extra partition dates to reload (date_partition with detect_modified)
        after_id: Lower bound (exclusive) of unique_column for new_records_sync
        ranges: Inclusive unique_column ranges for missing_sync

    Raises:
        ConfigurationError: If a required column is missing or the ranges are invalid
    """
    validate_dataset(dataset, action)
    now = now or utcnow()
    strategy = dataset.sync_strategy

    if action == JobAction.NEW_RECORDS_SYNC:
        return _new_records_plan(dataset, dialect, after_id)

    if action == JobAction.MISSING_SYNC:
        return _missing_ranges_plan(dataset, dialect, ranges)

    if action in (JobAction.INITIAL_SYNC, JobAction.FULL_REFRESH) or strategy == SyncStrategy.FULL_REFRESH:
        # An initial sync may be a capped sample, so it does not count as a full reload
        return _full_refresh_plan(dataset, dialect, full_reload=action != JobAction.INITIAL_SYNC)

    if action == JobAction.PARTIAL_REFRESH:
        return _partition_plan(dataset, dialect, now, ())

    if strategy in (SyncStrategy.TIMESTAMP, SyncStrategy.ID):
        return _incremental_plan(dataset, dialect, watermark)

    if strategy == SyncStrategy.DATE_DELETE_INSERT:
        return _delete_insert_plan(dataset, dialect, now)

    if needs_weekly_full_refresh(dataset, now):
        logger.info(f"Weekly full reload due for dataset '{dataset.label}'")
        return _full_refresh_plan(dataset, dialect, full_reload=True)
    return _partition_plan(dataset, dialect, now, modified_dates)
