# src/sluice_core/schema.py

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import ColumnMapping, ColumnMappingEntry, Dataset, LoadMode, PartitionType, SyncStrategy

logger = logging.getLogger(__name__)

SYNCED_AT_COLUMN = "_synced_at"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")


def date_expr(column: str) -> str:
    """ClickHouse expression for the calendar date of a column stored as String or DateTime."""
    return f"toDate(parseDateTimeBestEffortOrZero(toString(`{column}`)))"


def sanitize_name(name: str) -> str:
    """Target column name: anything outside [A-Za-z0-9_] becomes '_'."""
    return _UNSAFE_CHARS.sub("_", str(name)) or "_"


def infer_type(value: Any) -> str:
    # bool is a subclass of int, so it has to be checked first
    if isinstance(value, bool):
        return "UInt8"
    if isinstance(value, int):
        return "Int64"
    if isinstance(value, float):
        return "Int64" if value.is_integer() else "Float64"
    if isinstance(value, Decimal):
        # NUMERIC(p, s) with s > 0 arrives with a negative exponent even for whole values
        exponent = value.as_tuple().exponent
        # NaN and Infinity carry a string exponent
        return "Int64" if isinstance(exponent, int) and exponent >= 0 else "Float64"
    return "String"


def infer_column_mapping(rows: List[Dict[str, Any]]) -> Optional[ColumnMapping]:
    """
    Infer a mapping from the first row of a batch.

    Returns None for an empty batch so the caller retries on the next one.
    """
    if not rows:
        return None

    first = rows[0]
    entries = []
    seen = set()
    for key, value in first.items():
        target = sanitize_name(key)
        # Two source keys can sanitize to the same name ("a-b" and "a_b")
        candidate, n = target, 1
        while candidate in seen:
            n += 1
            candidate = f"{target}_{n}"
        seen.add(candidate)
        entries.append(ColumnMappingEntry(source=key, target=candidate, type=infer_type(value)))

    mapping = ColumnMapping(columns=entries)
    logger.info(f"Inferred column mapping with {len(entries)} columns: {mapping.target_columns}")
    return mapping


def _order_by(dataset: Dataset, mapping: ColumnMapping) -> List[str]:
    by_source = {c.source: c.target for c in mapping.columns}
    for column in (dataset.unique_column, dataset.partition_column, dataset.reference_column):
        if column and column in by_source:
            return [by_source[column]]
    return mapping.target_columns[:1]


def create_table_sql(dataset: Dataset, mapping: ColumnMapping, database: Optional[str] = None) -> str:
    """
    CREATE TABLE statement for a dataset's target.

    Upsert datasets get ReplacingMergeTree(_synced_at) ordered by the unique
    column, so a row loaded twice collapses to the latest copy on OPTIMIZE FINAL.
    Append datasets get a plain MergeTree and keep every loaded row.
    """
    table = f"{database}.{dataset.target_table}" if database else dataset.target_table
    columns = ",\n    ".join(f"`{c.target}` {c.type}" for c in mapping.columns)
    order_by = ", ".join(f"`{c}`" for c in _order_by(dataset, mapping))
    if dataset.load_mode == LoadMode.UPSERT:
        engine = f"ReplacingMergeTree({SYNCED_AT_COLUMN})"
    else:
        engine = "MergeTree"

    partition = ""
    if dataset.sync_strategy == SyncStrategy.DATE_PARTITION and dataset.partition_column:
        target = {c.source: c.target for c in mapping.columns}.get(dataset.partition_column, dataset.partition_column)
        fn = "toYYYYMM" if dataset.partition_type == PartitionType.MONTHLY else "toYYYYMMDD"
        partition = f"\nPARTITION BY {fn}({date_expr(target)})"

    return (
        f"CREATE TABLE IF NOT EXISTS {table} (\n"
        f"    {columns},\n"
        f"    `{SYNCED_AT_COLUMN}` DateTime DEFAULT now()\n"
        f") ENGINE = {engine}{partition}\n"
        f"ORDER BY ({order_by})"
    )
