# src/sluice_core/connectors/memory.py
"""In-process source and target used by the test suite and local dry runs."""

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .base import BaseDestination, BaseSource
from ..batch import read_in_batches
from ..config import ColumnMapping, Connection, Dataset
from ..errors import LoadError
from ..types import to_datetime_text

logger = logging.getLogger(__name__)

QueryHandler = Callable[[str, Sequence[Any]], List[Dict[str, Any]]]


class MemorySource(BaseSource):
    """
    Serves rows from a list instead of a database.

    `handler(query, params)` decides which rows a query returns; by default every
    row is returned, which is what a truncate-reload with no predicate reads.
    """

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        handler: Optional[QueryHandler] = None,
        connection: Optional[Connection] = None,
        encryption_key=None,
    ):
        connection = connection or Connection(id=0, name="memory", type="postgres", database="memory")
        super().__init__(connection, encryption_key)
        self.rows = rows if rows is not None else []
        self.handler = handler or (lambda query, params: list(self.rows))
        self.queries: List[tuple] = []
        self.is_open = False
        self.open_count = 0
        self.batches_served = 0

    def open(self):
        if not self.is_open:
            self.is_open = True
            self.open_count += 1

    def close(self):
        self.is_open = False

    def stream(self, query, params=(), batch_size=20000) -> Iterator[List[Dict[str, Any]]]:
        self.open()
        self.queries.append((query, tuple(params)))
        logger.debug(f"[MemorySource] {query} {tuple(params)}")
        for batch in read_in_batches(self.handler(query, tuple(params)), batch_size):
            self.batches_served += 1
            yield [dict(r) for r in batch]


class MemoryDestination(BaseDestination):
    """Keeps target tables as lists of row-maps."""

    def __init__(self, fail_on_insert: Optional[int] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.mappings: Dict[str, ColumnMapping] = {}
        self.operations: List[tuple] = []
        self.insert_calls = 0
        self.fail_on_insert = fail_on_insert
        self.closed = False

    def insert(self, table, columns, rows):
        if not rows:
            raise ValueError("insert requires at least one row")
        self.insert_calls += 1
        if self.fail_on_insert is not None and self.insert_calls >= self.fail_on_insert:
            raise LoadError(f"Insert into {table} failed: simulated failure")
        target = self.tables.setdefault(table, [])
        target.extend(dict(zip(columns, row)) for row in rows)
        self.operations.append(("insert", table, len(rows)))
        return len(rows)

    def table_exists(self, table):
        return table in self.tables

    def ensure_table(self, dataset: Dataset, mapping: ColumnMapping):
        self.tables.setdefault(dataset.target_table, [])
        self.mappings[dataset.target_table] = mapping
        self.operations.append(("ensure_table", dataset.target_table))

    def truncate(self, table):
        if table in self.tables:
            self.tables[table] = []
        self.operations.append(("truncate", table))

    def delete_range(self, table, column, start: datetime, end: datetime):
        low, high = start.strftime("%Y-%m-%d %H:%M:%S"), end.strftime("%Y-%m-%d %H:%M:%S")

        def inside(row):
            text = to_datetime_text(row.get(column))
            return text is not None and low <= text < high

        self.tables[table] = [r for r in self.tables.get(table, []) if not inside(r)]
        self.operations.append(("delete_range", table, column, start, end))

    def delete_ids(self, table, column, start: int, end: int):
        self.tables[table] = [
            r for r in self.tables.get(table, []) if not (r.get(column) is not None and start <= int(r[column]) <= end)
        ]
        self.operations.append(("delete_ids", table, column, start, end))

    def delete_date(self, table, column, day: date):
        key = day.isoformat()
        self.tables[table] = [
            r for r in self.tables.get(table, []) if (to_datetime_text(r.get(column)) or "")[:10] != key
        ]
        self.operations.append(("delete_date", table, column, day))

    def optimize(self, table, final=True):
        self.operations.append(("optimize", table, final))

    def max_value(self, table, column):
        values = [r.get(column) for r in self.tables.get(table, []) if r.get(column) is not None]
        return max(values) if values else None

    def count(self, table):
        return len(self.tables.get(table, []))

    def close(self):
        self.closed = True
