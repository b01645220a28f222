# src/sluice_core/writer.py

import gc
import logging
from decimal import InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence

import psutil

from .config import ColumnMapping
from .connectors.base import BaseDestination
from .errors import LoadError
from .types import transform_row

logger = logging.getLogger(__name__)

FlushCallback = Callable[[int, int], None]


def memory_usage_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


class BatchWriter:
    """
    Buffers transformed rows and flushes fixed-size bulk inserts.

    Each flush commits on its own; a failure later in the job does not roll
    back earlier flushes.
    """

    def __init__(
        self,
        destination: BaseDestination,
        target_table: str,
        mapping: ColumnMapping,
        insert_batch_size: int = 10000,
        report_interval: int = 50000,
        on_flush: Optional[FlushCallback] = None,
        max_memory_mb: Optional[int] = None,
    ):
        if insert_batch_size < 1:
            raise ValueError("insert_batch_size must be >= 1")
        self.destination = destination
        self.target_table = target_table
        self.mapping = mapping
        self.insert_batch_size = insert_batch_size
        self.report_interval = report_interval
        self.on_flush = on_flush
        self.max_memory_mb = max_memory_mb

        self._source_columns = mapping.source_columns
        self._target_columns = mapping.target_columns
        self._target_types = [c.type for c in mapping.columns]
        self._buffer: List[List[Any]] = []
        self.total_written = 0
        self.flush_count = 0

    def insert(self, target_table: str, columns: Sequence[str], rows: List[List[Any]]) -> int:
        """Write one bulk load. rows must be non-empty and already in column order."""
        if not rows:
            raise ValueError("insert requires a non-empty list of rows")
        return self.destination.insert(target_table, columns, rows)

    def _transform(self, row: Dict[str, Any]) -> List[Any]:
        try:
            return transform_row(row, self._source_columns, self._target_types)
        except (LoadError, ValueError, TypeError, InvalidOperation) as e:
            raise LoadError(f"Row could not be converted to the target types of {self.target_table}: {e}") from e

    def write(self, rows: List[Dict[str, Any]]) -> int:
        """Transform and buffer rows; flush every full insert batch. Returns rows flushed by this call."""
        flushed = 0
        for row in rows:
            self._buffer.append(self._transform(row))
            if len(self._buffer) >= self.insert_batch_size:
                flushed += self.flush()
        return flushed

    def flush(self) -> int:
        if not self._buffer:
            return 0
        rows, self._buffer = self._buffer, []
        written = self.insert(self.target_table, self._target_columns, rows)

        previous = self.total_written
        self.total_written += written
        self.flush_count += 1
        if self.on_flush:
            self.on_flush(written, self.total_written)
        if self.total_written // self.report_interval > previous // self.report_interval:
            self._report_memory()
        return written

    def _report_memory(self):
        # Resource hint only; correctness never depends on it
        rss = memory_usage_mb()
        logger.info(f"{self.total_written:,} rows written to {self.target_table}; memory {rss:.0f} MB")
        gc.collect()
        if self.max_memory_mb and rss > self.max_memory_mb:
            logger.warning(f"Worker memory {rss:.0f} MB exceeds the {self.max_memory_mb} MB budget")

    @property
    def pending(self) -> int:
        return len(self._buffer)
