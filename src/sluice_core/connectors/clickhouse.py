# src/sluice_core/connectors/clickhouse.py
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError

from .base import BaseDestination
from ..config import ColumnMapping, Dataset, Settings
from ..dialects import escape_literal
from ..errors import ConnectionError, LoadError
from ..schema import create_table_sql, date_expr
from ..types import CANONICAL_DATE, CANONICAL_DATETIME, base_type

logger = logging.getLogger(__name__)

# Wait for ALTER ... DELETE on all replicas before inserting the replacement rows
MUTATION_SETTINGS = {"mutations_sync": 2}


def _quote_table(table: str) -> str:
    return ".".join(f"`{part}`" for part in table.split("."))


# The writer emits canonical text for date columns; the native insert wants objects
_NATIVE = {
    "Date": lambda text: datetime.strptime(text, CANONICAL_DATE).date(),
    "DateTime": lambda text: datetime.strptime(text, CANONICAL_DATETIME),
}


def to_native_rows(rows: List[List[Any]], columns: Sequence[str], types: Dict[str, str]) -> List[List[Any]]:
    converters = [_NATIVE.get(base_type(types.get(c, "String"))) for c in columns]
    if not any(converters):
        return rows
    return [
        [conv(v) if conv and isinstance(v, str) else v for v, conv in zip(row, converters)]
        for row in rows
    ]


class ClickHouseDestination(BaseDestination):
    """Columnar analytics target. Inserts go through the native columnar insert API."""

    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        self.database = settings.clickhouse_database
        self.column_types: Dict[str, Dict[str, str]] = {}
        self.client = client or self._connect()

    def _connect(self):
        try:
            client = clickhouse_connect.get_client(
                host=self.settings.clickhouse_host,
                port=self.settings.clickhouse_port,
                username=self.settings.clickhouse_user,
                password=self.settings.clickhouse_password,
                database=self.settings.clickhouse_database,
            )
            client.query("SELECT 1")
        except ClickHouseError as e:
            raise ConnectionError(
                f"ClickHouse connection failed: {e}",
                suggestions=[f"Check SLUICE_CLICKHOUSE_HOST ({self.settings.clickhouse_host}) and credentials."],
            ) from e
        logger.info(f"Connected to ClickHouse {self.settings.clickhouse_host}/{self.database}")
        return client

    def _command(self, sql: str, settings: Optional[dict] = None):
        try:
            return self.client.command(sql, settings=settings)
        except ClickHouseError as e:
            raise LoadError(f"ClickHouse command failed: {e}") from e

    def insert(self, table: str, columns: Sequence[str], rows: List[List[Any]]) -> int:
        if not rows:
            raise ValueError("insert requires at least one row")
        try:
            data = to_native_rows(rows, columns, self.column_types.get(table, {}))
            self.client.insert(table, data, column_names=list(columns))
        except ClickHouseError as e:
            raise LoadError(f"Insert into {table} failed: {e}") from e
        return len(rows)

    def table_exists(self, table: str) -> bool:
        return bool(self._command(f"EXISTS TABLE {_quote_table(table)}"))

    def ensure_table(self, dataset: Dataset, mapping: ColumnMapping) -> None:
        self._command(create_table_sql(dataset, mapping))
        self.column_types[dataset.target_table] = {c.target: c.type for c in mapping.columns}

    def truncate(self, table: str) -> None:
        self._command(f"TRUNCATE TABLE IF EXISTS {_quote_table(table)}")

    def delete_range(self, table: str, column: str, start: datetime, end: datetime) -> None:
        self._command(
            f"ALTER TABLE {_quote_table(table)} DELETE WHERE "
            f"parseDateTimeBestEffortOrZero(toString(`{column}`)) >= {escape_literal(start.strftime('%Y-%m-%d %H:%M:%S'))} "
            f"AND parseDateTimeBestEffortOrZero(toString(`{column}`)) < {escape_literal(end.strftime('%Y-%m-%d %H:%M:%S'))}",
            settings=MUTATION_SETTINGS,
        )

    def delete_ids(self, table: str, column: str, start: int, end: int) -> None:
        self._command(
            f"ALTER TABLE {_quote_table(table)} DELETE WHERE "
            f"toInt64OrZero(toString(`{column}`)) BETWEEN {int(start)} AND {int(end)}",
            settings=MUTATION_SETTINGS,
        )

    def delete_date(self, table: str, column: str, day: date) -> None:
        self._command(
            f"ALTER TABLE {_quote_table(table)} DELETE WHERE {date_expr(column)} = {escape_literal(day.isoformat())}",
            settings=MUTATION_SETTINGS,
        )

    def optimize(self, table: str, final: bool = True) -> None:
        self._command(f"OPTIMIZE TABLE {_quote_table(table)}{' FINAL' if final else ''}")

    def max_value(self, table: str, column: str) -> Any:
        try:
            result = self.client.query(f"SELECT count(), max(`{column}`) FROM {_quote_table(table)}")
        except ClickHouseError as e:
            raise LoadError(f"Reading max({column}) from {table} failed: {e}") from e
        count, value = result.result_rows[0]
        return value if count else None

    def count(self, table: str) -> int:
        return int(self._command(f"SELECT count() FROM {_quote_table(table)}"))

    def close(self) -> None:
        self.client.close()
