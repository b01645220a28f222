# src/sluice_core/connectors/base.py

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..config import ColumnMapping, Connection, Dataset
from ..dialects import Dialect, get_dialect


class BaseSource(ABC):
    """
    Contract for relational sources.

    stream() is forward-only and not restartable. The cursor behind it is
    closed whenever the generator finishes, raises, or is closed early.
    """

    def __init__(self, connection: Connection, encryption_key: Optional[str] = None):
        self.connection = connection
        self.encryption_key = encryption_key
        self.dialect: Dialect = get_dialect(connection.type)

    @abstractmethod
    def open(self) -> None:
        """Connect. Raises ConnectionError with a sanitized message."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def stream(self, query: str, params: Sequence[Any] = (), batch_size: int = 20000) -> Iterator[List[Dict[str, Any]]]:
        """
        Run `query` on a server-side cursor and yield pages of row-maps.

        Raises:
            ExtractionError: If the cursor fails mid-stream
        """
        pass

    def test_connection(self) -> bool:
        self.open()
        self.close()
        return True

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class BaseDestination(ABC):
    """Contract for the columnar analytics store."""

    @abstractmethod
    def insert(self, table: str, columns: Sequence[str], rows: List[List[Any]]) -> int:
        """Bulk-insert rows in column order. Returns rows written. Raises LoadError."""
        pass

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    def ensure_table(self, dataset: Dataset, mapping: ColumnMapping) -> None:
        pass

    @abstractmethod
    def truncate(self, table: str) -> None:
        pass

    @abstractmethod
    def delete_range(self, table: str, column: str, start: datetime, end: datetime) -> None:
        """Delete rows with start <= column < end."""
        pass

    @abstractmethod
    def delete_ids(self, table: str, column: str, start: int, end: int) -> None:
        """Delete rows with start <= column <= end."""
        pass

    @abstractmethod
    def delete_date(self, table: str, column: str, day: date) -> None:
        pass

    @abstractmethod
    def optimize(self, table: str, final: bool = True) -> None:
        pass

    @abstractmethod
    def max_value(self, table: str, column: str) -> Any:
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
