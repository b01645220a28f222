# src/sluice_core/connectors/mssql.py
import logging
from typing import Any, Dict, Iterator, List, Sequence

import pyodbc

from .base import BaseSource
from ..errors import ConnectionError, ExtractionError

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"


class MSSQLSource(BaseSource):
    """Streams rows from SQL Server through pyodbc's forward-only cursor."""

    connect_timeout = 60

    def __init__(self, connection, encryption_key=None):
        super().__init__(connection, encryption_key)
        self._conn = None

    def _connection_string(self, creds: Dict[str, Any]) -> str:
        options = dict(self.connection.options)
        driver = options.pop("driver", DEFAULT_DRIVER)
        port = creds["port"] or 1433
        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={creds['host']},{port}",
            f"DATABASE={creds['database']}",
            f"UID={creds['user']}",
            f"PWD={creds['password']}",
            f"TrustServerCertificate={options.pop('trust_server_certificate', 'yes')}",
        ]
        parts.extend(f"{k}={v}" for k, v in options.items())
        return ";".join(parts)

    def open(self):
        if self._conn is not None:
            return
        creds = self.connection.credentials(self.encryption_key)
        try:
            self._conn = pyodbc.connect(self._connection_string(creds), timeout=self.connect_timeout, readonly=True)
        except pyodbc.Error as e:
            raise ConnectionError(
                f"SQL Server connection failed: {e}",
                suggestions=[
                    "Check server, port and credentials for this connection.",
                    f"Ensure the ODBC driver '{self.connection.options.get('driver', DEFAULT_DRIVER)}' is installed.",
                ],
            ) from e
        logger.info(f"Connected to SQL Server {creds['host']}/{creds['database']}")

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def stream(self, query: str, params: Sequence[Any] = (), batch_size: int = 20000) -> Iterator[List[Dict[str, Any]]]:
        self.open()
        cursor = self._conn.cursor()
        cursor.arraysize = batch_size
        try:
            try:
                cursor.execute(query, *params)
                columns = [column[0] for column in cursor.description]
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    yield [dict(zip(columns, row)) for row in rows]
            except pyodbc.Error as e:
                raise ExtractionError(f"SQL Server read failed: {e}") from e
        finally:
            cursor.close()
