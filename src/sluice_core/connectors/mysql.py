# src/sluice_core/connectors/mysql.py
import logging
from typing import Any, Dict, Iterator, List, Sequence

import mysql.connector
from mysql.connector import errorcode

from .base import BaseSource
from ..errors import ConnectionError, ExtractionError

logger = logging.getLogger(__name__)


class MySQLSource(BaseSource):
    """Streams rows from MySQL/MariaDB with an unbuffered cursor."""

    connect_timeout = 30

    def __init__(self, connection, encryption_key=None):
        super().__init__(connection, encryption_key)
        self._conn = None

    def open(self):
        if self._conn is not None:
            return
        creds = self.connection.credentials(self.encryption_key)
        port = creds["port"] or 3306
        try:
            self._conn = mysql.connector.connect(
                host=creds["host"],
                port=port,
                database=creds["database"],
                user=creds["user"],
                password=creds["password"],
                connection_timeout=self.connect_timeout,
                **self.connection.options,
            )
        except mysql.connector.Error as e:
            suggestions = []
            if e.errno == errorcode.ER_ACCESS_DENIED_ERROR:
                suggestions.append("Check the username and password stored for this connection.")
            elif e.errno == errorcode.ER_BAD_DB_ERROR:
                suggestions.append(f"Ensure the database '{creds['database']}' exists.")
            else:
                suggestions.append(f"Check that {creds['host']}:{port} is reachable.")
            raise ConnectionError(f"MySQL connection failed: {e}", suggestions=suggestions) from e
        logger.info(f"Connected to MySQL {creds['host']}:{port}/{creds['database']}")

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def stream(self, query: str, params: Sequence[Any] = (), batch_size: int = 20000) -> Iterator[List[Dict[str, Any]]]:
        self.open()
        # Unbuffered: rows stay on the server until fetched
        cursor = self._conn.cursor(dictionary=True, buffered=False)
        try:
            try:
                cursor.execute(query, tuple(params) if params else None)
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    yield rows
            except mysql.connector.Error as e:
                raise ExtractionError(f"MySQL read failed: {e}") from e
        finally:
            try:
                cursor.close()
            except mysql.connector.Error as e:
                # Closing with unread rows left (early stop) is expected to complain
                logger.debug(f"Ignoring error while closing cursor: {e}")
