# src/sluice_core/connectors/postgresql.py
import logging
import uuid
from typing import Any, Dict, Iterator, List, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor

from .base import BaseSource
from ..errors import ConnectionError, ExtractionError

logger = logging.getLogger(__name__)


def _connection_suggestions(error_msg: str, host: str, port: int, database: str) -> List[str]:
    suggestions = []
    if "password authentication failed" in error_msg:
        suggestions.append("Check the username and password stored for this connection.")
    elif "could not connect to server" in error_msg or "Connection refused" in error_msg:
        suggestions.append("Check that the host and port are correct.")
        suggestions.append(f"Verify the server is running and accessible: pg_isready -h {host} -p {port}")
        suggestions.append("Check firewall rules.")
    elif "database" in error_msg and "does not exist" in error_msg:
        suggestions.append(f"Ensure the database '{database}' exists.")
    elif "timeout" in error_msg:
        suggestions.append("The server did not answer in time; check network reachability.")
    return suggestions


class PostgresSource(BaseSource):
    """Streams rows from PostgreSQL through a named (server-side) cursor."""

    connect_timeout = 30

    def __init__(self, connection, encryption_key=None):
        super().__init__(connection, encryption_key)
        self._conn = None

    def open(self):
        if self._conn is not None:
            return
        creds = self.connection.credentials(self.encryption_key)
        port = creds["port"] or 5432
        try:
            self._conn = psycopg2.connect(
                host=creds["host"],
                port=port,
                dbname=creds["database"],
                user=creds["user"],
                password=creds["password"],
                connect_timeout=self.connect_timeout,
                **self.connection.options,
            )
            self._conn.set_session(readonly=True)
        except psycopg2.OperationalError as e:
            error_msg = str(e).strip()
            raise ConnectionError(
                f"PostgreSQL connection failed: {error_msg}",
                suggestions=_connection_suggestions(error_msg, creds["host"], port, creds["database"]),
            ) from e
        logger.info(f"Connected to PostgreSQL {creds['host']}:{port}/{creds['database']}")

    def close(self):
        if self._conn is not None:
            try:
                self._conn.rollback()
            finally:
                self._conn.close()
                self._conn = None

    def stream(self, query: str, params: Sequence[Any] = (), batch_size: int = 20000) -> Iterator[List[Dict[str, Any]]]:
        self.open()
        # Named cursors are executed server-side and fetched in pages
        cursor = self._conn.cursor(name=f"sluice_{uuid.uuid4().hex[:12]}", cursor_factory=RealDictCursor)
        cursor.itersize = batch_size
        try:
            try:
                cursor.execute(query, tuple(params) if params else None)
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    yield [dict(r) for r in rows]
            except psycopg2.Error as e:
                raise ExtractionError(f"PostgreSQL read failed: {e}") from e
        finally:
            if not cursor.closed:
                try:
                    cursor.close()
                except psycopg2.Error as e:
                    logger.debug(f"Ignoring error while closing cursor: {e}")
