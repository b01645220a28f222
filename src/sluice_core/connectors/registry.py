# src/sluice_core/connectors/registry.py
import logging
from typing import Dict, Optional, Type

from .base import BaseSource
from .mssql import MSSQLSource
from .mysql import MySQLSource
from .postgresql import PostgresSource
from ..config import Connection
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

_SOURCE_CONNECTOR_MAP: Optional[Dict[str, Type[BaseSource]]] = None


def get_source_connector_map() -> Dict[str, Type[BaseSource]]:
    """Returns the source connector map, keyed by connection type and its aliases."""
    global _SOURCE_CONNECTOR_MAP
    if _SOURCE_CONNECTOR_MAP is None:
        _SOURCE_CONNECTOR_MAP = {
            "postgres": PostgresSource,
            "mysql": MySQLSource,
            "mssql": MSSQLSource,
        }
        # Aliases used by older connection rows
        _SOURCE_CONNECTOR_MAP["postgresql"] = PostgresSource
        _SOURCE_CONNECTOR_MAP["mariadb"] = MySQLSource
        _SOURCE_CONNECTOR_MAP["sqlserver"] = MSSQLSource
    return _SOURCE_CONNECTOR_MAP


def open_source(connection: Connection, encryption_key: Optional[str] = None) -> BaseSource:
    """Build (but do not open) the source connector for a connection."""
    connection_type = getattr(connection.type, "value", connection.type)
    source_class = get_source_connector_map().get(connection_type)
    if source_class is None:
        raise ConfigurationError(f"No source connector for connection type '{connection_type}'")
    logger.debug(f"Using {source_class.__name__} for connection {connection.id}")
    return source_class(connection, encryption_key)
