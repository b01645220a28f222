# src/sluice_core/connectors/__init__.py

from .base import BaseSource, BaseDestination
from .postgresql import PostgresSource
from .mysql import MySQLSource
from .mssql import MSSQLSource
from .clickhouse import ClickHouseDestination
from .memory import MemorySource, MemoryDestination
from .registry import get_source_connector_map, open_source

__all__ = [
    'BaseSource',
    'BaseDestination',
    'PostgresSource',
    'MySQLSource',
    'MSSQLSource',
    'ClickHouseDestination',
    'MemorySource',
    'MemoryDestination',
    'get_source_connector_map',
    'open_source',
]
