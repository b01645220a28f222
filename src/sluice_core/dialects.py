# src/sluice_core/dialects.py
"""SQL dialect details for the source databases."""

import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import ConfigurationError

_FORBIDDEN_IDENT_CHARS = re.compile(r"[\"`\[\];\x00]")


def escape_literal(value: str) -> str:
    """Quote a string for embedding in a ClickHouse statement."""
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


@dataclass(frozen=True)
class Dialect:
    name: str
    quote_open: str
    quote_close: str
    placeholder: str
    top_style: bool = False  # SELECT TOP n instead of LIMIT n
    date_cast: str = "DATE({})"

    def quote(self, identifier: str) -> str:
        """Quote a (possibly schema-qualified) identifier."""
        if not identifier or _FORBIDDEN_IDENT_CHARS.search(identifier):
            raise ConfigurationError(f"Invalid identifier: {identifier!r}")
        return ".".join(f"{self.quote_open}{part.strip()}{self.quote_close}" for part in identifier.split("."))

    def fragment(self, text: Optional[str], parameterized: bool) -> Optional[str]:
        """Raw SQL text embedded in a parameterized statement; '%' must be doubled for pyformat drivers."""
        if text and parameterized and self.placeholder == "%s":
            return text.replace("%", "%%")
        return text

    def as_date(self, column: str) -> str:
        return self.date_cast.format(self.quote(column))

    def source_relation(self, source_table: Optional[str], source_query: Optional[str]) -> str:
        if source_query:
            return f"({source_query.strip().rstrip(';')}) AS src"
        return self.quote(source_table)

    def select(
        self,
        relation: str,
        columns: str = "*",
        where: Optional[List[str]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> str:
        top = f"TOP {int(limit)} " if (limit and self.top_style) else ""
        sql = f"SELECT {top}{columns} FROM {relation}"
        if where:
            sql += " WHERE " + " AND ".join(f"({w})" for w in where)
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit and not self.top_style:
            sql += f" LIMIT {int(limit)}"
        return sql


POSTGRES = Dialect("postgres", '"', '"', "%s", date_cast="CAST({} AS DATE)")
MYSQL = Dialect("mysql", "`", "`", "%s")
MSSQL = Dialect("mssql", "[", "]", "?", top_style=True, date_cast="CAST({} AS DATE)")

_DIALECTS = {
    "postgres": POSTGRES,
    "postgresql": POSTGRES,
    "mysql": MYSQL,
    "mariadb": MYSQL,
    "mssql": MSSQL,
    "sqlserver": MSSQL,
}


def get_dialect(connection_type: str) -> Dialect:
    key = getattr(connection_type, "value", connection_type)
    try:
        return _DIALECTS[str(key).lower()]
    except KeyError:
        raise ConfigurationError(f"Unsupported connection type: {connection_type}") from None
