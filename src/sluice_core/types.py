# src/sluice_core/types.py
"""
Value rules applied to every row before it reaches the target store.

Target column types are ClickHouse type names (Int64, Float64, UInt8, String,
Date, DateTime, Decimal(p,s), optionally wrapped in Nullable(...)).
"""

import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .errors import LoadError

logger = logging.getLogger(__name__)

CANONICAL_DATETIME = "%Y-%m-%d %H:%M:%S"
CANONICAL_DATE = "%Y-%m-%d"
MIN_DATE = "1970-01-01"
MIN_DATETIME = "1970-01-01 00:00:00"

_DATE_LIKE_PATTERNS = [
    re.compile(r"^\d{4}-\d{2}-\d{2}[T\s]"),
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    re.compile(r"^\d{2}[/.]\d{2}[/.]\d{4}"),
]

_SQL_DATETIME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T\s](\d{2}:\d{2}:\d{2})(\.\d+)?$")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DMY_RE = re.compile(r"^(\d{2})([/.])(\d{2})\2(\d{4})(?:\s+(\d{2}:\d{2}(?::\d{2})?))?$")
_COMPACT_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_MON_RE = re.compile(r"^([A-Za-z]{3})\s+(\d{1,2})\s+(\d{4})\s+(\d{1,2}):(\d{2})\s*([AaPp][Mm])$")

_MONTHS = {m: i for i, m in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
)}


def base_type(target_type: str) -> str:
    """Strip Nullable(...) and precision: 'Nullable(Decimal(18, 2))' -> 'Decimal'."""
    t = target_type.strip()
    if t.startswith("Nullable(") and t.endswith(")"):
        t = t[len("Nullable("):-1]
    return t.split("(", 1)[0]


def is_nullable(target_type: str) -> bool:
    return target_type.strip().startswith("Nullable(")


def is_date_like(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    return any(p.match(value) for p in _DATE_LIKE_PATTERNS)


def _from_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(CANONICAL_DATETIME)


def _parse_dmy(day: int, month: int, year: int, time_part: Optional[str]) -> Optional[datetime]:
    # DD/MM/YYYY unless that is impossible, then MM/DD/YYYY
    if month > 12 and day <= 12:
        day, month = month, day
    try:
        parsed = datetime(year, month, day)
    except ValueError:
        return None
    if time_part:
        parts = [int(p) for p in time_part.split(":")]
        parsed = parsed.replace(hour=parts[0], minute=parts[1], second=parts[2] if len(parts) > 2 else 0)
    return parsed


def to_datetime_text(value: Any) -> Optional[str]:
    """
    Normalize a date-like value to 'YYYY-MM-DD HH:MM:SS'.

    Returns None for values that cannot be parsed; the caller decides the default.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _from_datetime(value)
    if isinstance(value, date):
        return value.strftime(CANONICAL_DATE) + " 00:00:00"

    text = str(value).strip()

    m = _SQL_DATETIME_RE.match(text)
    if m:
        return f"{m.group(1)} {m.group(2)}"

    if _DATE_ONLY_RE.match(text):
        return f"{text} 00:00:00"

    try:
        return _from_datetime(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    m = _DMY_RE.match(text)
    if m:
        parsed = _parse_dmy(int(m.group(1)), int(m.group(3)), int(m.group(4)), m.group(5))
        if parsed:
            return parsed.strftime(CANONICAL_DATETIME)

    m = _COMPACT_RE.match(text)
    if m:
        try:
            return datetime(int(m.group(1)), int(m.group(2)), int(m.group(3))).strftime(CANONICAL_DATETIME)
        except ValueError:
            pass

    m = _MON_RE.match(text)
    if m and m.group(1).lower() in _MONTHS:
        hour = int(m.group(4)) % 12
        if m.group(6).lower() == "pm":
            hour += 12
        try:
            parsed = datetime(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)), hour, int(m.group(5)))
            return parsed.strftime(CANONICAL_DATETIME)
        except ValueError:
            pass

    logger.warning(f"Unrecognized date format: {text!r}")
    return None


def default_for_type(target_type: str) -> Any:
    """
    Value written in place of NULL for a declared target type.

    Nullable columns keep NULL. Numeric types get 0, dates the epoch, the rest ''.
    """
    if is_nullable(target_type):
        return None
    t = base_type(target_type)
    if t.startswith(("Int", "UInt")):
        return 0
    if t.startswith("Float"):
        return 0.0
    if t == "Decimal":
        return Decimal(0)
    if t == "Date":
        return MIN_DATE
    if t == "DateTime":
        return MIN_DATETIME
    return ""


def _to_int(value: Any, target_type: str) -> int:
    """int() that refuses to drop a fractional part."""
    try:
        number = Decimal(value.strip()) if isinstance(value, str) else value
        if isinstance(number, (float, Decimal)) and number != int(number):
            raise LoadError(f"Value {value!r} has a fractional part and cannot be stored as {target_type}")
        return int(number)
    except (ArithmeticError, ValueError, TypeError, OverflowError) as e:
        raise LoadError(f"Value {value!r} cannot be stored as {target_type}: {e}")


def transform_value(value: Any, target_type: str) -> Any:
    t = base_type(target_type)

    if value is None:
        return default_for_type(target_type)

    if t in ("Date", "DateTime"):
        text = to_datetime_text(value)
        if text is None:
            return default_for_type(target_type)
        return text[:10] if t == "Date" else text

    if isinstance(value, bool):
        value = int(value)

    if t.startswith(("Int", "UInt")):
        return _to_int(value, target_type)
    if t.startswith("Float"):
        return float(value)
    if t == "Decimal":
        return Decimal(str(value))

    # String columns: date-like values still land in canonical form
    if is_date_like(value):
        text = to_datetime_text(value)
        return text if text is not None else default_for_type(target_type)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Decimal):
        return str(value)
    return value if isinstance(value, str) else str(value)


def transform_row(
    row: Dict[str, Any],
    source_columns: Sequence[str],
    target_types: Sequence[str]
) -> List[Any]:
    """Project a source row-map onto the mapping's column order, applying value rules."""
    return [transform_value(row.get(src), t) for src, t in zip(source_columns, target_types)]
