"""Column-name type coercion for typeless archive values.

Archive rows carry no type metadata.  At restore time every value is
re-typed from its column name plus the shape of the value, using the
ordered ``COLUMN_RULES`` table: the first matching rule decides the
column kind.

Usage:
    from tenant_backup.backup.coercion import classify_column, coerce_value

    classify_column("created_at")       # ColumnKind.TIMESTAMP
    bound = coerce_value("created_at", "2024-01-15 10:30:00.123456Z")
    bound.value                         # datetime(2024, 1, 15, 10, 30, 0, 123456, tzinfo=UTC)
    bound.cast                          # "timestamptz"
"""

import json
import math
import re
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class ColumnKind(str, Enum):
    """Semantic kind inferred from a column name."""

    UUID = "uuid"
    JSON = "json"
    TIMESTAMP = "timestamp"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"


# "_id"-looking columns that hold external identifiers, not row references
UUID_COLUMN_EXEMPTIONS = frozenset({"external_id", "provider_user_id", "resource_id"})

JSON_COLUMN_NAMES = frozenset({"feature_overrides"})
JSON_NAME_HINTS = ("json", "metadata", "payload")

TIMESTAMP_SUFFIXES = ("_at", "_date")
TIMESTAMP_NAME_HINTS = (
    "date",
    "time",
    "createdat",
    "updatedat",
    "expires",
    "locked_until",
    "current_period_start",
    "current_period_end",
)

INTEGER_NAME_HINTS = ("size", "count", "qty", "quantity", "usage")
FLOAT_NAME_HINTS = ("amount", "price", "rate", "total", "balance")

NULL_STRINGS = frozenset({"", "null"})

# Untyped strings at least this long may still be timestamps
OPPORTUNISTIC_TIMESTAMP_MIN_LENGTH = 19


def _is_uuid_column(name: str) -> bool:
    return (name == "id" or name.endswith("_id")) and name not in UUID_COLUMN_EXEMPTIONS


def _is_json_column(name: str) -> bool:
    return name in JSON_COLUMN_NAMES or any(hint in name for hint in JSON_NAME_HINTS)


def _is_timestamp_column(name: str) -> bool:
    return name.endswith(TIMESTAMP_SUFFIXES) or any(hint in name for hint in TIMESTAMP_NAME_HINTS)


def _is_integer_column(name: str) -> bool:
    return any(hint in name for hint in INTEGER_NAME_HINTS)


def _is_float_column(name: str) -> bool:
    return any(hint in name for hint in FLOAT_NAME_HINTS)


# Ordered: the first matching predicate wins.
COLUMN_RULES: tuple[tuple[ColumnKind, Callable[[str], bool]], ...] = (
    (ColumnKind.UUID, _is_uuid_column),
    (ColumnKind.JSON, _is_json_column),
    (ColumnKind.TIMESTAMP, _is_timestamp_column),
    (ColumnKind.INTEGER, _is_integer_column),
    (ColumnKind.FLOAT, _is_float_column),
)


def classify_column(name: str) -> ColumnKind:
    """Classify a column name by walking ``COLUMN_RULES`` in order."""
    lowered = name.lower()
    for kind, matches in COLUMN_RULES:
        if matches(lowered):
            return kind
    return ColumnKind.TEXT


# ============================================================================
# Timestamp parsing
# ============================================================================

# Tried in order; the first format that parses wins.
_AWARE_FORMATS = (
    # RFC3339 (Z or +HH:MM)
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    # space-separated with explicit offset (or Z)
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f%z",
)
_NAIVE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
)
_DATE_FORMAT = "%Y-%m-%d"

_SHORT_OFFSET = re.compile(r"([+-]\d{2})$")
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(raw: str) -> datetime | None:
    """Parse a timestamp string into an aware UTC datetime.

    Accepts RFC3339, space-separated values with an explicit offset
    (including the Postgres short ``+HH`` form), trailing ``Z`` variants,
    naive datetimes (assumed UTC) and bare dates (midnight UTC).

    Returns:
        The parsed instant in UTC, or ``None`` if no format matches.
    """
    value = raw.strip()
    if not value:
        return None
    value = _LONG_FRACTION.sub(r"\1", value)
    # "+07" -> "+07:00"; only when a time part is present
    if len(value) > 10:
        value = _SHORT_OFFSET.sub(r"\1:00", value)

    for fmt in _AWARE_FORMATS:
        try:
            return datetime.strptime(value, fmt).astimezone(timezone.utc)
        except ValueError:
            continue

    for fmt in _NAIVE_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    try:
        return datetime.strptime(value, _DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


# ============================================================================
# Restore-side coercion
# ============================================================================


@dataclass(frozen=True)
class BoundValue:
    """A value ready to bind, plus the SQL type it must be cast to.

    ``cast`` is ``None`` when the driver can bind the value as-is.
    """

    value: Any
    cast: str | None = None


_NULL = BoundValue(None)


def _strip_nul(value: str) -> str:
    return value.replace("\x00", "")


def _strip_nul_deep(value: Any) -> Any:
    if isinstance(value, str):
        return _strip_nul(value)
    if isinstance(value, dict):
        return {_strip_nul(str(k)): _strip_nul_deep(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_strip_nul_deep(v) for v in value]
    return value


def _null_value(column: str, kind: ColumnKind, not_null_text: Iterable[str]) -> BoundValue:
    if kind is ColumnKind.UUID:
        if column.lower() == "id":
            return BoundValue(uuid.uuid4(), "uuid")
        return _NULL
    if kind is ColumnKind.JSON:
        return BoundValue({}, "jsonb")
    if kind is ColumnKind.TIMESTAMP:
        return BoundValue(datetime.now(timezone.utc), "timestamptz")
    if kind is ColumnKind.INTEGER:
        return BoundValue(0)
    if kind is ColumnKind.FLOAT:
        return BoundValue(0.0)
    if column in not_null_text:
        return BoundValue("")
    return _NULL


def _parse_number(kind: ColumnKind, value: str) -> BoundValue:
    try:
        return BoundValue(int(value))
    except ValueError:
        pass
    try:
        return BoundValue(float(value))
    except ValueError:
        return BoundValue(0 if kind is ColumnKind.INTEGER else 0.0)


def _coerce_string(column: str, kind: ColumnKind, value: str) -> BoundValue:
    if kind is ColumnKind.UUID and len(value) == 36 and "-" in value:
        try:
            return BoundValue(uuid.UUID(value), "uuid")
        except ValueError:
            pass

    if kind is ColumnKind.JSON:
        stripped = value.strip()
        if stripped.startswith(("{", "[")):
            try:
                return BoundValue(_strip_nul_deep(json.loads(stripped)), "jsonb")
            except ValueError:
                pass
        return BoundValue(value, "jsonb")

    if kind is ColumnKind.TIMESTAMP:
        parsed = parse_timestamp(value)
        if parsed is not None:
            return BoundValue(parsed, "timestamptz")
        return BoundValue(value)

    if kind is ColumnKind.TEXT and len(value) >= OPPORTUNISTIC_TIMESTAMP_MIN_LENGTH:
        parsed = parse_timestamp(value)
        if parsed is not None:
            return BoundValue(parsed, "timestamptz")

    if kind in (ColumnKind.INTEGER, ColumnKind.FLOAT):
        return _parse_number(kind, value.strip())

    return BoundValue(value)


def coerce_value(column: str, value: Any, not_null_text: Iterable[str] = ()) -> BoundValue:
    """Convert a typeless archive value into a bindable value for ``column``.

    Args:
        column: Destination column name.
        value: JSON value from the archive (str, int, float, bool, list,
            dict or None).
        not_null_text: Columns of this table that are NOT NULL text; null
            input binds ``""`` there instead of NULL.

    Returns:
        ``BoundValue`` with the converted value and optional SQL cast.
    """
    kind = classify_column(column)

    if isinstance(value, str):
        value = _strip_nul(value)
        if value in NULL_STRINGS:
            return _null_value(column, kind, not_null_text)
        return _coerce_string(column, kind, value)

    if value is None:
        return _null_value(column, kind, not_null_text)

    if isinstance(value, (dict, list)):
        value = _strip_nul_deep(value)
        if kind is ColumnKind.JSON:
            return BoundValue(value, "jsonb")
        return BoundValue(json.dumps(value, ensure_ascii=False))

    # bool, int and float bind as-is
    return BoundValue(value)


# ============================================================================
# Export-side sniffing
# ============================================================================


def to_json_value(value: Any, column: str | None = None) -> Any:
    """Convert a driver value into a JSON-representable value.

    Used when the database cannot render rows as JSON natively.  Values
    that have no JSON form (binary blobs and other driver objects) export
    as ``None``.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = _strip_nul(value)
        if column is not None and classify_column(column) is ColumnKind.JSON:
            stripped = text.strip()
            if stripped.startswith(("{", "[")):
                try:
                    return json.loads(stripped)
                except ValueError:
                    pass
        return text
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return None
