"""SQL data types and value coercion.

Values are stored as plain Python objects. ``coerce`` converts an incoming
value to the column's semantic type and is the single place where type and
length rules are enforced on write.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class DataType(Enum):
    """SQL data types."""

    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    DECIMAL = "DECIMAL"
    VARCHAR = "VARCHAR"
    TEXT = "TEXT"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIMESTAMP = "TIMESTAMP"
    BLOB = "BLOB"

    def is_numeric(self) -> bool:
        return self in _NUMERIC

    def is_textual(self) -> bool:
        return self in (DataType.VARCHAR, DataType.TEXT)


_NUMERIC = frozenset(
    {DataType.INTEGER, DataType.BIGINT, DataType.FLOAT, DataType.DOUBLE, DataType.DECIMAL}
)


class CoercionError(ValueError):
    """Raised when a value cannot be represented in the target type."""


def coerce(value: Any, data_type: DataType, max_length: int | None = None) -> Any:
    """Convert ``value`` to the Python representation of ``data_type``.

    NULL (None) passes through unchanged; nullability is checked by the caller.

    Raises:
        CoercionError: If the value does not fit the type or exceeds max_length.
    """
    if value is None:
        return None

    try:
        if data_type in (DataType.INTEGER, DataType.BIGINT):
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, float):
                if not value.is_integer():
                    raise CoercionError(f"{value!r} is not an integer")
                return int(value)
            if isinstance(value, Decimal):
                if value != value.to_integral_value():
                    raise CoercionError(f"{value!r} is not an integer")
                return int(value)
            return int(value)
        if data_type in (DataType.FLOAT, DataType.DOUBLE):
            if isinstance(value, bool):
                raise CoercionError("boolean is not a floating point value")
            return float(value)
        if data_type == DataType.DECIMAL:
            if isinstance(value, float):
                return Decimal(str(value))
            return Decimal(value)
        if data_type.is_textual():
            text = value if isinstance(value, str) else str(value)
            if max_length is not None and len(text) > max_length:
                raise CoercionError(
                    f"string of length {len(text)} exceeds VARCHAR({max_length})"
                )
            return text
        if data_type == DataType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, Decimal)) and value in (0, 1):
                return bool(value)
            if isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
                return value.lower() in ("true", "1")
            raise CoercionError(f"{value!r} is not a boolean")
        if data_type == DataType.DATE:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(str(value))
        if data_type == DataType.TIMESTAMP:
            if isinstance(value, datetime):
                return value
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day)
            return datetime.fromisoformat(str(value))
        if data_type == DataType.BLOB:
            if isinstance(value, (bytes, bytearray)):
                return bytes(value)
            if isinstance(value, str):
                return value.encode("utf-8")
            raise CoercionError(f"{type(value).__name__} is not binary data")
    except (TypeError, ValueError, InvalidOperation) as e:
        if isinstance(e, CoercionError):
            raise
        raise CoercionError(f"cannot convert {value!r} to {data_type.value}") from e

    return value


def parse_type_name(name: str) -> DataType:
    """Map a SQL type name (as written in DDL) to a DataType."""
    return _TYPE_NAMES.get(name.upper(), DataType.TEXT)


_TYPE_NAMES = {
    "INT": DataType.INTEGER,
    "INTEGER": DataType.INTEGER,
    "SMALLINT": DataType.INTEGER,
    "TINYINT": DataType.INTEGER,
    "BIGINT": DataType.BIGINT,
    "FLOAT": DataType.FLOAT,
    "REAL": DataType.DOUBLE,
    "DOUBLE": DataType.DOUBLE,
    "DECIMAL": DataType.DECIMAL,
    "NUMERIC": DataType.DECIMAL,
    "MONEY": DataType.DECIMAL,
    "VARCHAR": DataType.VARCHAR,
    "NVARCHAR": DataType.VARCHAR,
    "CHAR": DataType.VARCHAR,
    "NCHAR": DataType.VARCHAR,
    "TEXT": DataType.TEXT,
    "BOOLEAN": DataType.BOOLEAN,
    "BOOL": DataType.BOOLEAN,
    "BIT": DataType.BOOLEAN,
    "DATE": DataType.DATE,
    "TIMESTAMP": DataType.TIMESTAMP,
    "DATETIME": DataType.TIMESTAMP,
    "DATETIME2": DataType.TIMESTAMP,
    "BLOB": DataType.BLOB,
    "BINARY": DataType.BLOB,
    "VARBINARY": DataType.BLOB,
}
