"""Value cleaning for rows copied between live connections."""

from __future__ import annotations

import json
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, List, Optional, Sequence

from dbtransfer.models.schema import ColumnSchema
from dbtransfer.utils.logger import StructuredLogger

logger = StructuredLogger(__name__)

TEXT_TYPES = {"char", "varchar", "text", "enum", "set"}
TEMPORAL_TYPES = {"date", "datetime", "timestamp", "timestamptz"}


def _warn(warnings: Optional[List[str]], message: str) -> None:
    logger.warning(message)
    if warnings is not None:
        warnings.append(message)


def clean_value(
    table: str,
    column: ColumnSchema,
    value: Any,
    target: str,
    warnings: Optional[List[str]] = None,
) -> Any:
    """
    Convert a value read from the source driver into one the target driver
    accepts for the translated column.

    Data transformation rules:

    1. NULL remains NULL
    2. Booleans: int(0/1) → bool for PostgreSQL, bool → int for MariaDB
    3. JSON containers → JSON text, except arrays bound for PostgreSQL
    4. Strings bound for PostgreSQL lose NUL bytes (reported as a warning)
    5. MariaDB zero dates → NULL (reported as a warning)
    6. Timezone-aware datetimes → naive UTC for columns without a zone
    7. MariaDB TIME values (timedelta) → time for PostgreSQL; intervals
       stay timedelta for PostgreSQL and become text for MariaDB
    8. Other types returned as-is

    Args:
        table: Table name, used in warnings
        column: Source column metadata
        value: Value to clean
        target: Target dialect name
        warnings: Optional list collecting warning messages

    Returns:
        Cleaned value
    """
    if value is None:
        return None

    kind = column.canonical_type
    to_pg = target == "postgres"

    if kind == "boolean":
        if to_pg:
            if isinstance(value, bool):
                return value
            if isinstance(value, int):
                if value in (0, 1):
                    return bool(value)
                _warn(
                    warnings,
                    f"{table}.{column.name} has non-boolean integer {value!r}, keeping as-is",
                )
            return value
        if isinstance(value, bool):
            return int(value)
        return value

    if isinstance(value, bool) and not to_pg:
        return int(value)

    if isinstance(value, (dict, list)):
        if to_pg and kind == "array":
            return value
        return json.dumps(value)

    if isinstance(value, uuid.UUID):
        return value if to_pg and kind == "uuid" else str(value)

    if isinstance(value, (bytes, bytearray, memoryview)) and kind in TEXT_TYPES | {"json"}:
        value = bytes(value).decode("utf-8", errors="replace")

    if isinstance(value, str):
        if to_pg and "\x00" in value:
            _warn(warnings, f"{table}.{column.name}: removed NUL bytes from text value")
            value = value.replace("\x00", "")
        if kind in TEMPORAL_TYPES and value.startswith("0000-00-00"):
            _warn(warnings, f"{table}.{column.name}: zero date {value!r} stored as NULL")
            return None
        if kind == "uuid" and to_pg:
            return uuid.UUID(value)
        return value

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        if to_pg and kind == "timestamptz":
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    if isinstance(value, timedelta):
        if kind == "interval":
            return value if to_pg else str(value)
        if not to_pg or kind != "time":
            return value
        if timedelta(0) <= value < timedelta(days=1):
            return (datetime.min + value).time()
        _warn(
            warnings,
            f"{table}.{column.name}: interval {value} out of range for time, stored as text",
        )
        return str(value)

    if isinstance(value, (date, time)):
        return value

    if to_pg and kind in TEXT_TYPES and not isinstance(value, str):
        # asyncpg codecs are strict about Python types
        return str(value)

    return value


def clean_batch_values(
    table: str,
    columns: Sequence[ColumnSchema],
    rows: Sequence[Sequence[Any]],
    target: str,
    warnings: Optional[List[str]] = None,
) -> List[tuple]:
    """
    Clean a batch of rows efficiently.

    Args:
        table: Table name
        columns: Source column metadata in row order
        rows: Rows as returned by the source driver
        target: Target dialect name
        warnings: Optional list collecting warning messages

    Returns:
        List of cleaned row tuples; malformed rows are dropped with a warning
    """
    if not rows:
        return []

    expected_cols = len(columns)
    cleaned_batch = []

    for row in rows:
        if len(row) != expected_cols:
            _warn(
                warnings,
                f"{table} row has {len(row)} columns, expected {expected_cols}. Skipping row.",
            )
            continue

        cleaned_batch.append(
            tuple(
                clean_value(table, col, val, target, warnings)
                for col, val in zip(columns, row)
            )
        )

    return cleaned_batch
