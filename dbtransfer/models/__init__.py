"""Data models shared by the transfer engine."""

from dbtransfer.models.connection import ConnectionConfig, DialectName
from dbtransfer.models.schema import (
    ColumnSchema,
    ForeignKeySchema,
    IndexSchema,
    TableSchema,
)
from dbtransfer.models.transfer import (
    ConflictAction,
    DatabaseLocator,
    ErrorEvent,
    ErrorPolicy,
    ProgressEvent,
    SkippedUnit,
    StatusEvent,
    TargetState,
    TransferOptions,
    TransferStats,
    WarningEvent,
)

__all__ = [
    "ColumnSchema",
    "ConflictAction",
    "ConnectionConfig",
    "DatabaseLocator",
    "DialectName",
    "ErrorEvent",
    "ErrorPolicy",
    "ForeignKeySchema",
    "IndexSchema",
    "ProgressEvent",
    "SkippedUnit",
    "StatusEvent",
    "TableSchema",
    "TargetState",
    "TransferOptions",
    "TransferStats",
    "WarningEvent",
]
