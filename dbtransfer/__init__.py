"""MariaDB / PostgreSQL transfer engine: export, import, clone, copy and merge."""

from __future__ import annotations

from dbtransfer.exceptions import (
    ConnectivityError,
    ExecutionError,
    ExternalToolError,
    ParseError,
    SchemaMismatchError,
    SchemaTranslationWarning,
    TransferCancelled,
    TransferError,
    TransferIOError,
)
from dbtransfer.models import (
    ConflictAction,
    ConnectionConfig,
    DatabaseLocator,
    DialectName,
    ErrorPolicy,
    TransferOptions,
    TransferStats,
)
from dbtransfer.services import TransferService, decision_table, fixed_decision
from dbtransfer.utils.cancellation import CancellationToken
from dbtransfer.utils.progress_tracker import EventStream

__version__ = "0.1.0"
__all__ = [
    "CancellationToken",
    "ConflictAction",
    "ConnectionConfig",
    "ConnectivityError",
    "DatabaseLocator",
    "DialectName",
    "ErrorPolicy",
    "EventStream",
    "ExecutionError",
    "ExternalToolError",
    "ParseError",
    "SchemaMismatchError",
    "SchemaTranslationWarning",
    "TransferCancelled",
    "TransferError",
    "TransferIOError",
    "TransferOptions",
    "TransferService",
    "TransferStats",
    "__version__",
    "decision_table",
    "fixed_decision",
]
