"""Transfer option, statistics and event models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Tuple, Type, Union

from dbtransfer.exceptions import SchemaTranslationWarning
from dbtransfer.models.connection import ConnectionConfig


class ErrorPolicy(str, Enum):
    """What to do when the server rejects a statement inside a batch."""

    STOP = "stop"
    CONTINUE = "continue"


class ConflictAction(str, Enum):
    """Resolution for a table that already exists in the merge target."""

    SKIP = "skip"
    REPLACE = "replace"
    APPEND = "append"
    RENAME = "rename"


@dataclass(frozen=True)
class TargetState:
    """What the merge target currently holds under a table name."""

    exists: bool
    columns: Tuple[Tuple[str, str], ...] = ()


DecisionFunction = Callable[[str, str, TargetState], ConflictAction]


@dataclass(frozen=True)
class DatabaseLocator:
    """A database (and optionally one table) reachable through a connection."""

    config: ConnectionConfig
    database: Optional[str] = None
    table: Optional[str] = None


Locator = Union[DatabaseLocator, str, Path]


@dataclass(frozen=True)
class ProgressEvent:
    unit: str
    current: int
    total: int = -1
    timestamp: float = field(default_factory=time.time)
    table: Optional[str] = None


@dataclass(frozen=True)
class WarningEvent:
    """A non-fatal problem; ``category`` is SchemaTranslationWarning when a
    dialect feature was dropped or approximated."""

    message: str
    table: Optional[str] = None
    category: Type[Warning] = UserWarning
    timestamp: float = field(default_factory=time.time)

    @property
    def is_translation(self) -> bool:
        return issubclass(self.category, SchemaTranslationWarning)


@dataclass(frozen=True)
class ErrorEvent:
    """A recoverable error; the offending statement is attached for logging."""

    message: str
    statement: Optional[str] = None
    table: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class StatusEvent:
    """One unparsed status line from an external tool."""

    line: str
    timestamp: float = field(default_factory=time.time)


TransferEvent = Union[ProgressEvent, WarningEvent, ErrorEvent, StatusEvent]
EventSink = Callable[[TransferEvent], None]


@dataclass(frozen=True)
class SkippedUnit:
    """A statement or row excluded under the continue error policy."""

    error: str
    statement: Optional[str] = None
    table: Optional[str] = None


@dataclass(frozen=True)
class TransferStats:
    """Result of one transfer operation."""

    tables_transferred: int = 0
    rows_transferred: int = 0
    bytes_written: int = 0
    bytes_read: int = 0
    statements_executed: int = 0
    errors_skipped: int = 0
    duration: float = 0.0
    warnings: Tuple[str, ...] = ()
    skipped: Tuple[SkippedUnit, ...] = ()


@dataclass(frozen=True)
class TransferOptions:
    """Immutable options for one TransferService call.

    ``source`` and ``destination`` are DatabaseLocator values or dump file
    paths depending on the operation.
    """

    source: Optional[Locator] = None
    destination: Optional[Locator] = None
    include_data: bool = True
    include_schema: bool = True
    drop_if_exists: bool = False
    where: Optional[str] = None
    batch_size: int = 1000
    compression: Optional[str] = None
    progress: Optional[EventSink] = None
    error_policy: ErrorPolicy = ErrorPolicy.STOP
    tables: Tuple[str, ...] = ()
    include_vars: bool = False
    include_vars_list: Tuple[str, ...] = ()
    session_variables: Tuple[Tuple[str, str], ...] = ()
    create_db: bool = False
    rename_db: Optional[str] = None
    resume_from_byte: int = 0
    disable_foreign_keys: bool = True
    disable_unique_checks: bool = False
    use_native_tool: bool = False
    jobs: int = 1
    merge_sources: Tuple[str, ...] = ()
    conflict_decision: Optional[DecisionFunction] = None
    cancel_token: Optional[object] = None
    progress_interval: float = 0.1

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.jobs < 1:
            raise ValueError(f"jobs must be >= 1, got {self.jobs}")
        if self.resume_from_byte < 0:
            raise ValueError(f"resume_from_byte must be >= 0, got {self.resume_from_byte}")

    @property
    def continue_on_error(self) -> bool:
        return self.error_policy is ErrorPolicy.CONTINUE
