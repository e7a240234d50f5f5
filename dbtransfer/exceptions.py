"""Custom exceptions for the transfer engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from dbtransfer.models.transfer import TransferStats


class TransferError(Exception):
    """Base exception for transfer errors.

    ``stats`` holds the statistics accumulated up to the failure; the
    orchestrator fills it in before the error leaves the public API.
    """

    def __init__(self, message: str, stats: Optional[TransferStats] = None):
        super().__init__(message)
        self.stats = stats


class ConnectivityError(TransferError):
    """Cannot reach or authenticate to a database server."""

    pass


class ParseError(TransferError):
    """Malformed SQL text in a dump."""

    def __init__(self, message: str, offset: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.offset = offset


class TransferIOError(TransferError, OSError):
    """Error reading or writing a dump file or compression stream."""

    pass


class ExecutionError(TransferError):
    """A statement or row batch was rejected by the server."""

    def __init__(
        self,
        message: str,
        statement: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.statement = statement
        self.table = table


class SchemaMismatchError(ExecutionError):
    """Source and target table structures are incompatible for Append."""

    pass


class ExternalToolError(TransferError):
    """A native dump/restore utility failed or is not installed."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        output: str = "",
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.output = output


class TransferCancelled(TransferError):
    """The operation observed a cancellation request."""

    pass


class SchemaTranslationWarning(UserWarning):
    """A dialect feature could not be represented in the target dialect."""

    pass
