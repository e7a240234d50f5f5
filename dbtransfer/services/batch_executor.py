"""Transactional batching of statements and rows against one connection."""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
)

from dbtransfer.database.base import DatabaseClient
from dbtransfer.exceptions import ExecutionError, TransferError
from dbtransfer.models.transfer import ErrorPolicy, SkippedUnit
from dbtransfer.services.introspection import TableDDL
from dbtransfer.utils.cancellation import CancellationToken
from dbtransfer.utils.logger import StructuredLogger
from dbtransfer.utils.progress_tracker import ProgressReporter, StatsCollector

# Statements that commit implicitly on MariaDB; each runs as its own unit
_STANDALONE = re.compile(
    r"^\s*(CREATE|ALTER|DROP|TRUNCATE|RENAME|LOCK\s+TABLES?|UNLOCK\s+TABLES?)\b",
    re.IGNORECASE,
)
_CREATE_TABLE = re.compile(r"^\s*CREATE\s+(?:TEMPORARY\s+)?TABLE\b", re.IGNORECASE)


def is_standalone_statement(statement: str) -> bool:
    return _STANDALONE.match(statement) is not None


class BatchExecutor:
    """Run statements or rows in transactions of at most ``batch_size`` units.

    Under ``ErrorPolicy.STOP`` a rejected unit rolls its batch back and the
    ExecutionError propagates; earlier batches stay committed. Under
    ``ErrorPolicy.CONTINUE`` the failing unit is recorded as skipped and the
    rest of the batch is retried in a fresh transaction.
    """

    def __init__(
        self,
        client: DatabaseClient,
        batch_size: int = 1000,
        error_policy: ErrorPolicy = ErrorPolicy.STOP,
        stats: Optional[StatsCollector] = None,
        reporter: Optional[ProgressReporter] = None,
        cancel_token: Optional[CancellationToken] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize batch executor.

        Args:
            client: Destination client
            batch_size: Maximum statements or rows per transaction
            error_policy: Stop or continue on rejected units
            stats: Statistics collector shared with the operation
            reporter: Event reporter for skipped units
            cancel_token: Checked before every batch
            logger: Logger instance
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.client = client
        self.batch_size = batch_size
        self.error_policy = error_policy
        self.stats = stats or StatsCollector()
        self.reporter = reporter or ProgressReporter()
        self.cancel_token = cancel_token
        self.logger = logger or StructuredLogger(__name__)

    @property
    def continue_on_error(self) -> bool:
        return self.error_policy is ErrorPolicy.CONTINUE

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    async def _rollback_quietly(self) -> None:
        try:
            await self.client.rollback()
        except TransferError as e:
            self.logger.warning("Rollback failed", error=str(e))

    def _skip(self, error: Exception, statement: Optional[str], table: Optional[str]) -> None:
        unit = SkippedUnit(error=str(error), statement=statement, table=table)
        self.stats.add_skipped(unit)
        self.reporter.error(str(error), statement=statement, table=table)
        self.logger.warning(
            "Skipped rejected statement",
            table=table,
            error=str(error),
            statement=(statement or "")[:200],
        )

    async def _commit_units(
        self,
        units: Sequence[Any],
        run: Callable[[Any], Awaitable[None]],
        describe: Callable[[Any], str],
        table: Optional[str],
    ) -> int:
        """
        Run units in one transaction, retrying without rejected units.

        Returns:
            Number of units committed
        """
        pending = list(units)
        while pending:
            position: Optional[int] = None
            await self.client.begin()
            try:
                for position, unit in enumerate(pending):
                    await run(unit)
                position = None
                await self.client.commit()
            except ExecutionError as e:
                await self._rollback_quietly()
                failed = pending[position] if position is not None else None
                if not self.continue_on_error:
                    statement = e.statement
                    if failed is not None:
                        statement = describe(failed)
                    raise ExecutionError(str(e), statement=statement, table=table) from e

                if failed is None:
                    # COMMIT itself was rejected; isolate the culprit
                    if len(pending) == 1:
                        self._skip(e, describe(pending[0]), table)
                        return 0
                    committed = 0
                    for unit in pending:
                        committed += await self._commit_units([unit], run, describe, table)
                    return committed

                self._skip(e, describe(failed), table)
                del pending[position]
                continue
            except BaseException:
                await self._rollback_quietly()
                raise
            return len(pending)
        return 0

    async def _run_statements(self, batch: List[str], table: Optional[str]) -> int:
        if not batch:
            return 0
        self._check_cancelled()
        committed = await self._commit_units(batch, self.client.execute, str, table)
        self.stats.add_statements(committed)
        return committed

    async def execute_statements(
        self,
        statements: Iterable[str],
        table: Optional[str] = None,
        on_batch: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Execute statements in batches.

        DDL and table locking statements flush the current batch and run as a
        unit of their own.

        Args:
            statements: Statements in execution order; consumed lazily
            table: Table the statements belong to, for error reporting
            on_batch: Called after every committed batch

        Returns:
            Number of statements committed
        """
        executed = 0
        batch: List[str] = []

        async def flush() -> None:
            nonlocal executed, batch
            pending, batch = batch, []
            if pending:
                executed += await self._run_statements(pending, table)
                if on_batch is not None:
                    on_batch()

        for statement in statements:
            if is_standalone_statement(statement):
                await flush()
                batch = [statement]
                await flush()
                continue
            batch.append(statement)
            if len(batch) >= self.batch_size:
                await flush()
        await flush()
        return executed

    async def insert_rows(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        """
        Insert rows in transactions of at most ``batch_size`` rows.

        Each batch is sent with the client's bulk path. When a bulk insert is
        rejected under the continue policy, the batch is retried row by row
        so only the offending rows are skipped.

        Args:
            table: Destination table
            columns: Column names in row order
            rows: Row values

        Returns:
            Number of rows committed
        """
        inserted = 0
        for start in range(0, len(rows), self.batch_size):
            inserted += await self._insert_batch(
                table, columns, rows[start : start + self.batch_size]
            )
        return inserted

    async def _insert_batch(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        if not rows:
            return 0
        self._check_cancelled()
        await self.client.begin()
        try:
            await self.client.insert_rows(table, columns, rows)
            await self.client.commit()
        except ExecutionError as e:
            await self._rollback_quietly()
            if not self.continue_on_error:
                raise ExecutionError(
                    f"Insert into {table} failed: {e}", statement=e.statement, table=table
                ) from e
            self.logger.warning(
                f"Bulk insert failed for {table}, retrying row by row", error=str(e)
            )
            return await self._insert_row_by_row(table, columns, rows)
        except BaseException:
            await self._rollback_quietly()
            raise

        self.stats.add_rows(len(rows))
        self.stats.add_statements(1)
        return len(rows)

    async def _insert_row_by_row(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        dialect = self.client.dialect

        async def run(row: Sequence[Any]) -> None:
            await self.client.insert_row(table, columns, row)

        def describe(row: Sequence[Any]) -> str:
            return dialect.render_insert(table, columns, [row])

        committed = await self._commit_units(rows, run, describe, table)
        self.stats.add_rows(committed)
        self.stats.add_statements(committed)
        return committed

    async def create_table(self, ddl: TableDDL) -> bool:
        """
        Create one table from its DDL statements as a single unit.

        If a statement after this call's own CREATE TABLE fails, the table is
        dropped again, since MariaDB commits DDL implicitly and a rollback
        alone cannot undo it. A failing CREATE TABLE drops nothing, so a
        table that already existed is left untouched.

        Returns:
            True if the table was created; False if it was skipped under the
            continue policy
        """
        self._check_cancelled()
        table = ddl.schema.name
        created = False
        await self.client.begin()
        try:
            for statement in ddl.statements:
                await self.client.execute(statement)
                if _CREATE_TABLE.match(statement):
                    created = True
            await self.client.commit()
        except ExecutionError as e:
            await self._rollback_quietly()
            if created:
                await self._drop_quietly(table)
            if not self.continue_on_error:
                raise ExecutionError(
                    f"Cannot create table {table}: {e}", statement=e.statement, table=table
                ) from e
            self._skip(e, e.statement, table)
            return False
        except BaseException:
            await self._rollback_quietly()
            raise

        self.stats.add_statements(len(ddl.statements))
        return True

    async def _drop_quietly(self, table: str) -> None:
        try:
            await self.client.execute(self.client.dialect.render_drop_table(table))
        except TransferError as e:
            self.logger.warning(f"Cannot drop partially created table {table}", error=str(e))


@asynccontextmanager
async def constraint_checks_disabled(
    client: DatabaseClient,
    foreign_keys: bool = True,
    unique: bool = False,
    reporter: Optional[ProgressReporter] = None,
    stats: Optional[StatsCollector] = None,
    logger: Optional[StructuredLogger] = None,
) -> AsyncIterator[None]:
    """
    Switch foreign key and unique checks off for the client's session.

    Prior values are read first and restored on exit, whether the body
    succeeds or fails. A switch the server refuses (for example without
    superuser rights) is reported as a warning and the body still runs.

    Args:
        client: Destination client
        foreign_keys: Disable foreign key checks
        unique: Disable unique checks
        reporter: Receives warning events
        stats: Receives warnings
        logger: Logger instance
    """
    logger = logger or StructuredLogger(__name__)

    def warn(message: str) -> None:
        logger.warning(message)
        if stats is not None:
            stats.add_warning(message)
        if reporter is not None:
            reporter.warning(message)

    variables, warnings = client.dialect.constraint_variables(foreign_keys, unique)
    for message in warnings:
        warn(message)

    previous = []
    for name, value in variables:
        try:
            prior = await client.get_variable(name)
            await client.set_variable(name, value)
        except ExecutionError as e:
            warn(f"Cannot set {name}: {e}; constraint checks stay enabled")
            continue
        previous.append((name, prior))
        logger.debug("Session variable changed", variable=name, value=value, previous=prior)

    async def restore(strict: bool) -> None:
        for name, prior in reversed(previous):
            if prior is None:
                continue
            try:
                await client.set_variable(name, prior)
            except TransferError as e:
                if strict:
                    raise
                logger.error(f"Cannot restore {name} to {prior}", error=str(e))

    try:
        yield
    except BaseException:
        await restore(strict=False)
        raise
    await restore(strict=True)
