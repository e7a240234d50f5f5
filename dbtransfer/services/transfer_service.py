"""Transfer orchestration: export, import, clone, copy and merge."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
)

from dbtransfer.database import connect
from dbtransfer.database.base import DatabaseClient, check_variable_name
from dbtransfer.exceptions import (
    ExecutionError,
    ParseError,
    SchemaMismatchError,
    SchemaTranslationWarning,
    TransferError,
    TransferIOError,
)
from dbtransfer.models.connection import ConnectionConfig, DialectName
from dbtransfer.models.schema import TableSchema
from dbtransfer.models.transfer import (
    ConflictAction,
    DatabaseLocator,
    Locator,
    SkippedUnit,
    TargetState,
    TransferOptions,
    TransferStats,
)
from dbtransfer.services.batch_executor import BatchExecutor, constraint_checks_disabled
from dbtransfer.services.conflict_resolver import (
    ConflictResolver,
    check_append_compatible,
    rename_target,
)
from dbtransfer.services.introspection import SchemaIntrospector
from dbtransfer.services.native_bridge import (
    NATIVE_SUFFIXES,
    NativeToolBridge,
    is_native_dump,
)
from dbtransfer.streams.codec import Codec, open_reader, open_writer, resolve_codec
from dbtransfer.streams.statements import StatementWriter
from dbtransfer.utils.data_cleaner import clean_batch_values
from dbtransfer.utils.logger import StructuredLogger
from dbtransfer.utils.progress_tracker import ProgressReporter, StatsCollector

Connector = Callable[[ConnectionConfig, Optional[str]], Awaitable[DatabaseClient]]

_CREATE_TABLE = re.compile(
    r"^\s*CREATE\s+(?:TEMPORARY\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?"
    r"((?:`[^`]+`|\"[^\"]+\"|[\w$]+)(?:\.(?:`[^`]+`|\"[^\"]+\"|[\w$]+))?)",
    re.IGNORECASE,
)
_COPY_FROM_STDIN = re.compile(r"^\s*COPY\b.*\bFROM\s+stdin\b", re.IGNORECASE | re.DOTALL)


@dataclass
class _Run:
    """Per-call state: statistics, event reporting and cancellation."""

    options: TransferOptions
    logger: StructuredLogger
    stats: StatsCollector = field(default_factory=StatsCollector)
    reporter: ProgressReporter = field(init=False)

    def __post_init__(self):
        self.reporter = ProgressReporter(
            self.options.progress, min_interval_seconds=self.options.progress_interval
        )

    @property
    def cancel_token(self):
        return self.options.cancel_token

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def warn(
        self,
        message: str,
        table: Optional[str] = None,
        category: Type[Warning] = UserWarning,
    ) -> None:
        self.logger.warning(message, table=table)
        self.stats.add_warning(message)
        self.reporter.warning(message, table=table, category=category)

    def fail_table(self, error: TransferError, table: str) -> None:
        """Record an error that excludes one table but not the operation."""
        statement = getattr(error, "statement", None)
        self.stats.add_skipped(SkippedUnit(error=str(error), statement=statement, table=table))
        self.reporter.error(str(error), statement=statement, table=table)
        self.logger.error(f"Table {table} skipped", error=str(error))


def _database_locator(locator: Optional[Any], role: str) -> DatabaseLocator:
    if isinstance(locator, ConnectionConfig):
        return DatabaseLocator(locator, locator.database)
    if not isinstance(locator, DatabaseLocator):
        raise TransferError(f"The {role} must be a database locator, got {locator!r}")
    return locator


def _file_locator(locator: Optional[Locator], role: str) -> Path:
    if not isinstance(locator, (str, Path)):
        raise TransferError(f"The {role} must be a file path, got {locator!r}")
    return Path(locator)


def _database_name(locator: DatabaseLocator, role: str) -> str:
    name = locator.database or locator.config.database
    if not name:
        raise TransferError(f"No {role} database given")
    return name


def _is_postgres(config: ConnectionConfig) -> bool:
    return DialectName.parse(config.dialect) is DialectName.POSTGRES


def _same_database(a: DatabaseLocator, b: DatabaseLocator) -> bool:
    return (
        DialectName.parse(a.config.dialect) is DialectName.parse(b.config.dialect)
        and (a.config.socket or a.config.host) == (b.config.socket or b.config.host)
        and a.config.effective_port == b.config.effective_port
        and (a.database or a.config.database) == (b.database or b.config.database)
    )


class TransferService:
    """Composes introspection, translation, batching and native tools into
    the public transfer operations.

    Every operation takes one immutable TransferOptions and returns the
    final TransferStats. Fatal errors propagate as TransferError subclasses
    whose ``stats`` attribute holds the statistics accumulated so far.
    """

    def __init__(
        self,
        connector: Connector = connect,
        introspector: Optional[SchemaIntrospector] = None,
        bridge: Optional[NativeToolBridge] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize transfer service.

        Args:
            connector: Coroutine returning a connected client for a config
                and database name
            introspector: Schema introspector
            bridge: Native tool bridge
            logger: Logger instance
        """
        self.logger = logger or StructuredLogger(__name__)
        self.connector = connector
        self.introspector = introspector or SchemaIntrospector(logger=self.logger)
        self.bridge = bridge or NativeToolBridge(logger=self.logger)

    async def _run(
        self,
        name: str,
        options: TransferOptions,
        operation: Callable[[_Run], Awaitable[None]],
    ) -> TransferStats:
        run = _Run(options, self.logger)
        self.logger.info(f"Starting {name}")
        try:
            await operation(run)
        except TransferError as e:
            e.stats = run.stats.snapshot()
            self.logger.error(
                f"{name.capitalize()} failed",
                error=str(e),
                rows_transferred=e.stats.rows_transferred,
                statements_executed=e.stats.statements_executed,
            )
            raise
        stats = run.stats.snapshot()
        self.logger.log_transfer_event(
            f"{name}_complete",
            table="*",
            rows_transferred=stats.rows_transferred,
            duration=stats.duration,
            tables=stats.tables_transferred,
            statements=stats.statements_executed,
            errors_skipped=stats.errors_skipped,
            warnings=len(stats.warnings),
        )
        return stats

    def _executor(self, client: DatabaseClient, run: _Run) -> BatchExecutor:
        return BatchExecutor(
            client,
            batch_size=run.options.batch_size,
            error_policy=run.options.error_policy,
            stats=run.stats,
            reporter=run.reporter,
            cancel_token=run.cancel_token,
            logger=self.logger,
        )

    def _constraint_guard(self, client: DatabaseClient, run: _Run):
        return constraint_checks_disabled(
            client,
            foreign_keys=run.options.disable_foreign_keys,
            unique=run.options.disable_unique_checks,
            reporter=run.reporter,
            stats=run.stats,
            logger=self.logger,
        )

    async def _apply_session_variables(self, client: DatabaseClient, run: _Run) -> None:
        for name, value in run.options.session_variables:
            await client.set_variable(name, value)

    async def _open_target(
        self,
        config: ConnectionConfig,
        database: str,
        run: _Run,
        source: Optional[DatabaseClient] = None,
    ) -> DatabaseClient:
        """
        Connect to a destination database, creating it when allowed.

        Args:
            config: Destination connection parameters
            database: Destination database name
            run: Current run
            source: Client whose database character set the new database copies

        Returns:
            Client connected to ``database``
        """
        client = await self.connector(config, None)
        try:
            if not await client.database_exists(database):
                if not run.options.create_db:
                    raise ExecutionError(
                        f"Database {database} does not exist; enable create_db to create it"
                    )
                charset = collation = None
                source_dialect = None
                if source is not None:
                    charset, collation = await source.database_charset()
                    source_dialect = source.dialect.name
                warnings = await client.create_database(
                    database, charset, collation, source=source_dialect
                )
                for message in warnings:
                    run.warn(message, category=SchemaTranslationWarning)
                self.logger.info(f"Created database {database}", charset=charset)
            await client.use_database(database)
        except BaseException:
            await client.close()
            raise
        return client

    async def _ensure_database(self, config: ConnectionConfig, database: str, run: _Run) -> None:
        client = await self._open_target(config, database, run)
        await client.close()

    # Export

    async def export(self, options: TransferOptions) -> TransferStats:
        """
        Write schema and data of a database to a dump file.

        ``options.source`` is a DatabaseLocator (its ``table`` restricts the
        dump to one table) and ``options.destination`` the dump path. The
        compression codec comes from ``options.compression`` or the path
        suffix. PostgreSQL sources with a native suffix (``.dump``,
        ``.pgdump``, ``.tar``) or ``use_native_tool`` go through pg_dump.

        Returns:
            Final statistics
        """
        return await self._run("export", options, self._export)

    async def _export(self, run: _Run) -> None:
        options = run.options
        source = _database_locator(options.source, "source")
        path = _file_locator(options.destination, "destination")
        database = _database_name(source, "source")
        tables = options.tables or ((source.table,) if source.table else ())

        if _is_postgres(source.config):
            fmt = NATIVE_SUFFIXES.get(path.suffix.lower())
            if fmt is None and options.use_native_tool:
                fmt = "plain"
            if fmt is not None:
                await self._export_native(run, source.config, database, path, fmt, tables)
                return

        client = await self.connector(source.config, database)
        try:
            await self._export_dump(run, client, database, path, tables)
        finally:
            await client.close()

    async def _export_native(
        self,
        run: _Run,
        config: ConnectionConfig,
        database: str,
        path: Path,
        fmt: str,
        tables: Sequence[str],
    ) -> None:
        options = run.options
        if fmt == "plain" and resolve_codec(path, options.compression) is not Codec.NONE:
            raise TransferError("pg_dump plain output cannot be written through a compression codec")
        await self.bridge.dump(
            config,
            path,
            database=database,
            fmt=fmt,
            schema_only=not options.include_data,
            data_only=not options.include_schema,
            clean=options.drop_if_exists,
            tables=tables,
            reporter=run.reporter,
            stats=run.stats,
            cancel_token=run.cancel_token,
        )

    async def _export_dump(
        self,
        run: _Run,
        client: DatabaseClient,
        database: str,
        path: Path,
        tables: Sequence[str],
    ) -> None:
        options = run.options
        dialect = client.dialect
        schemas = await self.introspector.describe_tables(client, tables=tables)
        plan = self.introspector.plan_ddl(
            schemas, dialect, drop_if_exists=options.drop_if_exists
        )
        for message in plan.warnings:
            run.warn(message, category=SchemaTranslationWarning)

        try:
            variables = [
                check_variable_name(name)
                for name in options.include_vars_list or dialect.common_variables()
            ]
        except ValueError as e:
            raise TransferError(str(e)) from e

        stream = open_writer(path, options.compression)
        writer = StatementWriter(stream, delimiter=dialect.statement_delimiter)
        try:
            writer.comment("dbtransfer SQL dump")
            writer.comment(f"Dialect: {dialect.name}")
            writer.comment(f"Database: {database}")
            writer.comment(
                f"Created: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC"
            )
            writer.blank()

            if options.include_vars or options.include_vars_list:
                for name in variables:
                    try:
                        value = await client.get_variable(name)
                    except ExecutionError as e:
                        self.logger.debug(f"Variable {name} not available", error=str(e))
                        continue
                    if value is not None:
                        writer.write(dialect.set_variable_sql(name, value))
            writer.write_all(dialect.export_header())
            writer.blank()

            if options.include_schema:
                writer.write_all(plan.drops)
                for ddl in plan.creates:
                    writer.comment(f"Table structure for {ddl.schema.name}")
                    writer.write_all(ddl.statements)
                    writer.blank()

            for schema in schemas:
                run.check_cancelled()
                if options.include_data:
                    await self._export_rows(run, client, writer, schema)
                run.stats.add_tables()

            if options.include_schema and plan.foreign_keys:
                writer.comment("Foreign keys")
                writer.write_all(plan.foreign_keys)
                writer.blank()
            writer.write_all(dialect.export_footer())
        except BaseException:
            try:
                stream.close()
            except TransferIOError as e:
                self.logger.warning(f"Cannot close {path}", error=str(e))
            raise
        else:
            stream.close()
        finally:
            run.stats.add_statements(writer.statements_written)
            run.stats.set_bytes_written(stream.bytes_written)

    async def _export_rows(
        self,
        run: _Run,
        client: DatabaseClient,
        writer: StatementWriter,
        schema: TableSchema,
    ) -> None:
        columns = schema.column_names
        where = run.options.where
        total = await client.count_rows(schema.name, where)
        done = 0
        writer.comment(f"Data for {schema.name}")
        async for rows in client.stream_rows(schema.name, columns, where, run.options.batch_size):
            writer.write(client.dialect.render_insert(schema.name, columns, rows))
            done += len(rows)
            run.stats.add_rows(len(rows))
            run.reporter.progress("rows", done, total, table=schema.name)
        run.reporter.progress("rows", done, total, table=schema.name, force=True)
        writer.blank()
        self.logger.debug(f"Exported {schema.name}", rows=done)

    # Import

    async def import_dump(self, options: TransferOptions) -> TransferStats:
        """
        Execute a dump file against a destination database.

        ``options.source`` is the dump path and ``options.destination`` a
        DatabaseLocator. ``rename_db`` overrides the destination database and
        drops database-switching statements from the dump. PostgreSQL native
        archives are restored with pg_restore.

        Returns:
            Final statistics
        """
        return await self._run("import", options, self._import)

    async def _import(self, run: _Run) -> None:
        options = run.options
        path = _file_locator(options.source, "source")
        destination = _database_locator(options.destination, "destination")
        config = destination.config
        database = options.rename_db or destination.database or config.database
        if not path.exists():
            raise TransferIOError(f"Dump file not found: {path}")
        if options.resume_from_byte and (
            resolve_codec(path, options.compression) is not Codec.NONE
            or (_is_postgres(config) and (is_native_dump(path) or options.use_native_tool))
        ):
            raise TransferError(
                "resume_from_byte needs an uncompressed SQL dump read by the built-in importer"
            )

        if _is_postgres(config):
            if is_native_dump(path):
                await self._restore(run, path, config, database)
                return
            if options.use_native_tool and resolve_codec(path, options.compression) is Codec.NONE:
                if database and options.create_db:
                    await self._ensure_database(config, database, run)
                await self.bridge.run_script(
                    path,
                    config,
                    database=database,
                    reporter=run.reporter,
                    stats=run.stats,
                    cancel_token=run.cancel_token,
                )
                return

        if database:
            client = await self._open_target(config, database, run)
        else:
            client = await self.connector(config, None)
        try:
            await self._import_statements(run, client, path)
        finally:
            await client.close()

    async def _restore(
        self, run: _Run, path: Path, config: ConnectionConfig, database: Optional[str]
    ) -> None:
        options = run.options
        if database and options.create_db:
            await self._ensure_database(config, database, run)
        await self.bridge.restore(
            path,
            config,
            database=database,
            jobs=options.jobs,
            clean=options.drop_if_exists,
            disable_triggers=options.disable_foreign_keys,
            reporter=run.reporter,
            stats=run.stats,
            cancel_token=run.cancel_token,
        )

    def _filter_statements(
        self, run: _Run, client: DatabaseClient, statements: Iterator[str]
    ) -> Iterator[str]:
        dialect = client.dialect
        options = run.options
        for statement in statements:
            if dialect.is_transaction_control(statement):
                self.logger.debug("Dropped transaction control statement", statement=statement)
                continue
            if options.rename_db and dialect.is_database_switch(statement):
                self.logger.debug("Dropped database switch for rename", statement=statement)
                continue
            if _COPY_FROM_STDIN.match(statement):
                raise ParseError(
                    "COPY ... FROM stdin data blocks are not supported by the statement "
                    "reader; import this dump with use_native_tool"
                )
            created = _CREATE_TABLE.match(statement)
            if created:
                if options.drop_if_exists:
                    yield dialect.render_drop_table(created.group(1), quoted=True)
                run.stats.add_tables()
            yield statement

    async def _import_statements(self, run: _Run, client: DatabaseClient, path: Path) -> None:
        options = run.options
        stream = open_reader(path, options.compression, options.resume_from_byte)
        if options.resume_from_byte:
            self.logger.info(f"Resuming {path} at byte {options.resume_from_byte}")
        try:
            reader = client.dialect.statement_reader(stream)
            executor = self._executor(client, run)

            def on_batch() -> None:
                run.stats.set_bytes_read(stream.raw_position)
                run.reporter.progress("bytes", stream.raw_position, stream.raw_size)

            async with self._constraint_guard(client, run):
                await self._apply_session_variables(client, run)
                await executor.execute_statements(
                    self._filter_statements(run, client, reader), on_batch=on_batch
                )
            run.reporter.progress("bytes", stream.raw_size, stream.raw_size, force=True)
        finally:
            run.stats.set_bytes_read(stream.raw_position)
            stream.close()

    async def restore_native(self, options: TransferOptions) -> TransferStats:
        """Restore a PostgreSQL custom or tar archive with pg_restore."""

        async def restore(run: _Run) -> None:
            path = _file_locator(options.source, "source")
            destination = _database_locator(options.destination, "destination")
            database = options.rename_db or destination.database or destination.config.database
            await self._restore(run, path, destination.config, database)

        return await self._run("restore", options, restore)

    # Live transfers

    async def _copy_rows(
        self,
        run: _Run,
        source: DatabaseClient,
        executor: BatchExecutor,
        schema: TableSchema,
        target_table: str,
        where: Optional[str] = None,
    ) -> int:
        target = executor.client.dialect.name
        columns = schema.column_names
        total = await source.count_rows(schema.name, where)
        done = 0
        seen_warnings: Set[str] = set()
        warnings: List[str] = []
        async for chunk in source.stream_rows(schema.name, columns, where, run.options.batch_size):
            rows = clean_batch_values(schema.name, schema.columns, chunk, target, warnings)
            for message in warnings:
                if message not in seen_warnings:
                    seen_warnings.add(message)
                    run.stats.add_warning(message)
                    run.reporter.warning(message, table=target_table)
            warnings.clear()
            done += await executor.insert_rows(target_table, columns, rows)
            run.reporter.progress("rows", done, total, table=target_table)
        run.reporter.progress("rows", done, total, table=target_table, force=True)
        return done

    async def _fix_sequences(self, run: _Run, client: DatabaseClient, schema: TableSchema) -> None:
        try:
            await client.fix_sequences(schema)
        except ExecutionError as e:
            run.warn(f"Cannot reset sequences of {schema.name}: {e}", table=schema.name)

    async def _transfer_tables(
        self,
        run: _Run,
        source: DatabaseClient,
        target: DatabaseClient,
        schemas: Sequence[TableSchema],
        names: Optional[Dict[str, str]] = None,
        where: Optional[str] = None,
    ) -> None:
        """Create tables in dependency order, copy their rows, then add foreign keys."""
        options = run.options
        names = names or {}
        executor = self._executor(target, run)
        plan = self.introspector.plan_ddl(
            schemas, target.dialect, drop_if_exists=options.drop_if_exists, names=names
        )
        for message in plan.warnings:
            run.warn(message, category=SchemaTranslationWarning)

        async with self._constraint_guard(target, run):
            await self._apply_session_variables(target, run)
            failed: Set[str] = set()
            if options.include_schema:
                if plan.drops:
                    await executor.execute_statements(plan.drops)
                for ddl in plan.creates:
                    if not await executor.create_table(ddl):
                        failed.add(ddl.schema.name)

            for schema, ddl in zip(schemas, plan.creates):
                run.check_cancelled()
                if ddl.schema.name in failed:
                    continue
                if options.include_data:
                    rows = await self._copy_rows(
                        run, source, executor, schema, ddl.schema.name, where
                    )
                    await self._fix_sequences(run, target, ddl.schema)
                    self.logger.log_transfer_event(
                        "table_copied", ddl.schema.name, rows_transferred=rows
                    )
                run.stats.add_tables()

            if options.include_schema and plan.foreign_keys:
                await executor.execute_statements(plan.foreign_keys)

    async def clone(self, options: TransferOptions) -> TransferStats:
        """
        Copy a whole database between live connections.

        Tables are created in foreign-key dependency order without
        constraints, rows are streamed connection to connection, and foreign
        keys are added in a second pass. ``include_data=False`` copies the
        structure only.

        Returns:
            Final statistics
        """
        return await self._run("clone", options, self._clone)

    async def _clone(self, run: _Run) -> None:
        options = run.options
        source = _database_locator(options.source, "source")
        destination = _database_locator(options.destination, "destination")
        source_db = _database_name(source, "source")
        target_db = _database_name(destination, "destination")
        if _same_database(source, destination):
            raise TransferError("Source and destination are the same database")

        source_client = await self.connector(source.config, source_db)
        try:
            schemas = await self.introspector.describe_tables(
                source_client, tables=options.tables
            )
            target_client = await self._open_target(
                destination.config, target_db, run, source=source_client
            )
            try:
                if options.include_schema and not options.drop_if_exists:
                    existing = set(await target_client.list_tables())
                    clashes = [s.name for s in schemas if s.name in existing]
                    if clashes:
                        raise ExecutionError(
                            f"Table(s) already exist in {target_db}: {', '.join(clashes)}; "
                            "enable drop_if_exists to replace them",
                            table=clashes[0],
                        )
                await self._transfer_tables(run, source_client, target_client, schemas)
            finally:
                await target_client.close()
        finally:
            await source_client.close()

    async def copy_table(self, options: TransferOptions) -> TransferStats:
        """
        Copy one table, optionally filtered by ``options.where``.

        ``options.source.table`` names the table; ``options.destination.table``
        renames it in the destination. An existing destination table is an
        error unless ``drop_if_exists`` is set, or ``include_schema`` is off
        and rows are appended to it.

        Returns:
            Final statistics
        """
        return await self._run("copy", options, self._copy_table)

    async def _copy_table(self, run: _Run) -> None:
        options = run.options
        source = _database_locator(options.source, "source")
        destination = _database_locator(options.destination, "destination")
        if not source.table:
            raise TransferError("No source table given")
        table = source.table
        target_table = destination.table or table
        source_db = _database_name(source, "source")
        target_db = destination.database or destination.config.database or source_db
        if _same_database(source, DatabaseLocator(destination.config, target_db)) and (
            target_table == table
        ):
            raise TransferError(f"Cannot copy {table} onto itself")

        source_client = await self.connector(source.config, source_db)
        try:
            schemas = await self.introspector.describe_tables(source_client, tables=[table])
            target_client = await self._open_target(
                destination.config, target_db, run, source=source_client
            )
            try:
                if (
                    options.include_schema
                    and not options.drop_if_exists
                    and await target_client.table_exists(target_table)
                ):
                    raise ExecutionError(
                        f"Table {target_table} already exists in {target_db}; "
                        "enable drop_if_exists to replace it",
                        table=target_table,
                    )
                await self._transfer_tables(
                    run,
                    source_client,
                    target_client,
                    schemas,
                    names={table: target_table},
                    where=options.where,
                )
            finally:
                await target_client.close()
        finally:
            await source_client.close()

    # Merge

    async def merge(self, options: TransferOptions) -> TransferStats:
        """
        Merge several source databases into one destination database.

        Sources in ``options.merge_sources`` are processed in order, on the
        server of ``options.source`` (or of the destination when no source
        locator is given). A table missing from the destination is created
        and copied; a colliding table is resolved once per (table, source)
        with ``options.conflict_decision``. A table that cannot be merged
        (schema mismatch for append, name collision for rename) is recorded
        as skipped and the merge goes on.

        Returns:
            Final statistics
        """
        return await self._run("merge", options, self._merge)

    async def _merge(self, run: _Run) -> None:
        options = run.options
        destination = _database_locator(options.destination, "destination")
        target_db = _database_name(destination, "destination")
        if options.source is not None:
            source = _database_locator(options.source, "source")
        else:
            source = DatabaseLocator(destination.config)
        sources = list(options.merge_sources)
        if not sources and source.database:
            sources = [source.database]
        if not sources:
            raise TransferError("No merge sources given")
        for name in sources:
            if _same_database(DatabaseLocator(source.config, name), destination):
                raise TransferError(f"Merge source {name} is the destination database")

        resolver = ConflictResolver(options.conflict_decision)
        source_client = await self.connector(source.config, sources[0])
        try:
            target_client = await self._open_target(
                destination.config, target_db, run, source=source_client
            )
            try:
                for source_db in sources:
                    run.check_cancelled()
                    await self._merge_source(run, resolver, source_client, target_client, source_db)
            finally:
                await target_client.close()
        finally:
            await source_client.close()

    async def _merge_source(
        self,
        run: _Run,
        resolver: ConflictResolver,
        source: DatabaseClient,
        target: DatabaseClient,
        source_db: str,
    ) -> None:
        options = run.options
        if source.database != source_db:
            await source.use_database(source_db)
        tables: Sequence[str] = ()
        if options.tables:
            available = set(await source.list_tables())
            tables = [t for t in options.tables if t in available]
            if not tables:
                run.warn(f"None of the selected tables exist in {source_db}")
                return
        schemas = await self.introspector.describe_tables(source, tables=tables)
        existing = set(await target.list_tables())

        names: Dict[str, str] = {}
        created: List[TableSchema] = []
        replaced: List[str] = []
        appended: List[TableSchema] = []
        for schema in schemas:
            target_schema = None
            if schema.name in existing:
                target_schema = await target.describe_table(schema.name)
            state = TargetState(
                exists=target_schema is not None,
                columns=target_schema.structure() if target_schema else (),
            )
            action = resolver.resolve(schema.name, source_db, state)
            self.logger.debug(
                "Conflict resolved",
                table=schema.name,
                source=source_db,
                action=action.value if action else "create",
            )

            if action is None:
                names[schema.name] = schema.name
                created.append(schema)
            elif action is ConflictAction.SKIP:
                names[schema.name] = schema.name
                self.logger.info(f"Skipping {schema.name} from {source_db}")
            elif action is ConflictAction.REPLACE:
                names[schema.name] = schema.name
                replaced.append(schema.name)
                created.append(schema)
            elif action is ConflictAction.APPEND:
                try:
                    check_append_compatible(schema, target_schema)
                except SchemaMismatchError as e:
                    run.fail_table(e, schema.name)
                    continue
                names[schema.name] = schema.name
                appended.append(schema)
            else:
                new_name = rename_target(schema.name, source_db)
                if new_name in existing:
                    run.fail_table(
                        ExecutionError(
                            f"Cannot rename {schema.name} from {source_db}: "
                            f"{new_name} already exists",
                            table=new_name,
                        ),
                        schema.name,
                    )
                    continue
                names[schema.name] = new_name
                created.append(schema)

        executor = self._executor(target, run)
        created_names = {s.name for s in created}
        plan = self.introspector.plan_ddl(
            created,
            target.dialect,
            names=names,
            referenceable=[name for name in names if name not in created_names],
        )
        for message in plan.warnings:
            run.warn(message, category=SchemaTranslationWarning)

        async with self._constraint_guard(target, run):
            await self._apply_session_variables(target, run)
            if replaced:
                await executor.execute_statements(
                    [target.dialect.render_drop_table(name) for name in reversed(replaced)]
                )
            failed: Set[str] = set()
            for ddl in plan.creates:
                if not await executor.create_table(ddl):
                    failed.add(ddl.schema.name)

            transfers: List[Tuple[TableSchema, Optional[TableSchema]]] = [
                (schema, ddl.schema)
                for schema, ddl in zip(created, plan.creates)
                if ddl.schema.name not in failed
            ]
            transfers.extend((schema, None) for schema in appended)
            for schema, new_schema in transfers:
                run.check_cancelled()
                target_table = names[schema.name]
                if options.include_data:
                    rows = await self._copy_rows(run, source, executor, schema, target_table)
                    await self._fix_sequences(run, target, new_schema or schema)
                    self.logger.log_transfer_event(
                        "table_merged", target_table, rows_transferred=rows, source=source_db
                    )
                run.stats.add_tables()

            if plan.foreign_keys:
                await executor.execute_statements(plan.foreign_keys)
