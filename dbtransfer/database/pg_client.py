"""PostgreSQL database client."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import asyncpg
from asyncpg import Connection

from dbtransfer.database.base import DatabaseClient, parse_type_args
from dbtransfer.exceptions import ConnectivityError, ExecutionError
from dbtransfer.models.schema import (
    ColumnSchema,
    ForeignKeySchema,
    IndexSchema,
    TableSchema,
)
from dbtransfer.utils.logger import SafeLogger, StructuredLogger

logger = StructuredLogger(__name__)

MAINTENANCE_DATABASE = "postgres"

_FK_ACTIONS = {
    "a": "NO ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET NULL",
    "d": "SET DEFAULT",
}

_COLUMNS_SQL = """
    SELECT a.attname,
           format_type(a.atttypid, a.atttypmod),
           NOT a.attnotnull,
           pg_get_expr(d.adbin, d.adrelid),
           a.attidentity,
           t.typtype,
           t.oid,
           CASE WHEN a.attcollation <> t.typcollation THEN co.collname END
    FROM pg_attribute a
    JOIN pg_class c ON c.oid = a.attrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_type t ON t.oid = a.atttypid
    LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
    LEFT JOIN pg_collation co ON co.oid = a.attcollation
    WHERE n.nspname = $1 AND c.relname = $2 AND a.attnum > 0 AND NOT a.attisdropped
    ORDER BY a.attnum
"""

_INDEXES_SQL = """
    SELECT ic.relname, i.indisunique, i.indisprimary,
           array_agg(a.attname ORDER BY k.ord)
    FROM pg_index i
    JOIN pg_class c ON c.oid = i.indrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_class ic ON ic.oid = i.indexrelid
    CROSS JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
    JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = k.attnum
    WHERE n.nspname = $1 AND c.relname = $2
    GROUP BY ic.relname, i.indisunique, i.indisprimary
    ORDER BY ic.relname
"""

_FOREIGN_KEYS_SQL = """
    SELECT con.conname, rc.relname,
           array_agg(a.attname ORDER BY k.ord),
           array_agg(ra.attname ORDER BY k.ord),
           con.confdeltype, con.confupdtype
    FROM pg_constraint con
    JOIN pg_class c ON c.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_class rc ON rc.oid = con.confrelid
    CROSS JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(attnum, refnum, ord)
    JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
    JOIN pg_attribute ra ON ra.attrelid = con.confrelid AND ra.attnum = k.refnum
    WHERE con.contype = 'f' AND n.nspname = $1 AND c.relname = $2
    GROUP BY con.conname, rc.relname, con.confdeltype, con.confupdtype
    ORDER BY con.conname
"""

_TABLE_COMMENT_SQL = """
    SELECT obj_description(c.oid, 'pg_class')
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = $1 AND c.relname = $2
"""


class PGClient(DatabaseClient):
    """PostgreSQL client on a single asyncpg connection."""

    def __init__(self, config, database: Optional[str] = None):
        super().__init__(config, database)
        self.schema = config.schema or "public"
        self.conn: Optional[Connection] = None
        self._transaction = None

    async def connect(self) -> None:
        """Open the connection; raises ConnectivityError on failure."""
        params: Dict[str, Any] = {
            "user": self.config.user or None,
            "password": self.config.password or None,
            "database": self.database or MAINTENANCE_DATABASE,
            "host": self.config.socket or self.config.host,
            "port": self.config.effective_port,
        }
        logger.debug(
            "Connecting to PostgreSQL",
            **SafeLogger.sanitize(self.config.with_database(self.database).as_log_dict()),
        )
        try:
            self.conn = await asyncpg.connect(**params)
            await self.conn.execute("SET timezone = 'UTC'")
            await self.conn.execute(
                f"SET search_path = {self.dialect.quote_identifier(self.schema)}, public"
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise ConnectivityError(
                f"Cannot connect to PostgreSQL at {params['host']}:{params['port']}: {e}"
            ) from e

    async def close(self) -> None:
        """Close the connection."""
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
            self._transaction = None

    def _require(self) -> Connection:
        if self.conn is None:
            raise ConnectivityError("PostgreSQL connection not established")
        return self.conn

    def _translate(self, error: Exception, sql: str) -> Exception:
        if isinstance(error, (asyncpg.exceptions.ConnectionDoesNotExistError, OSError)):
            return ConnectivityError(f"Lost connection to PostgreSQL: {error}")
        return ExecutionError(str(error), statement=sql)

    async def execute(self, sql: str, *args: Any) -> None:
        conn = self._require()
        try:
            await conn.execute(sql, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, sql) from e

    async def fetch(self, sql: str, *args: Any) -> List[tuple]:
        conn = self._require()
        try:
            return [tuple(record) for record in await conn.fetch(sql, *args)]
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, sql) from e

    async def stream_rows(
        self,
        table: str,
        columns: Sequence[str],
        where: Optional[str] = None,
        chunk_size: int = 1000,
    ) -> AsyncIterator[List[tuple]]:
        """Stream rows through a server-side cursor in a read-only snapshot."""
        conn = self._require()
        sql = (
            f"SELECT {self.dialect.quote_columns(columns)} "
            f"FROM {self.dialect.quote_identifier(table)}"
        )
        if where:
            sql += f" WHERE {where}"
        try:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                cursor = await conn.cursor(sql)
                while True:
                    records = await cursor.fetch(chunk_size)
                    if not records:
                        break
                    yield [tuple(record) for record in records]
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, sql) from e

    async def begin(self) -> None:
        self._transaction = self._require().transaction()
        try:
            await self._transaction.start()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self._transaction = None
            raise self._translate(e, "BEGIN") from e

    async def commit(self) -> None:
        transaction, self._transaction = self._transaction, None
        if transaction is None:
            return
        try:
            await transaction.commit()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, "COMMIT") from e

    async def rollback(self) -> None:
        transaction, self._transaction = self._transaction, None
        if transaction is None:
            return
        try:
            await transaction.rollback()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, "ROLLBACK") from e

    async def insert_rows(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        """
        Insert records using COPY FROM (fastest method).

        Args:
            table: Table name
            columns: Column names
            rows: Row values

        Returns:
            Number of inserted records
        """
        if not rows:
            return 0
        conn = self._require()
        try:
            await conn.copy_records_to_table(
                table,
                records=[tuple(r) for r in rows],
                columns=list(columns),
                schema_name=self.schema,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise self._translate(e, f"COPY {self.dialect.quote_identifier(table)}") from e
        return len(rows)

    async def list_tables(self) -> List[str]:
        """List tables of the configured schema."""
        rows = await self.fetch(
            "SELECT tablename FROM pg_tables WHERE schemaname = $1 ORDER BY tablename",
            self.schema,
        )
        return [row[0] for row in rows]

    async def _enum_values(self, type_oid: int) -> List[str]:
        rows = await self.fetch(
            "SELECT enumlabel FROM pg_enum WHERE enumtypid = $1 ORDER BY enumsortorder",
            type_oid,
        )
        return [row[0] for row in rows]

    async def describe_table(self, table: str) -> TableSchema:
        """Read column, key, index and constraint metadata from the catalogs."""
        columns = []
        for (
            name,
            native_type,
            nullable,
            default,
            identity,
            typtype,
            type_oid,
            collation,
        ) in await self.fetch(_COLUMNS_SQL, self.schema, table):
            default = default or None
            auto_increment = bool(identity) or bool(
                default and default.startswith("nextval(")
            )
            canonical = self.dialect.canonical_type(native_type)
            enum_values: List[str] = []
            if typtype == "e":
                canonical = "enum"
                enum_values = await self._enum_values(type_oid)

            first, second = parse_type_args(native_type)
            length = precision = scale = None
            if canonical in ("char", "varchar", "bit"):
                length = first
            elif canonical == "decimal":
                precision, scale = first, second

            columns.append(
                ColumnSchema(
                    name=name,
                    native_type=native_type,
                    canonical_type=canonical,
                    nullable=nullable,
                    default=None if auto_increment else default,
                    auto_increment=auto_increment,
                    length=length,
                    precision=precision,
                    scale=scale,
                    collation=collation,
                    enum_values=enum_values,
                )
            )

        primary_key: List[str] = []
        indexes = []
        for index_name, unique, primary, index_columns in await self.fetch(
            _INDEXES_SQL, self.schema, table
        ):
            if primary:
                primary_key = list(index_columns)
            else:
                indexes.append(IndexSchema(index_name, list(index_columns), unique))

        foreign_keys = [
            ForeignKeySchema(
                name=name,
                table=table,
                columns=list(fk_columns),
                referenced_table=referenced_table,
                referenced_columns=list(referenced_columns),
                on_delete=_FK_ACTIONS.get(on_delete, "NO ACTION"),
                on_update=_FK_ACTIONS.get(on_update, "NO ACTION"),
            )
            for name, referenced_table, fk_columns, referenced_columns, on_delete, on_update
            in await self.fetch(_FOREIGN_KEYS_SQL, self.schema, table)
        ]

        comment = await self.fetchval(_TABLE_COMMENT_SQL, self.schema, table)
        charset, _ = await self.database_charset()

        return TableSchema(
            name=table,
            dialect=self.dialect.name,
            columns=columns,
            primary_key=primary_key,
            indexes=indexes,
            foreign_keys=foreign_keys,
            charset=charset,
            comment=comment,
        )

    async def database_exists(self, name: str) -> bool:
        value = await self.fetchval("SELECT COUNT(*) FROM pg_database WHERE datname = $1", name)
        return bool(value)

    async def database_charset(
        self, name: Optional[str] = None
    ) -> Tuple[Optional[str], Optional[str]]:
        rows = await self.fetch(
            "SELECT pg_encoding_to_char(encoding), datcollate FROM pg_database "
            "WHERE datname = $1",
            name or self.database or MAINTENANCE_DATABASE,
        )
        if not rows:
            return None, None
        return rows[0][0], rows[0][1]

    async def use_database(self, name: str) -> None:
        """Reconnect to another database; PostgreSQL cannot switch in-session."""
        await self.close()
        self.database = name
        await self.connect()

    async def get_variable(self, name: str) -> Optional[str]:
        return await self.fetchval("SELECT current_setting($1)", name)

    async def fix_sequences(self, schema: TableSchema) -> None:
        """
        Fix PostgreSQL sequences to match the max value of each generated column.

        Args:
            schema: Table whose auto-increment columns were loaded
        """
        table = f"{self.dialect.quote_identifier(self.schema)}.{self.dialect.quote_identifier(schema.name)}"
        for column in schema.columns:
            if not column.auto_increment:
                continue
            seq = await self.fetchval(
                "SELECT pg_get_serial_sequence($1, $2)", table, column.name
            )
            if not seq:
                continue
            column_sql = self.dialect.quote_identifier(column.name)
            await self.execute(
                f"SELECT setval($1, COALESCE((SELECT MAX({column_sql}) FROM {table}), 1), "
                f"(SELECT MAX({column_sql}) FROM {table}) IS NOT NULL)",
                seq,
            )
