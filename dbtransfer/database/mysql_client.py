"""MariaDB database client."""

from __future__ import annotations

import re
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiomysql

from dbtransfer.database.base import (
    DatabaseClient,
    check_variable_name,
    parse_enum_values,
)
from dbtransfer.exceptions import ConnectivityError, ExecutionError
from dbtransfer.models.schema import (
    ColumnSchema,
    ForeignKeySchema,
    IndexSchema,
    TableSchema,
)
from dbtransfer.utils.logger import SafeLogger, StructuredLogger

logger = StructuredLogger(__name__)

# Client error codes for a lost or unreachable server
_CONNECTION_LOST = {2003, 2006, 2013, 2055}
_ON_UPDATE = re.compile(r"on update ([\w()]+)", re.IGNORECASE)

_COLUMNS_SQL = """
    SELECT COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE, COLUMN_DEFAULT, EXTRA,
           CHARACTER_MAXIMUM_LENGTH, NUMERIC_PRECISION, NUMERIC_SCALE,
           CHARACTER_SET_NAME, COLLATION_NAME
    FROM information_schema.COLUMNS
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
    ORDER BY ORDINAL_POSITION
"""

_INDEXES_SQL = """
    SELECT INDEX_NAME, NON_UNIQUE, COLUMN_NAME
    FROM information_schema.STATISTICS
    WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
    ORDER BY INDEX_NAME, SEQ_IN_INDEX
"""

_FOREIGN_KEYS_SQL = """
    SELECT k.CONSTRAINT_NAME, k.COLUMN_NAME, k.REFERENCED_TABLE_NAME,
           k.REFERENCED_COLUMN_NAME, r.DELETE_RULE, r.UPDATE_RULE
    FROM information_schema.KEY_COLUMN_USAGE k
    JOIN information_schema.REFERENTIAL_CONSTRAINTS r
      ON r.CONSTRAINT_SCHEMA = k.CONSTRAINT_SCHEMA
     AND r.CONSTRAINT_NAME = k.CONSTRAINT_NAME
     AND r.TABLE_NAME = k.TABLE_NAME
    WHERE k.TABLE_SCHEMA = %s AND k.TABLE_NAME = %s
      AND k.REFERENCED_TABLE_NAME IS NOT NULL
    ORDER BY k.CONSTRAINT_NAME, k.ORDINAL_POSITION
"""

_TABLE_SQL = """
    SELECT t.ENGINE, c.CHARACTER_SET_NAME, t.TABLE_COLLATION, t.TABLE_COMMENT
    FROM information_schema.TABLES t
    LEFT JOIN information_schema.COLLATION_CHARACTER_SET_APPLICABILITY c
      ON c.COLLATION_NAME = t.TABLE_COLLATION
    WHERE t.TABLE_SCHEMA = %s AND t.TABLE_NAME = %s
"""


def _is_connection_lost(error: Exception) -> bool:
    if isinstance(error, OSError):
        return True
    return (
        isinstance(error, aiomysql.OperationalError)
        and bool(error.args)
        and error.args[0] in _CONNECTION_LOST
    )


def _normalize_default(value: Optional[str]) -> Optional[str]:
    if value is None or value.upper() == "NULL":
        return None
    return value


class MariaDBClient(DatabaseClient):
    """MariaDB client on a single aiomysql connection in autocommit mode."""

    def __init__(self, config, database: Optional[str] = None):
        super().__init__(config, database)
        self.conn: Optional[aiomysql.Connection] = None

    async def connect(self) -> None:
        """Open the connection; raises ConnectivityError on failure."""
        params: Dict[str, Any] = {
            "user": self.config.user,
            "password": self.config.password,
            "db": self.database,
            "charset": "utf8mb4",
            "autocommit": True,
        }
        if self.config.socket:
            params["unix_socket"] = self.config.socket
        else:
            params["host"] = self.config.host
            params["port"] = self.config.effective_port

        logger.debug(
            "Connecting to MariaDB",
            **SafeLogger.sanitize(self.config.with_database(self.database).as_log_dict()),
        )
        try:
            self.conn = await aiomysql.connect(**params)
        except (aiomysql.MySQLError, OSError) as e:
            raise ConnectivityError(
                f"Cannot connect to MariaDB at {self.config.host}:"
                f"{self.config.effective_port}: {e}"
            ) from e

    async def close(self) -> None:
        """Close the connection."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _require(self) -> aiomysql.Connection:
        if self.conn is None:
            raise ConnectivityError("MariaDB connection not established")
        return self.conn

    def _translate(self, error: Exception, sql: str) -> Exception:
        if _is_connection_lost(error):
            return ConnectivityError(f"Lost connection to MariaDB: {error}")
        return ExecutionError(str(error), statement=sql)

    async def execute(self, sql: str, *args: Any) -> None:
        conn = self._require()
        try:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, args or None)
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, sql) from e

    async def fetch(self, sql: str, *args: Any) -> List[tuple]:
        conn = self._require()
        try:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, args or None)
                return list(await cursor.fetchall())
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, sql) from e

    async def stream_rows(
        self,
        table: str,
        columns: Sequence[str],
        where: Optional[str] = None,
        chunk_size: int = 1000,
    ) -> AsyncIterator[List[tuple]]:
        """Stream rows through an unbuffered server-side cursor."""
        conn = self._require()
        sql = (
            f"SELECT {self.dialect.quote_columns(columns)} "
            f"FROM {self.dialect.quote_identifier(table)}"
        )
        if where:
            sql += f" WHERE {where}"
        try:
            async with conn.cursor(aiomysql.SSCursor) as cursor:
                await cursor.execute(sql)
                while True:
                    rows = await cursor.fetchmany(chunk_size)
                    if not rows:
                        break
                    yield list(rows)
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, sql) from e

    async def begin(self) -> None:
        try:
            await self._require().begin()
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, "BEGIN") from e

    async def commit(self) -> None:
        try:
            await self._require().commit()
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, "COMMIT") from e

    async def rollback(self) -> None:
        try:
            await self._require().rollback()
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, "ROLLBACK") from e

    async def insert_rows(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        """
        Insert rows with one multi-row INSERT.

        Args:
            table: Table name
            columns: Column names
            rows: Row values

        Returns:
            Number of rows sent
        """
        if not rows:
            return 0
        sql = self.dialect.insert_sql(table, columns)
        conn = self._require()
        try:
            async with conn.cursor() as cursor:
                await cursor.executemany(sql, [tuple(r) for r in rows])
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, sql) from e
        return len(rows)

    async def list_tables(self) -> List[str]:
        """List base tables of the current database."""
        rows = await self.fetch(
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE' "
            "ORDER BY TABLE_NAME"
        )
        return [row[0] for row in rows]

    async def describe_table(self, table: str) -> TableSchema:
        """Read column, key, index and table option metadata."""
        database = self.database or await self.fetchval("SELECT DATABASE()")

        columns = []
        for (
            name,
            column_type,
            is_nullable,
            default,
            extra,
            char_length,
            precision,
            scale,
            charset,
            collation,
        ) in await self.fetch(_COLUMNS_SQL, database, table):
            extra = extra or ""
            on_update = _ON_UPDATE.search(extra)
            canonical = self.dialect.canonical_type(column_type)
            length = char_length
            if canonical == "bit":
                length = precision
            columns.append(
                ColumnSchema(
                    name=name,
                    native_type=column_type,
                    canonical_type=canonical,
                    nullable=is_nullable == "YES",
                    default=_normalize_default(default),
                    auto_increment="auto_increment" in extra.lower(),
                    length=int(length) if length is not None else None,
                    precision=int(precision) if precision is not None and canonical == "decimal" else None,
                    scale=int(scale) if scale is not None and canonical == "decimal" else None,
                    unsigned="unsigned" in column_type.lower(),
                    charset=charset,
                    collation=collation,
                    on_update=on_update.group(1).upper() if on_update else None,
                    enum_values=parse_enum_values(column_type)
                    if canonical in ("enum", "set")
                    else [],
                )
            )

        primary_key: List[str] = []
        indexes: Dict[str, IndexSchema] = {}
        for index_name, non_unique, column_name in await self.fetch(
            _INDEXES_SQL, database, table
        ):
            if index_name == "PRIMARY":
                primary_key.append(column_name)
                continue
            index = indexes.setdefault(
                index_name, IndexSchema(index_name, [], unique=not int(non_unique))
            )
            index.columns.append(column_name)

        foreign_keys: Dict[str, ForeignKeySchema] = {}
        for name, column, ref_table, ref_column, on_delete, on_update in await self.fetch(
            _FOREIGN_KEYS_SQL, database, table
        ):
            fk = foreign_keys.setdefault(
                name,
                ForeignKeySchema(
                    name=name,
                    table=table,
                    columns=[],
                    referenced_table=ref_table,
                    referenced_columns=[],
                    on_delete=on_delete,
                    on_update=on_update,
                ),
            )
            fk.columns.append(column)
            fk.referenced_columns.append(ref_column)

        engine = charset = collation = comment = None
        options = await self.fetch(_TABLE_SQL, database, table)
        if options:
            engine, charset, collation, comment = options[0]

        return TableSchema(
            name=table,
            dialect=self.dialect.name,
            columns=columns,
            primary_key=primary_key,
            indexes=list(indexes.values()),
            foreign_keys=list(foreign_keys.values()),
            engine=engine,
            charset=charset,
            collation=collation,
            comment=comment or None,
        )

    async def database_exists(self, name: str) -> bool:
        value = await self.fetchval(
            "SELECT COUNT(*) FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
            name,
        )
        return bool(value)

    async def database_charset(
        self, name: Optional[str] = None
    ) -> Tuple[Optional[str], Optional[str]]:
        rows = await self.fetch(
            "SELECT DEFAULT_CHARACTER_SET_NAME, DEFAULT_COLLATION_NAME "
            "FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = %s",
            name or self.database,
        )
        if not rows:
            return None, None
        return rows[0][0], rows[0][1]

    async def use_database(self, name: str) -> None:
        conn = self._require()
        try:
            await conn.select_db(name)
        except (aiomysql.MySQLError, OSError) as e:
            raise self._translate(e, f"USE {self.dialect.quote_identifier(name)}") from e
        self.database = name

    async def get_variable(self, name: str) -> Optional[str]:
        value = await self.fetchval(f"SELECT @@SESSION.{check_variable_name(name)}")
        return None if value is None else str(value)

