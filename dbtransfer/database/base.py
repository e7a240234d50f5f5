"""Database client interface."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from dbtransfer.dialects import Dialect, get_dialect
from dbtransfer.models.connection import ConnectionConfig
from dbtransfer.models.schema import TableSchema

_VARIABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_ENUM_VALUE = re.compile(r"'((?:[^']|'')*)'")
_TYPE_ARGS = re.compile(r"\((\d+)(?:\s*,\s*(\d+))?\)")


def parse_enum_values(column_type: str) -> List[str]:
    """Values of an ``enum('a','b')`` / ``set(...)`` column type."""
    return [v.replace("''", "'") for v in _ENUM_VALUE.findall(column_type)]


def parse_type_args(native_type: str) -> Tuple[Optional[int], Optional[int]]:
    """First and second numeric arguments of a type such as ``numeric(10,2)``."""
    match = _TYPE_ARGS.search(native_type)
    if match is None:
        return None, None
    second = match.group(2)
    return int(match.group(1)), int(second) if second is not None else None


def check_variable_name(name: str) -> str:
    if not _VARIABLE_NAME.match(name):
        raise ValueError(f"Invalid variable name: {name!r}")
    return name


class DatabaseClient(ABC):
    """One server connection driven by the transfer pipeline.

    Clients hold exactly one connection so session variables set through
    ``set_variable`` apply to every statement the client executes.
    Driver errors are translated to ConnectivityError/ExecutionError.
    """

    def __init__(self, config: ConnectionConfig, database: Optional[str] = None):
        self.config = config
        self.database = database if database is not None else config.database
        self.dialect: Dialect = get_dialect(config.dialect)

    async def __aenter__(self) -> DatabaseClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @abstractmethod
    async def execute(self, sql: str, *args: Any) -> None:
        """Execute one statement; raises ExecutionError if the server rejects it."""

    @abstractmethod
    async def fetch(self, sql: str, *args: Any) -> List[tuple]:
        pass

    async def fetchval(self, sql: str, *args: Any) -> Any:
        rows = await self.fetch(sql, *args)
        return rows[0][0] if rows else None

    @abstractmethod
    def stream_rows(
        self,
        table: str,
        columns: Sequence[str],
        where: Optional[str] = None,
        chunk_size: int = 1000,
    ) -> AsyncIterator[List[tuple]]:
        """Yield the table's rows in chunks without loading the whole table."""

    @abstractmethod
    async def begin(self) -> None:
        pass

    @abstractmethod
    async def commit(self) -> None:
        pass

    @abstractmethod
    async def rollback(self) -> None:
        pass

    @abstractmethod
    async def insert_rows(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> int:
        """Bulk insert rows; returns the number of rows sent."""

    async def insert_row(self, table: str, columns: Sequence[str], row: Sequence[Any]) -> None:
        await self.execute(self.dialect.insert_sql(table, columns), *row)

    @abstractmethod
    async def list_tables(self) -> List[str]:
        pass

    async def table_exists(self, table: str) -> bool:
        return table in await self.list_tables()

    async def count_rows(self, table: str, where: Optional[str] = None) -> int:
        sql = f"SELECT COUNT(*) FROM {self.dialect.quote_identifier(table)}"
        if where:
            sql += f" WHERE {where}"
        return int(await self.fetchval(sql))

    @abstractmethod
    async def describe_table(self, table: str) -> TableSchema:
        pass

    @abstractmethod
    async def database_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    async def database_charset(self, name: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        """(character set or encoding, collation) of a database."""

    async def create_database(
        self,
        name: str,
        charset: Optional[str] = None,
        collation: Optional[str] = None,
        source: Optional[str] = None,
    ) -> List[str]:
        """Create a database; returns translation warnings."""
        sql, warnings = self.dialect.create_database_sql(name, charset, collation, source)
        await self.execute(sql)
        return warnings

    @abstractmethod
    async def use_database(self, name: str) -> None:
        pass

    @abstractmethod
    async def get_variable(self, name: str) -> Optional[str]:
        pass

    async def set_variable(self, name: str, value: str) -> None:
        await self.execute(self.dialect.set_variable_sql(check_variable_name(name), value))

    async def fix_sequences(self, schema: TableSchema) -> None:
        """Re-synchronise generated key sequences after a data load."""
        return None
