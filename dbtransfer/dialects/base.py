"""Dialect capability interface shared by MariaDB and PostgreSQL."""

from __future__ import annotations

import json
import math
import re
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, BinaryIO, List, Optional, Sequence, Tuple

from dbtransfer.models.schema import ColumnSchema, ForeignKeySchema, TableSchema
from dbtransfer.streams.statements import StatementReader

# Transaction control found in dumps; batching owns transactions on import
TRANSACTION_CONTROL = re.compile(
    r"^\s*(BEGIN(\s+WORK|\s+TRANSACTION)?|START\s+TRANSACTION\b.*|COMMIT(\s+WORK)?"
    r"|ROLLBACK(\s+WORK)?|END(\s+TRANSACTION)?|SET\s+(@@(SESSION\.)?)?AUTOCOMMIT\s*=.*)\s*$",
    re.IGNORECASE | re.DOTALL,
)

_CAST_SUFFIX = re.compile(r"::[A-Za-z_][\w ]*(\[\])?(\(\d+(\s*,\s*\d+)?\))?$")
_NOW_FUNCTIONS = re.compile(
    r"^(now\(\)|current_timestamp(\(\d*\))?|localtimestamp(\(\d*\))?|transaction_timestamp\(\))$",
    re.IGNORECASE,
)
_NUMERIC_LITERAL = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")
_STRING_LITERAL = re.compile(r"^'(.*)'$", re.DOTALL)


def format_timedelta(value: timedelta) -> str:
    """Render a MariaDB TIME value, which may exceed 24 hours or be negative."""
    total = value.days * 86400 + value.seconds
    sign = "-" if total < 0 else ""
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    text = f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
    if value.microseconds:
        text += f".{value.microseconds:06d}"
    return text


class Dialect(ABC):
    """SQL vocabulary of one database engine family.

    One instance is selected per connection. Translation methods accept
    metadata introspected from either dialect and render it in this one.
    """

    name: str = ""
    default_port: int = 0
    identifier_quote: str = '"'
    statement_delimiter: str = ";"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    # Quoting and literals

    def quote_identifier(self, name: str) -> str:
        q = self.identifier_quote
        return f"{q}{name.replace(q, q + q)}{q}"

    def quote_columns(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_identifier(c) for c in columns)

    @abstractmethod
    def escape_string(self, value: str) -> str:
        """Escape text for use inside a single-quoted literal."""

    def quote_string(self, value: str) -> str:
        return f"'{self.escape_string(value)}'"

    @abstractmethod
    def format_bytes(self, value: bytes) -> str:
        pass

    @abstractmethod
    def format_bool(self, value: bool) -> str:
        pass

    def format_float(self, value: float) -> str:
        if math.isnan(value) or math.isinf(value):
            return "NULL"
        return repr(value)

    def format_list(self, value: list) -> str:
        return self.quote_string(json.dumps(value, default=str))

    def format_value(self, value: Any) -> str:
        """
        Render a Python value as an SQL literal for a dump file.

        Args:
            value: Value as returned by either driver

        Returns:
            Literal text in this dialect
        """
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return self.format_bool(value)
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return self.format_float(value)
        if isinstance(value, Decimal):
            if value.is_nan() or value.is_infinite():
                return self.format_float(float(value))
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return self.format_bytes(bytes(value))
        if isinstance(value, datetime):
            return self.quote_string(value.isoformat(sep=" "))
        if isinstance(value, (date, time)):
            return self.quote_string(value.isoformat())
        if isinstance(value, timedelta):
            return self.quote_string(format_timedelta(value))
        if isinstance(value, dict):
            return self.quote_string(json.dumps(value, default=str))
        if isinstance(value, (list, tuple)):
            return self.format_list(list(value))
        if isinstance(value, (set, frozenset)):
            return self.quote_string(",".join(sorted(str(v) for v in value)))
        if isinstance(value, uuid.UUID):
            return self.quote_string(str(value))
        return self.quote_string(str(value))

    # Statement framing

    @abstractmethod
    def reader_options(self) -> dict:
        """Lexer switches for StatementReader."""

    def statement_reader(self, stream: BinaryIO, **kwargs) -> StatementReader:
        options = self.reader_options()
        options.update(kwargs)
        return StatementReader(stream, **options)

    def is_transaction_control(self, statement: str) -> bool:
        return TRANSACTION_CONTROL.match(statement) is not None

    @abstractmethod
    def is_database_switch(self, statement: str) -> bool:
        """True for CREATE DATABASE / USE style statements tied to a database name."""

    # Types

    @abstractmethod
    def canonical_type(self, native_type: str) -> str:
        """Map native type text of this dialect to its canonical family."""

    @abstractmethod
    def render_type(self, column: ColumnSchema, source: str) -> Tuple[str, List[str]]:
        """
        Render a column type in this dialect.

        Args:
            column: Column metadata
            source: Dialect name the metadata was read from

        Returns:
            Tuple of (type text, warnings)
        """

    def render_default(
        self, column: ColumnSchema, source: str, table: str
    ) -> Tuple[Optional[str], List[str]]:
        """
        Translate a column default expression.

        Returns:
            Tuple of (default expression or None, warnings)
        """
        default = column.default
        if default is None or column.auto_increment:
            return None, []
        if source == self.name:
            return default, []

        expr = default.strip()
        while _CAST_SUFFIX.search(expr):
            expr = _CAST_SUFFIX.sub("", expr).strip()
        if expr.startswith("(") and expr.endswith(")"):
            expr = expr[1:-1].strip()

        if expr.upper() == "NULL":
            return None, []
        if _NOW_FUNCTIONS.match(expr):
            return "CURRENT_TIMESTAMP", []
        if column.canonical_type == "boolean":
            lowered = expr.strip("'").lower()
            if lowered in ("1", "true", "t", "b'1'"):
                return self.format_bool(True), []
            if lowered in ("0", "false", "f", "b'0'"):
                return self.format_bool(False), []
        if _NUMERIC_LITERAL.match(expr):
            return expr, []
        literal = _STRING_LITERAL.match(expr)
        if literal:
            return self.quote_string(literal.group(1).replace("''", "'")), []
        if expr.lower() in ("true", "false"):
            return self.format_bool(expr.lower() == "true"), []

        return None, [
            f"{table}.{column.name}: default expression {default!r} has no "
            f"{self.name} equivalent; omitted"
        ]

    # DDL

    @abstractmethod
    def render_create_table(self, schema: TableSchema) -> Tuple[List[str], List[str]]:
        """
        Render CREATE TABLE (and index) statements without foreign keys.

        Returns:
            Tuple of (statements, warnings)
        """

    def render_drop_table(self, table: str, if_exists: bool = True, quoted: bool = False) -> str:
        """DROP TABLE; ``quoted`` passes an identifier already quoted in a dump."""
        exists = "IF EXISTS " if if_exists else ""
        name = table if quoted else self.quote_identifier(table)
        return f"DROP TABLE {exists}{name}"

    def render_add_foreign_key(self, fk: ForeignKeySchema) -> str:
        return (
            f"ALTER TABLE {self.quote_identifier(fk.table)} "
            f"ADD CONSTRAINT {self.quote_identifier(fk.name)} "
            f"FOREIGN KEY ({self.quote_columns(fk.columns)}) "
            f"REFERENCES {self.quote_identifier(fk.referenced_table)} "
            f"({self.quote_columns(fk.referenced_columns)}) "
            f"ON DELETE {fk.on_delete} ON UPDATE {fk.on_update}"
        )

    def render_insert(
        self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> str:
        """One multi-row INSERT statement on a single line."""
        values = ",".join(
            "(" + ",".join(self.format_value(v) for v in row) + ")" for row in rows
        )
        return (
            f"INSERT INTO {self.quote_identifier(table)} "
            f"({self.quote_columns(columns)}) VALUES {values}"
        )

    @abstractmethod
    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        """Parameterized single-row INSERT for the driver's executemany."""

    @abstractmethod
    def create_database_sql(
        self,
        name: str,
        charset: Optional[str] = None,
        collation: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Tuple[str, List[str]]:
        """
        Render CREATE DATABASE.

        Args:
            name: Database name
            charset: Character set or server encoding of the source database
            collation: Source collation
            source: Dialect the charset/collation names come from

        Returns:
            Tuple of (statement, warnings)
        """

    # Session state

    @abstractmethod
    def constraint_variables(
        self, foreign_keys: bool, unique: bool
    ) -> Tuple[List[Tuple[str, str]], List[str]]:
        """
        Session variables that switch constraint checks off.

        Returns:
            Tuple of ([(variable, disabled value)], warnings)
        """

    @abstractmethod
    def common_variables(self) -> List[str]:
        pass

    @abstractmethod
    def set_variable_sql(self, name: str, value: str) -> str:
        pass

    @abstractmethod
    def export_header(self) -> List[str]:
        pass

    @abstractmethod
    def export_footer(self) -> List[str]:
        pass
