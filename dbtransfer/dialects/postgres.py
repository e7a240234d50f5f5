"""PostgreSQL dialect."""

from __future__ import annotations

import math
import re
from typing import List, Optional, Sequence, Tuple

from dbtransfer.dialects.base import Dialect
from dbtransfer.models.schema import ColumnSchema, TableSchema

_DATABASE_SWITCH = re.compile(
    r"^\s*(\\c(onnect)?\s|CREATE\s+DATABASE\b)", re.IGNORECASE
)

# Longest prefixes first so "double precision" wins over "double"
_PREFIX_TYPES = [
    ("timestamp with time zone", "timestamptz"),
    ("timestamp without time zone", "datetime"),
    ("timestamptz", "timestamptz"),
    ("timestamp", "datetime"),
    ("time with time zone", "time"),
    ("time without time zone", "time"),
    ("timetz", "time"),
    ("time", "time"),
    ("character varying", "varchar"),
    ("varchar", "varchar"),
    ("character", "char"),
    ("char", "char"),
    ("bpchar", "char"),
    ("double precision", "double"),
    ("float8", "double"),
    ("float4", "real"),
    ("real", "real"),
    ("numeric", "decimal"),
    ("decimal", "decimal"),
    ("money", "decimal"),
    ("smallint", "smallint"),
    ("int2", "smallint"),
    ("integer", "integer"),
    ("int4", "integer"),
    ("int", "integer"),
    ("bigint", "bigint"),
    ("int8", "bigint"),
    ("boolean", "boolean"),
    ("bool", "boolean"),
    ("text", "text"),
    ("citext", "text"),
    ("bytea", "blob"),
    ("date", "date"),
    ("jsonb", "json"),
    ("json", "json"),
    ("uuid", "uuid"),
    ("interval", "interval"),
    ("inet", "inet"),
    ("cidr", "inet"),
    ("bit varying", "bit"),
    ("bit", "bit"),
]

_RENDER = {
    "boolean": "boolean",
    "smallint": "smallint",
    "integer": "integer",
    "bigint": "bigint",
    "real": "real",
    "double": "double precision",
    "text": "text",
    "binary": "bytea",
    "blob": "bytea",
    "date": "date",
    "time": "time",
    "datetime": "timestamp",
    "timestamptz": "timestamp with time zone",
    "json": "jsonb",
    "uuid": "uuid",
    "inet": "inet",
    "interval": "interval",
}

_SERIALS = {"smallint": "smallserial", "integer": "serial", "bigint": "bigserial"}

# MariaDB character sets and their PostgreSQL server encodings
CHARSET_ENCODINGS = {
    "utf8mb4": "UTF8",
    "utf8mb3": "UTF8",
    "utf8": "UTF8",
    "latin1": "LATIN1",
    "latin2": "LATIN2",
    "ascii": "SQL_ASCII",
    "cp1251": "WIN1251",
    "cp1250": "WIN1250",
    "ujis": "EUC_JP",
    "sjis": "SJIS",
}


class PostgresDialect(Dialect):
    name = "postgres"
    default_port = 5432
    identifier_quote = '"'

    def escape_string(self, value: str) -> str:
        return value.replace("'", "''")

    def format_bytes(self, value: bytes) -> str:
        return f"'\\x{value.hex().upper()}'"

    def format_bool(self, value: bool) -> str:
        return "TRUE" if value else "FALSE"

    def format_float(self, value: float) -> str:
        if math.isnan(value):
            return "'NaN'"
        if math.isinf(value):
            return "'Infinity'" if value > 0 else "'-Infinity'"
        return repr(value)

    def format_list(self, value: list) -> str:
        if not value:
            return "'{}'"
        return "ARRAY[" + ",".join(self.format_value(v) for v in value) + "]"

    def reader_options(self) -> dict:
        return {
            "backslash_escapes": False,
            "hash_comments": False,
            "dollar_quotes": True,
            "delimiter_command": False,
        }

    def is_database_switch(self, statement: str) -> bool:
        return _DATABASE_SWITCH.match(statement) is not None

    def canonical_type(self, native_type: str) -> str:
        native = native_type.strip().lower()
        if native.endswith("[]"):
            return "array"
        if native.startswith("timestamp") and native.endswith("with time zone"):
            return "datetime" if "without" in native else "timestamptz"
        for prefix, kind in _PREFIX_TYPES:
            if native == prefix or native.startswith(prefix + "(") or native.startswith(prefix + " "):
                return kind
        return "unknown"

    def render_type(self, column: ColumnSchema, source: str) -> Tuple[str, List[str]]:
        kind = column.canonical_type
        if column.auto_increment and kind in _SERIALS:
            if column.unsigned and kind != "bigint":
                return "bigserial", []
            return _SERIALS[kind], []
        if source == self.name:
            return column.native_type, []

        warnings: List[str] = []
        if kind in ("smallint", "integer", "bigint") and column.unsigned:
            widened = {"smallint": "integer", "integer": "bigint", "bigint": "numeric(20)"}
            return widened[kind], warnings
        if kind == "char":
            return f"char({column.length or 1})", warnings
        if kind == "varchar":
            if column.length:
                return f"varchar({column.length})", warnings
            return "varchar", warnings
        if kind == "decimal":
            if column.precision:
                return f"numeric({column.precision},{column.scale or 0})", warnings
            return "numeric", warnings
        if kind == "enum":
            longest = max((len(v) for v in column.enum_values), default=255)
            warnings.append(
                f"{column.name}: {column.native_type} stored as varchar({longest})"
            )
            return f"varchar({longest})", warnings
        if kind == "set":
            warnings.append(f"{column.name}: {column.native_type} stored as text")
            return "text", warnings
        if kind == "bit":
            warnings.append(f"{column.name}: {column.native_type} stored as bytea")
            return "bytea", warnings
        if kind in _RENDER:
            return _RENDER[kind], warnings

        warnings.append(
            f"{column.name}: unsupported type {column.native_type!r}; stored as text"
        )
        return "text", warnings

    def render_column(
        self, column: ColumnSchema, source: str, table: str
    ) -> Tuple[str, List[str]]:
        type_text, warnings = self.render_type(column, source)
        parts = [self.quote_identifier(column.name), type_text]

        if column.collation:
            if source == self.name:
                parts.append(f"COLLATE {self.quote_identifier(column.collation)}")
        if column.charset and source != self.name:
            encoding = CHARSET_ENCODINGS.get(column.charset.lower())
            if encoding != "UTF8":
                warnings.append(
                    f"{table}.{column.name}: character set {column.charset!r} "
                    "cannot be set per column; omitted"
                )

        if not column.nullable:
            parts.append("NOT NULL")
        default, default_warnings = self.render_default(column, source, table)
        warnings.extend(default_warnings)
        if default is not None:
            parts.append(f"DEFAULT {default}")
        if column.on_update:
            warnings.append(
                f"{table}.{column.name}: ON UPDATE {column.on_update} has no "
                "PostgreSQL equivalent; omitted"
            )
        return " ".join(parts), warnings

    def render_create_table(self, schema: TableSchema) -> Tuple[List[str], List[str]]:
        warnings: List[str] = []
        lines: List[str] = []
        for column in schema.columns:
            text, column_warnings = self.render_column(column, schema.dialect, schema.name)
            lines.append(text)
            warnings.extend(column_warnings)
        if schema.primary_key:
            lines.append(f"PRIMARY KEY ({self.quote_columns(schema.primary_key)})")

        table = self.quote_identifier(schema.name)
        statements = []
        if schema.dialect == self.name:
            for column in schema.columns:
                if column.canonical_type == "enum" and column.enum_values:
                    statements.append(self.render_create_enum(column))
        statements.append(f"CREATE TABLE {table} ({', '.join(lines)})")

        for index in schema.indexes:
            unique = "UNIQUE " if index.unique else ""
            name = index.name
            if schema.dialect != self.name and not name.startswith(schema.name):
                # Index names are schema-wide in PostgreSQL
                name = f"{schema.name}_{name}"
            statements.append(
                f"CREATE {unique}INDEX {self.quote_identifier(name)} "
                f"ON {table} ({self.quote_columns(index.columns)})"
            )

        if schema.comment:
            statements.append(
                f"COMMENT ON TABLE {table} IS {self.quote_string(schema.comment)}"
            )

        if schema.dialect != self.name and schema.charset:
            encoding = CHARSET_ENCODINGS.get(schema.charset.lower())
            if encoding != "UTF8":
                warnings.append(
                    f"{schema.name}: character set {schema.charset!r} cannot be set "
                    "per table; use the database ENCODING"
                )
        return statements, warnings

    def render_create_enum(self, column: ColumnSchema) -> str:
        """CREATE TYPE for an enum column, tolerating an existing type."""
        labels = ", ".join(self.quote_string(v) for v in column.enum_values)
        name = column.native_type
        if not name.startswith('"'):
            name = self.quote_identifier(name)
        return (
            "DO $$ BEGIN "
            f"CREATE TYPE {name} AS ENUM ({labels}); "
            "EXCEPTION WHEN duplicate_object THEN NULL; END $$"
        )

    def render_drop_table(self, table: str, if_exists: bool = True, quoted: bool = False) -> str:
        return super().render_drop_table(table, if_exists, quoted) + " CASCADE"

    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        return (
            f"INSERT INTO {self.quote_identifier(table)} "
            f"({self.quote_columns(columns)}) VALUES ({placeholders})"
        )

    def create_database_sql(
        self,
        name: str,
        charset: Optional[str] = None,
        collation: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Tuple[str, List[str]]:
        warnings: List[str] = []
        sql = f"CREATE DATABASE {self.quote_identifier(name)}"
        if not charset:
            return sql, warnings

        if source in (None, self.name):
            encoding = charset
        else:
            encoding = CHARSET_ENCODINGS.get(charset.lower())
            if encoding is None:
                warnings.append(
                    f"{name}: character set {charset!r} has no PostgreSQL encoding; omitted"
                )
            if collation:
                warnings.append(f"{name}: collation {collation!r} omitted")
        if encoding:
            # Non-default encodings need template0
            sql += f" ENCODING {self.quote_string(encoding)} TEMPLATE template0"
        return sql, warnings

    def constraint_variables(
        self, foreign_keys: bool, unique: bool
    ) -> Tuple[List[Tuple[str, str]], List[str]]:
        variables = []
        warnings = []
        if foreign_keys:
            variables.append(("session_replication_role", "replica"))
        if unique:
            warnings.append(
                "PostgreSQL has no session switch for unique checks; left enabled"
            )
        return variables, warnings

    def common_variables(self) -> List[str]:
        return [
            "client_encoding",
            "standard_conforming_strings",
            "timezone",
            "search_path",
            "statement_timeout",
            "lock_timeout",
            "idle_in_transaction_session_timeout",
            "default_transaction_isolation",
            "work_mem",
            "maintenance_work_mem",
        ]

    def set_variable_sql(self, name: str, value: str) -> str:
        return f"SET {name} = {self.quote_string(value)}"

    def export_header(self) -> List[str]:
        return [
            "SET client_encoding = 'UTF8'",
            "SET standard_conforming_strings = on",
            "SET timezone = 'UTC'",
        ]

    def export_footer(self) -> List[str]:
        return []
