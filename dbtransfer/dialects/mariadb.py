"""MariaDB dialect."""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from dbtransfer.dialects.base import Dialect
from dbtransfer.models.schema import ColumnSchema, TableSchema

_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\x00": "\\0",
    "\x1a": "\\Z",
}
_ESCAPE_PATTERN = re.compile("[\\\\'\"\n\r\t\x00\x1a]")

_DATABASE_SWITCH = re.compile(
    r"^\s*(USE\s|CREATE\s+(DATABASE|SCHEMA)\b)", re.IGNORECASE
)

_BASE_TYPES = {
    "bool": "boolean",
    "boolean": "boolean",
    "tinyint": "smallint",
    "smallint": "smallint",
    "year": "smallint",
    "mediumint": "integer",
    "int": "integer",
    "integer": "integer",
    "bigint": "bigint",
    "decimal": "decimal",
    "dec": "decimal",
    "numeric": "decimal",
    "fixed": "decimal",
    "float": "real",
    "double": "double",
    "real": "double",
    "char": "char",
    "varchar": "varchar",
    "tinytext": "text",
    "text": "text",
    "mediumtext": "text",
    "longtext": "text",
    "binary": "binary",
    "varbinary": "binary",
    "tinyblob": "blob",
    "blob": "blob",
    "mediumblob": "blob",
    "longblob": "blob",
    "date": "date",
    "time": "time",
    "datetime": "datetime",
    "timestamp": "datetime",
    "json": "json",
    "enum": "enum",
    "set": "set",
    "bit": "bit",
    "uuid": "uuid",
    "inet4": "inet",
    "inet6": "inet",
}

_RENDER = {
    "boolean": "tinyint(1)",
    "smallint": "smallint",
    "integer": "int",
    "bigint": "bigint",
    "real": "float",
    "double": "double",
    "text": "longtext",
    "blob": "longblob",
    "date": "date",
    "time": "time(6)",
    "datetime": "datetime(6)",
    "json": "json",
    "uuid": "char(36)",
    "inet": "varchar(45)",
    "interval": "varchar(64)",
}

# PostgreSQL server encodings and their MariaDB character sets
ENCODING_CHARSETS = {
    "UTF8": "utf8mb4",
    "LATIN1": "latin1",
    "LATIN2": "latin2",
    "SQL_ASCII": "ascii",
    "WIN1251": "cp1251",
    "WIN1250": "cp1250",
    "EUC_JP": "ujis",
    "SJIS": "sjis",
}


class MariaDBDialect(Dialect):
    name = "mariadb"
    default_port = 3306
    identifier_quote = "`"

    def escape_string(self, value: str) -> str:
        return _ESCAPE_PATTERN.sub(lambda m: _ESCAPES[m.group(0)], value)

    def format_bytes(self, value: bytes) -> str:
        if not value:
            return "''"
        return f"X'{value.hex().upper()}'"

    def format_bool(self, value: bool) -> str:
        return "1" if value else "0"

    def reader_options(self) -> dict:
        return {
            "backslash_escapes": True,
            "hash_comments": True,
            "dollar_quotes": False,
        }

    def is_database_switch(self, statement: str) -> bool:
        return _DATABASE_SWITCH.match(statement) is not None

    def canonical_type(self, native_type: str) -> str:
        native = native_type.strip().lower()
        if native.startswith("tinyint(1)") and "unsigned" not in native:
            return "boolean"
        base = re.split(r"[\s(]", native, maxsplit=1)[0]
        return _BASE_TYPES.get(base, "unknown")

    def render_type(self, column: ColumnSchema, source: str) -> Tuple[str, List[str]]:
        if source == self.name:
            return column.native_type, []

        kind = column.canonical_type
        warnings: List[str] = []

        if kind in ("char", "varchar", "binary"):
            length = column.length
            if kind == "char":
                return f"char({length or 1})", warnings
            if kind == "binary":
                return f"varbinary({length or 255})", warnings
            if length is None or length > 16383:
                # varchar without a limit in PostgreSQL
                return "longtext", warnings
            return f"varchar({length})", warnings
        if kind == "decimal":
            if column.precision:
                return f"decimal({column.precision},{column.scale or 0})", warnings
            return "decimal(65,30)", warnings
        if kind == "enum" and column.enum_values:
            values = ",".join(self.quote_string(v) for v in column.enum_values)
            return f"enum({values})", warnings
        if kind == "set" and column.enum_values:
            values = ",".join(self.quote_string(v) for v in column.enum_values)
            return f"set({values})", warnings
        if kind == "bit":
            return f"bit({column.length or 1})", warnings
        if kind == "timestamptz":
            warnings.append(
                f"{column.name}: time zone dropped from {column.native_type}; "
                "values stored as UTC"
            )
            return "datetime(6)", warnings
        if kind in ("interval", "array"):
            rendered = "json" if kind == "array" else _RENDER[kind]
            warnings.append(
                f"{column.name}: {column.native_type} has no MariaDB type; stored as {rendered}"
            )
            return rendered, warnings
        if kind in _RENDER:
            return _RENDER[kind], warnings

        warnings.append(
            f"{column.name}: unsupported type {column.native_type!r}; stored as longtext"
        )
        return "longtext", warnings

    def render_column(
        self, column: ColumnSchema, source: str, table: str
    ) -> Tuple[str, List[str]]:
        type_text, warnings = self.render_type(column, source)
        parts = [self.quote_identifier(column.name), type_text]

        if column.charset and source == self.name:
            parts.append(f"CHARACTER SET {column.charset}")
        if column.collation and source == self.name:
            parts.append(f"COLLATE {column.collation}")
        elif column.collation and source != self.name:
            warnings.append(
                f"{table}.{column.name}: collation {column.collation!r} omitted"
            )

        parts.append("NULL" if column.nullable else "NOT NULL")
        default, default_warnings = self.render_default(column, source, table)
        warnings.extend(default_warnings)
        if default is not None:
            parts.append(f"DEFAULT {default}")
        if column.on_update:
            parts.append(f"ON UPDATE {column.on_update}")
        if column.auto_increment:
            parts.append("AUTO_INCREMENT")
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
        for index in schema.indexes:
            keyword = "UNIQUE KEY" if index.unique else "KEY"
            lines.append(
                f"{keyword} {self.quote_identifier(index.name)} "
                f"({self.quote_columns(index.columns)})"
            )

        options = []
        if schema.dialect == self.name:
            if schema.engine:
                options.append(f"ENGINE={schema.engine}")
            if schema.charset:
                options.append(f"DEFAULT CHARSET={schema.charset}")
            if schema.collation:
                options.append(f"COLLATE={schema.collation}")
        else:
            options.append("ENGINE=InnoDB")
            charset = ENCODING_CHARSETS.get((schema.charset or "UTF8").upper())
            if charset is None:
                warnings.append(
                    f"{schema.name}: encoding {schema.charset!r} has no MariaDB "
                    "character set; using utf8mb4"
                )
                charset = "utf8mb4"
            options.append(f"DEFAULT CHARSET={charset}")
        if schema.comment:
            options.append(f"COMMENT={self.quote_string(schema.comment)}")

        body = ", ".join(lines)
        statement = f"CREATE TABLE {self.quote_identifier(schema.name)} ({body})"
        if options:
            statement += " " + " ".join(options)
        return [statement], warnings

    def insert_sql(self, table: str, columns: Sequence[str]) -> str:
        placeholders = ", ".join(["%s"] * len(columns))
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
        sql = f"CREATE DATABASE IF NOT EXISTS {self.quote_identifier(name)}"
        if source in (None, self.name):
            if charset:
                sql += f" CHARACTER SET {charset}"
            if collation:
                sql += f" COLLATE {collation}"
            return sql, warnings

        if charset:
            mapped = ENCODING_CHARSETS.get(charset.upper())
            if mapped:
                sql += f" CHARACTER SET {mapped}"
            else:
                warnings.append(
                    f"{name}: encoding {charset!r} has no MariaDB character set; omitted"
                )
        if collation:
            warnings.append(f"{name}: collation {collation!r} omitted")
        return sql, warnings

    def constraint_variables(
        self, foreign_keys: bool, unique: bool
    ) -> Tuple[List[Tuple[str, str]], List[str]]:
        variables = []
        if foreign_keys:
            variables.append(("foreign_key_checks", "0"))
        if unique:
            variables.append(("unique_checks", "0"))
        return variables, []

    def common_variables(self) -> List[str]:
        return [
            "foreign_key_checks",
            "unique_checks",
            "sql_mode",
            "character_set_client",
            "character_set_results",
            "character_set_connection",
            "collation_connection",
            "time_zone",
        ]

    def set_variable_sql(self, name: str, value: str) -> str:
        if re.match(r"^-?\d+$", value):
            return f"SET SESSION {name} = {value}"
        return f"SET SESSION {name} = {self.quote_string(value)}"

    def export_header(self) -> List[str]:
        return [
            "SET NAMES utf8mb4",
            "SET FOREIGN_KEY_CHECKS=0",
            "SET SQL_MODE='NO_AUTO_VALUE_ON_ZERO'",
            "SET time_zone='+00:00'",
        ]

    def export_footer(self) -> List[str]:
        return ["SET FOREIGN_KEY_CHECKS=1"]
