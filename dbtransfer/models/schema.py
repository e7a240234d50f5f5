"""Table metadata models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple


@dataclass
class ColumnSchema:
    """Column metadata as read from a live connection.

    ``native_type`` is the full type text in the source dialect (for example
    ``int(10) unsigned`` or ``character varying(64)``); ``canonical_type`` is
    the dialect-neutral family used for translation and value cleaning.
    """

    name: str
    native_type: str
    canonical_type: str
    nullable: bool = True
    default: Optional[str] = None
    auto_increment: bool = False
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    unsigned: bool = False
    charset: Optional[str] = None
    collation: Optional[str] = None
    on_update: Optional[str] = None
    enum_values: List[str] = field(default_factory=list)


@dataclass
class IndexSchema:
    """Secondary index (primary keys live on TableSchema)."""

    name: str
    columns: List[str]
    unique: bool = False


@dataclass
class ForeignKeySchema:
    """Foreign key constraint."""

    name: str
    table: str
    columns: List[str]
    referenced_table: str
    referenced_columns: List[str]
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"


@dataclass
class TableSchema:
    """Table metadata information."""

    name: str
    dialect: str
    columns: List[ColumnSchema]
    primary_key: List[str] = field(default_factory=list)
    indexes: List[IndexSchema] = field(default_factory=list)
    foreign_keys: List[ForeignKeySchema] = field(default_factory=list)
    engine: Optional[str] = None
    charset: Optional[str] = None
    collation: Optional[str] = None
    comment: Optional[str] = None

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    @property
    def referenced_tables(self) -> List[str]:
        """Tables this table references, excluding itself."""
        seen: List[str] = []
        for fk in self.foreign_keys:
            if fk.referenced_table != self.name and fk.referenced_table not in seen:
                seen.append(fk.referenced_table)
        return seen

    def structure(self) -> Tuple[Tuple[str, str], ...]:
        """Column names, order and canonical types, used for Append checks."""
        return tuple((c.name, c.canonical_type) for c in self.columns)

    def renamed(self, new_name: str) -> TableSchema:
        """Copy of this schema under another table name.

        Index and constraint names embedding the old table name have it
        replaced; other names get a ``_<new_name>`` suffix, since PostgreSQL
        index names are unique per schema.
        """
        indexes = [
            replace(idx, name=_rename_constraint(idx.name, self.name, new_name))
            for idx in self.indexes
        ]
        foreign_keys = []
        for fk in self.foreign_keys:
            referenced = new_name if fk.referenced_table == self.name else fk.referenced_table
            foreign_keys.append(
                replace(
                    fk,
                    name=_rename_constraint(fk.name, self.name, new_name),
                    table=new_name,
                    referenced_table=referenced,
                )
            )
        return replace(self, name=new_name, indexes=indexes, foreign_keys=foreign_keys)


def _rename_constraint(name: str, old: str, new: str) -> str:
    if old in name:
        return name.replace(old, new, 1)
    return f"{name}_{new}"
