"""SQL dialects: one capability object per database engine family."""

from __future__ import annotations

from typing import Union

from dbtransfer.dialects.base import Dialect
from dbtransfer.dialects.mariadb import MariaDBDialect
from dbtransfer.dialects.postgres import PostgresDialect
from dbtransfer.models.connection import DialectName

_DIALECTS = {
    DialectName.MARIADB: MariaDBDialect(),
    DialectName.POSTGRES: PostgresDialect(),
}


def get_dialect(name: Union[str, DialectName]) -> Dialect:
    """Return the shared dialect instance for a dialect name or alias."""
    return _DIALECTS[DialectName.parse(name)]


__all__ = ["Dialect", "MariaDBDialect", "PostgresDialect", "get_dialect"]
