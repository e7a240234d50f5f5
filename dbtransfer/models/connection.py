"""Connection configuration model."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional


class DialectName(str, Enum):
    """Supported database engine families."""

    MARIADB = "mariadb"
    POSTGRES = "postgres"

    @classmethod
    def parse(cls, value: str) -> DialectName:
        normalized = value.strip().lower()
        aliases = {
            "mariadb": cls.MARIADB,
            "mysql": cls.MARIADB,
            "": cls.MARIADB,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "pg": cls.POSTGRES,
        }
        if normalized not in aliases:
            raise ValueError(f"Unsupported database type: {value}")
        return aliases[normalized]


DEFAULT_PORTS = {DialectName.MARIADB: 3306, DialectName.POSTGRES: 5432}


@dataclass(frozen=True)
class ConnectionConfig:
    """Parameters for one server connection. Immutable once a connection is open."""

    dialect: DialectName
    host: str = "localhost"
    port: int = 0
    user: str = ""
    password: str = ""
    socket: Optional[str] = None
    database: Optional[str] = None
    schema: str = "public"

    @property
    def effective_port(self) -> int:
        return self.port or DEFAULT_PORTS[self.dialect]

    def with_database(self, database: Optional[str]) -> ConnectionConfig:
        return replace(self, database=database)

    def as_log_dict(self) -> Dict[str, Any]:
        """Connection parameters for logging; pass through SafeLogger.sanitize."""
        return {
            "dialect": self.dialect.value,
            "host": self.host,
            "port": self.effective_port,
            "user": self.user,
            "password": self.password,
            "socket": self.socket,
            "database": self.database,
        }
