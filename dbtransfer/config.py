"""Environment configuration for the command line front end.

The engine never reads the environment; the CLI builds ConnectionConfig
values from ``SOURCE_*`` and ``TARGET_*`` variables (optionally from a
``.env`` file) and passes them in.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

from dbtransfer.models.connection import ConnectionConfig, DialectName

load_dotenv()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Configuration validation error."""

    pass


class EnvConfig:
    """Connection settings under one variable prefix, with validation.

    Variables: ``<PREFIX>_TYPE`` (mariadb/postgres), ``_HOST``, ``_PORT``,
    ``_USER``, ``_PASSWORD``, ``_SOCKET``, ``_DB`` and ``_SCHEMA``.
    """

    def __init__(self, prefix: str):
        self.prefix = prefix
        self.dialect = self._validate_dialect(f"{prefix}_TYPE", "mariadb")
        self.host = os.getenv(f"{prefix}_HOST", "localhost")
        self.port = self._validate_port(f"{prefix}_PORT", 0)
        self.user = os.getenv(f"{prefix}_USER", "")
        self.password = os.getenv(f"{prefix}_PASSWORD", "")
        self.socket = os.getenv(f"{prefix}_SOCKET") or None
        self.database = os.getenv(f"{prefix}_DB") or None
        self.schema = os.getenv(f"{prefix}_SCHEMA", "public")

    @classmethod
    def is_configured(cls, prefix: str) -> bool:
        """True if any connection variable with this prefix is set."""
        return any(
            os.getenv(f"{prefix}_{key}")
            for key in ("TYPE", "HOST", "PORT", "USER", "SOCKET", "DB")
        )

    def _validate_dialect(self, key: str, default: str) -> DialectName:
        value = os.getenv(key, default)
        try:
            return DialectName.parse(value)
        except ValueError:
            raise ConfigError(f"{key}={value} is not a supported database type")

    def _validate_port(self, key: str, default: int) -> int:
        """Validate port number is in valid range (1-65535); 0 means the dialect default."""
        value = os.getenv(key, str(default))
        try:
            port = int(value)
        except ValueError:
            raise ConfigError(f"{key}={value} is not a valid integer")
        if port != 0 and not (1 <= port <= 65535):
            raise ConfigError(f"{key}={port} is not a valid port number (must be 1-65535)")
        return port

    def connection(self, database: Optional[str] = None) -> ConnectionConfig:
        """
        Build the connection config.

        Args:
            database: Overrides ``<PREFIX>_DB``

        Returns:
            Immutable connection config
        """
        return ConnectionConfig(
            dialect=self.dialect,
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            socket=self.socket,
            database=database or self.database,
            schema=self.schema,
        )


def get_bool(key: str, default: bool) -> bool:
    """Read a boolean variable (1/0, true/false, yes/no, on/off)."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ConfigError(f"{key}={value} is not a valid boolean")


def source_config(database: Optional[str] = None) -> ConnectionConfig:
    return EnvConfig("SOURCE").connection(database)


def target_config(database: Optional[str] = None) -> ConnectionConfig:
    """Destination connection; falls back to the SOURCE_* server when TARGET_* is unset."""
    prefix = "TARGET" if EnvConfig.is_configured("TARGET") else "SOURCE"
    return EnvConfig(prefix).connection(database)
