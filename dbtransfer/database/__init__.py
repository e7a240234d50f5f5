"""Database clients."""

from __future__ import annotations

from typing import Optional

from dbtransfer.database.base import DatabaseClient
from dbtransfer.database.mysql_client import MariaDBClient
from dbtransfer.database.pg_client import PGClient
from dbtransfer.models.connection import ConnectionConfig, DialectName


def create_client(config: ConnectionConfig, database: Optional[str] = None) -> DatabaseClient:
    """Build an unconnected client for the config's dialect."""
    if DialectName.parse(config.dialect) is DialectName.POSTGRES:
        return PGClient(config, database)
    return MariaDBClient(config, database)


async def connect(config: ConnectionConfig, database: Optional[str] = None) -> DatabaseClient:
    """
    Open a client connection.

    Args:
        config: Connection parameters
        database: Database to select; defaults to ``config.database``

    Returns:
        Connected client

    Raises:
        ConnectivityError: If the server cannot be reached or authenticated
    """
    client = create_client(config, database)
    await client.connect()
    return client


__all__ = ["DatabaseClient", "MariaDBClient", "PGClient", "connect", "create_client"]
