"""Server client protocol definition.

Defines the ``ServerClient`` Protocol used by the backup, restore and
cleanup coordinators for status and introspection queries.  All methods
are ``async def``.

Usage:
    from mariadb_backup.adapters.base import ServerClient

    async def current_position(client: ServerClient) -> str:
        coordinate = await client.master_status()
        await client.close()
        return str(coordinate)
"""

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from mariadb_backup.backup.models import Coordinate


class ServerClient(Protocol):
    """Structured access to the MariaDB server's state.

    Backups themselves are taken with the server's own tools inside the
    container; this interface only covers the queries whose results the
    coordinators act on.
    """

    async def list_databases(self) -> list[str]:
        """User databases on the server, system schemas excluded.

        Returns:
            Database names in server order.
        """
        ...

    async def table_count(self, database: str) -> int:
        """Number of tables in ``database`` (0 for an empty schema)."""
        ...

    async def binlog_enabled(self) -> bool:
        """True when the server has binary logging turned on."""
        ...

    async def binlog_basename(self) -> str | None:
        """Value of ``log_bin_basename``, or None when unset."""
        ...

    async def master_status(self) -> "Coordinate | None":
        """Current binlog write position.

        Returns:
            The coordinate from ``SHOW MASTER STATUS``, or None when binary
            logging is disabled.
        """
        ...

    async def list_binary_logs(self) -> list[str]:
        """Segment names from ``SHOW BINARY LOGS``, oldest first.

        The last entry is the active segment.
        """
        ...

    async def flush_binary_logs(self) -> None:
        """Close the active segment and start a new one."""
        ...

    async def create_database(self, database: str) -> None:
        """``CREATE DATABASE IF NOT EXISTS``."""
        ...

    async def test_connection(self) -> bool:
        """Run ``SELECT 1``.

        Raises:
            Exception: If the server cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Dispose of the underlying connection pool."""
        ...
