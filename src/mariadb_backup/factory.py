"""Build adapters from settings and check connectivity.

Usage:
    settings = load_settings()
    result = await connect_and_validate(settings)
    if not result.success:
        raise ConnectivityError(result.error)
"""

from pydantic import BaseModel, Field

from mariadb_backup.adapters import AsyncMariaDBAdapter, DockerContainer, ServerClient
from mariadb_backup.config.models import BackupSettings


class ConnectionResult(BaseModel):
    """Result of connect_and_validate().

    Example:
        >>> result = ConnectionResult(success=True, binlog_enabled=True)
        >>> result.success
        True
    """

    success: bool
    error: str | None = None
    binlog_enabled: bool | None = None
    databases: list[str] = Field(default_factory=list)


# ============================================================================
# Adapter Factory
# ============================================================================


def get_server_client(settings: BackupSettings) -> ServerClient:
    """Create the SQL client for the configured server."""
    return AsyncMariaDBAdapter(settings.database_url())


def get_container(settings: BackupSettings) -> DockerContainer:
    """Create the tool runner for the configured container."""
    return DockerContainer(settings.mariadb_container, password=settings.mariadb_root_password)


# ============================================================================
# Connection and Validation
# ============================================================================


async def connect_and_validate(
    settings: BackupSettings,
    client: ServerClient | None = None,
) -> ConnectionResult:
    """Connect to the server and report what the coordinators need.

    Args:
        settings: Loaded settings.
        client: Existing client to probe; a temporary one is created and
            closed when None.

    Returns:
        ConnectionResult with success status, binlog state and databases.

    Example:
        >>> result = await connect_and_validate(settings)
        >>> if not result.success:
        ...     print(f"Failed: {result.error}")
    """
    owned = client is None
    server = client if client is not None else get_server_client(settings)
    try:
        await server.test_connection()
        binlog_enabled = await server.binlog_enabled()
        databases = await server.list_databases()
    except Exception as e:
        return ConnectionResult(
            success=False,
            error=f"Failed to connect to MariaDB at {settings.mariadb_host}:{settings.mariadb_port}: {e}",
        )
    finally:
        if owned:
            await server.close()

    return ConnectionResult(success=True, binlog_enabled=binlog_enabled, databases=databases)
