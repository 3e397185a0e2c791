"""Health check for the backup system's prerequisites.

Each check produces a ``HealthCheck`` entry rather than raising, so the
CLI can show the full picture in one table.
"""

import logging
from typing import Literal

from pydantic import BaseModel

from mariadb_backup.adapters.base import ServerClient
from mariadb_backup.adapters.container import DockerContainer, docker_available
from mariadb_backup.config.loader import ensure_directories
from mariadb_backup.config.models import BackupSettings
from mariadb_backup.errors import DirectoryError

logger = logging.getLogger(__name__)

HealthStatus = Literal["ok", "warning", "error"]


class HealthCheck(BaseModel):
    name: str
    status: HealthStatus
    detail: str = ""


async def run_health_check(
    settings: BackupSettings,
    server: ServerClient,
    container: DockerContainer,
) -> list[HealthCheck]:
    """Check Docker, the container, the server and local state.

    Args:
        settings: Loaded settings.
        server: SQL client for the server.
        container: Tool runner for the server's container.

    Returns:
        One ``HealthCheck`` per check, in the order run.
    """
    checks: list[HealthCheck] = []

    if docker_available():
        checks.append(HealthCheck(name="Docker CLI", status="ok", detail="docker found on PATH"))
    else:
        checks.append(HealthCheck(name="Docker CLI", status="error", detail="docker is not installed"))

    if await container.is_running():
        checks.append(HealthCheck(name="Container", status="ok", detail=f"{container.name} is running"))
    else:
        checks.append(HealthCheck(name="Container", status="error", detail=f"{container.name} is not running"))

    connected = False
    try:
        await server.test_connection()
        connected = True
        databases = await server.list_databases()
        detail = f"databases: {', '.join(databases)}" if databases else "no user databases found"
        checks.append(HealthCheck(name="Database connection", status="ok", detail=detail))
    except Exception as e:
        checks.append(HealthCheck(name="Database connection", status="error", detail=str(e)))

    if connected:
        try:
            if await server.binlog_enabled():
                basename = await server.binlog_basename()
                checks.append(HealthCheck(name="Binary logging", status="ok", detail=f"base: {basename or 'unknown'}"))
            else:
                checks.append(
                    HealthCheck(
                        name="Binary logging",
                        status="error",
                        detail="disabled; incremental backups and point-in-time restore are unavailable",
                    )
                )
        except Exception as e:
            checks.append(HealthCheck(name="Binary logging", status="warning", detail=str(e)))

    try:
        ensure_directories(settings)
        checks.append(
            HealthCheck(
                name="Backup directories",
                status="ok",
                detail=", ".join(str(d) for d in settings.state_directories),
            )
        )
    except DirectoryError as e:
        checks.append(HealthCheck(name="Backup directories", status="error", detail=str(e)))

    if settings.key_file.is_file():
        checks.append(HealthCheck(name="Encryption key", status="ok", detail=str(settings.key_file)))
    else:
        checks.append(
            HealthCheck(
                name="Encryption key",
                status="warning",
                detail=f"{settings.key_file} missing; it will be generated on the first backup",
            )
        )

    for check in checks:
        log = logger.error if check.status == "error" else logger.warning if check.status == "warning" else logger.info
        log(f"{check.name}: {check.detail}")
    return checks
