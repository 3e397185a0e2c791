"""mariadb-backup: full, incremental and point-in-time backups for MariaDB in Docker.

Provides a dump/binlog backup coordinator, a restore coordinator with
point-in-time recovery, retention cleaners, and OpenSSL-compatible
artifact encryption.

Usage:
    from mariadb_backup import load_settings, get_server_client, get_container
    from mariadb_backup import run_backup, run_restore, BackupMode
"""

__version__ = "0.1.0"

# Config
from mariadb_backup.config.loader import ensure_directories, load_settings
from mariadb_backup.config.models import BackupSettings

# Errors
from mariadb_backup.errors import ExitCode, MariaDBBackupError

# Adapters
from mariadb_backup.adapters.base import ServerClient
from mariadb_backup.adapters.container import DockerContainer
from mariadb_backup.adapters.mariadb import AsyncMariaDBAdapter

# Factory
from mariadb_backup.factory import (
    ConnectionResult,
    connect_and_validate,
    get_container,
    get_server_client,
)

# Backup
from mariadb_backup.backup import (
    BackupLayout,
    BackupMode,
    Coordinate,
    cleanup_backups,
    cleanup_binlogs,
    run_backup,
    run_restore,
)

__all__ = [
    # Config
    "load_settings",
    "ensure_directories",
    "BackupSettings",
    # Errors
    "ExitCode",
    "MariaDBBackupError",
    # Adapters
    "ServerClient",
    "AsyncMariaDBAdapter",
    "DockerContainer",
    # Factory
    "get_server_client",
    "get_container",
    "connect_and_validate",
    "ConnectionResult",
    # Backup
    "BackupLayout",
    "BackupMode",
    "Coordinate",
    "run_backup",
    "run_restore",
    "cleanup_backups",
    "cleanup_binlogs",
]
