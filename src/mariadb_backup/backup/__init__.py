"""Backup, restore and retention for MariaDB in Docker.

Usage:
    from mariadb_backup.backup import run_backup, run_restore, cleanup_backups, cleanup_binlogs
    from mariadb_backup.backup import BackupLayout, BackupMode, Coordinate
"""

from mariadb_backup.backup.cleanup import cleanup_backups, cleanup_binlogs
from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.backup.models import (
    BackupArtifact,
    BackupMode,
    BinlogFile,
    Coordinate,
)
from mariadb_backup.backup.restore import run_restore
from mariadb_backup.backup.runner import run_backup

__all__ = [
    "BackupArtifact",
    "BackupLayout",
    "BackupMode",
    "BinlogFile",
    "Coordinate",
    "cleanup_backups",
    "cleanup_binlogs",
    "run_backup",
    "run_restore",
]
