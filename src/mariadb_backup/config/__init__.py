"""Configuration management: .env loading and settings model.

Usage:
    >>> from mariadb_backup.config import load_settings, BackupSettings
"""

from mariadb_backup.config.loader import ensure_directories, load_settings
from mariadb_backup.config.models import BackupSettings

__all__ = ["load_settings", "ensure_directories", "BackupSettings"]
