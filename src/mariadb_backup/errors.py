"""Exception taxonomy and process exit codes.

Every error raised by the library derives from ``MariaDBBackupError`` and
carries the ``ExitCode`` the CLI returns for it, so cron jobs and CI can
branch on the failure category.

Usage:
    from mariadb_backup.errors import ConfigError, ExitCode

    try:
        settings = load_settings()
    except ConfigError as e:
        sys.exit(e.exit_code)
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes returned by the CLI."""

    OK = 0
    CONFIG = 1
    DIRECTORY = 2
    CONNECTIVITY = 3
    UNKNOWN_DATABASE = 4
    ENCRYPTION = 5
    RESTORE = 6
    BACKUP = 7
    CHECKSUM = 8
    LOCKED = 9


class MariaDBBackupError(Exception):
    """Base class for all backup/restore errors."""

    exit_code: ExitCode = ExitCode.BACKUP


class ConfigError(MariaDBBackupError):
    """Raised when configuration or the key file is missing or invalid."""

    exit_code = ExitCode.CONFIG


class DirectoryError(MariaDBBackupError):
    """Raised when a state directory cannot be created."""

    exit_code = ExitCode.DIRECTORY


class ConnectivityError(MariaDBBackupError):
    """Raised when the database server cannot be reached."""

    exit_code = ExitCode.CONNECTIVITY


class UnknownDatabaseError(MariaDBBackupError):
    """Raised when a requested database has no server schema or no backups."""

    exit_code = ExitCode.UNKNOWN_DATABASE


class EncryptionError(MariaDBBackupError):
    """Raised when encrypting or decrypting an artifact fails."""

    exit_code = ExitCode.ENCRYPTION


class ChecksumMismatchError(EncryptionError):
    """Raised when an artifact does not match its checksum sidecar."""

    exit_code = ExitCode.CHECKSUM


class RestoreError(MariaDBBackupError):
    """Raised when importing a backup or replaying binlogs fails."""

    exit_code = ExitCode.RESTORE


class BackupError(MariaDBBackupError):
    """Raised when dumping or packaging a database fails."""

    exit_code = ExitCode.BACKUP


class MissingCoordinateError(BackupError):
    """Raised when an incremental backup has no prior coordinate marker."""

    pass


class LockHeldError(MariaDBBackupError):
    """Raised when another backup or cleanup run holds the state lock."""

    exit_code = ExitCode.LOCKED


class ToolError(MariaDBBackupError):
    """Raised when an external command exits non-zero.

    Attributes:
        command: The argv that was executed.
        returncode: Process exit status.
        stderr: Decoded standard error output (stripped).
    """

    def __init__(self, command: list[str], returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        reason = self.stderr or "no error output"
        super().__init__(f"{command[0]} exited with status {returncode}: {reason}")
