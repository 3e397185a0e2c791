"""Exclusive advisory lock over the shared backup state.

Backup and cleanup runs both read and rewrite coordinate markers and the
staged segment directory, so only one of them may run at a time.

Usage:
    with StateLock(settings.backup_dir / ".state.lock"):
        ...
"""

import fcntl
import logging
import os
from pathlib import Path

from mariadb_backup.errors import LockHeldError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".state.lock"


class StateLock:
    """Non-blocking ``flock`` held for the lifetime of the context."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: int | None = None

    @classmethod
    def for_backup_dir(cls, backup_dir: Path) -> "StateLock":
        return cls(backup_dir / LOCK_FILE_NAME)

    def __enter__(self) -> "StateLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockHeldError(
                f"Another backup or cleanup run holds {self.path}"
            ) from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug(f"Acquired state lock {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug(f"Released state lock {self.path}")
