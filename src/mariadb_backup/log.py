"""Logging setup for CLI commands.

Library modules log through ``logging.getLogger(__name__)`` and never
print.  The CLI calls ``setup_logging()`` once per command, which sends
records to the terminal via rich and appends a plain copy to
``<log_dir>/<command>.log``.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log files written by the CLI commands, cleared by clear_logs()
LOG_FILES = (
    "backup.log",
    "restore.log",
    "cleanup_backups.log",
    "cleanup_binlogs.log",
    "encrypt.log",
    "health.log",
)


def setup_logging(
    command: str,
    log_dir: Path,
    verbose: bool = False,
    console: Console | None = None,
) -> Path:
    """Configure the ``mariadb_backup`` logger for one command.

    Args:
        command: Log file stem, e.g. ``"backup"`` or ``"cleanup_binlogs"``.
        log_dir: Directory for log files (created if missing).
        verbose: Log DEBUG records when True, INFO otherwise.
        console: Console for terminal output (defaults to stderr).

    Returns:
        Path of the log file being written.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{command}.log"

    logger = logging.getLogger("mariadb_backup")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        log_time_format=DATE_FORMAT,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(file_handler)

    logger.propagate = False
    return log_path


def clear_logs(log_dir: Path) -> tuple[int, int]:
    """Truncate the command log files.

    Missing files are created empty and counted as cleared.

    Returns:
        Tuple of (cleared, skipped) where skipped files were already empty.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    cleared = 0
    skipped = 0
    for name in LOG_FILES:
        path = log_dir / name
        if path.exists() and path.stat().st_size == 0:
            skipped += 1
            continue
        path.write_text("")
        cleared += 1
    return cleared, skipped
