"""CLI for MariaDB backup, restore and retention.

Usage:
    mariadb-backup backup --full
    mariadb-backup backup --incremental --database app_db
    mariadb-backup restore --database app_db --last
    mariadb-backup restore --database ALL --to-timestamp "2024-05-01 12:00:00"
    mariadb-backup cleanup-backups --keep 7
    mariadb-backup cleanup-binlogs --keep 2
    mariadb-backup encrypt --decrypt backups/app_db_full_2024-05-01_02-00-00.sql.gz.enc
    mariadb-backup health
    mariadb-backup clear-logs

Commands:
    backup           - Full or incremental backup of all (or one) databases
    restore          - Restore from a full backup and replay binlogs (PITR)
    cleanup-backups  - Delete full backup generations beyond retention
    cleanup-binlogs  - Delete staged binlog segments no longer needed
    encrypt          - Encrypt or decrypt a single file
    health           - Check Docker, server and local state
    clear-logs       - Truncate the command log files
"""

import argparse
import asyncio
import functools
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.table import Table

from mariadb_backup.adapters import ServerClient
from mariadb_backup.backup.cleanup import cleanup_backups, cleanup_binlogs
from mariadb_backup.backup.health import run_health_check
from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.backup.models import BackupArtifact, BackupMode, BackupRunResult, RestoreSummary
from mariadb_backup.backup.restore import ALL_DATABASES, LATEST, run_restore
from mariadb_backup.backup.runner import run_backup
from mariadb_backup.cli.encrypt import cmd_encrypt, add_encrypt_arguments
from mariadb_backup.config import BackupSettings, ensure_directories, load_settings
from mariadb_backup.errors import ConfigError, ConnectivityError, ExitCode, MariaDBBackupError
from mariadb_backup.factory import connect_and_validate, get_container, get_server_client
from mariadb_backup.log import clear_logs, setup_logging

console = Console()

TIMESTAMP_INPUT_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================================
# Helpers
# ============================================================================


def handle_errors(func: Callable[[argparse.Namespace], int]) -> Callable[[argparse.Namespace], int]:
    """Map ``MariaDBBackupError`` raised by a command to its exit code."""

    @functools.wraps(func)
    def wrapper(args: argparse.Namespace) -> int:
        try:
            return int(func(args))
        except MariaDBBackupError as e:
            console.print(f"[bold red]x[/bold red] {e}")
            return int(e.exit_code)

    return wrapper


def _prepare(args: argparse.Namespace, command: str) -> BackupSettings:
    """Load settings, create state directories and start logging."""
    settings = load_settings(args.env_file)
    ensure_directories(settings)
    setup_logging(command, settings.log_dir, verbose=args.verbose)
    return settings


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def parse_timestamp_arg(value: str) -> datetime:
    """argparse type for ``--to-timestamp``."""
    try:
        return datetime.strptime(value, TIMESTAMP_INPUT_FORMAT)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            f"invalid timestamp {value!r}, expected YYYY-MM-DD HH:MM:SS"
        ) from e


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


async def _connect(settings: BackupSettings, server: ServerClient) -> None:
    result = await connect_and_validate(settings, server)
    if not result.success:
        raise ConnectivityError(result.error)
    if result.binlog_enabled is False:
        console.print("[yellow]Binary logging is disabled on the server[/yellow]")


# ============================================================================
# Interactive selection
# ============================================================================


def _choose_database(databases: list[str]) -> str:
    console.print("\n[bold]Available databases:[/bold]")
    console.print("  [1] ALL_DATABASES (restore all databases)")
    for index, name in enumerate(databases, start=2):
        console.print(f"  [{index}] {name}")
    while True:
        response = input(f"Select an option (1-{len(databases) + 1}): ").strip()
        if response.isdigit() and 1 <= int(response) <= len(databases) + 1:
            choice = int(response)
            return ALL_DATABASES if choice == 1 else databases[choice - 2]
        console.print("[yellow]Invalid selection[/yellow]")


def _choose_backup(database: str, backups: list[BackupArtifact]) -> BackupArtifact:
    table = Table(title=f"Full backups for {database}", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Timestamp")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for index, artifact in enumerate(backups, start=1):
        table.add_row(
            str(index),
            artifact.timestamp_label,
            artifact.path.name,
            format_size(artifact.path.stat().st_size),
        )
    console.print(table)
    while True:
        response = input(f"Select backup number (1-{len(backups)}) [1]: ").strip() or "1"
        if response.isdigit() and 1 <= int(response) <= len(backups):
            return backups[int(response) - 1]
        console.print("[yellow]Invalid selection[/yellow]")


# ============================================================================
# Output
# ============================================================================


def _print_backup_result(result: BackupRunResult) -> None:
    table = Table(title=f"{result.mode.value.capitalize()} backup", show_header=True, header_style="bold")
    table.add_column("Database")
    table.add_column("Status")
    table.add_column("Artifact")
    table.add_column("Coordinate")
    styles = {"success": "green", "skipped": "yellow", "failed": "red"}
    for entry in result.results:
        style = styles[entry.status]
        table.add_row(
            entry.database,
            f"[{style}]{entry.status}[/{style}]",
            entry.artifact.name if entry.artifact else entry.message,
            str(entry.coordinate) if entry.coordinate else "-",
        )
    console.print(table)
    if result.staged_segments:
        console.print(f"Staged binlog segments: {', '.join(result.staged_segments)}")
    if result.success:
        console.print("[bold green]v[/bold green] Backup completed")
    else:
        console.print(f"[bold red]x[/bold red] Backup completed with {result.error_count} error(s)")


def _print_restore_summary(summary: RestoreSummary) -> None:
    table = Table(title="Restore summary", show_header=True, header_style="bold")
    table.add_column("Database")
    table.add_column("Status")
    table.add_column("Backup")
    table.add_column("Binlogs applied", justify="right")
    table.add_column("Binlogs failed", justify="right")
    for entry in summary.results:
        style = "green" if entry.status == "success" else "red"
        table.add_row(
            entry.database,
            f"[{style}]{entry.status}[/{style}]",
            entry.backup_file.name if entry.backup_file else entry.message,
            str(entry.segments_applied),
            str(entry.segments_failed),
        )
    console.print(table)

    details = Table(show_header=False)
    details.add_column("Key", style="dim")
    details.add_column("Value")
    details.add_row("Databases restored", str(summary.restored_count))
    details.add_row("Backup data", format_size(summary.backup_bytes))
    details.add_row("Binlog data", format_size(summary.binlog_bytes))
    details.add_row("Target time", str(summary.to_timestamp) if summary.to_timestamp else "latest")
    details.add_row("Duration", f"{summary.duration_seconds:.1f}s")
    console.print(details)


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_backup(args: argparse.Namespace) -> int:
    """Async implementation for backup command.

    Returns:
        0 when every database succeeded or was skipped, BACKUP otherwise.
    """
    settings = _prepare(args, "backup")
    mode = BackupMode.FULL if args.full else BackupMode.INCREMENTAL
    server = get_server_client(settings)
    container = get_container(settings)
    try:
        await _connect(settings, server)
        result = await run_backup(
            settings,
            server,
            container,
            mode,
            database=args.database,
            include_empty=args.include_empty,
            key_file=args.key,
            compress=not args.no_compress,
            checksums=not args.no_checksums,
        )
    finally:
        await server.close()

    _print_backup_result(result)
    return ExitCode.OK if result.success else ExitCode.BACKUP


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Without ``--database`` the database is taken from the name of
    ``--backup-file``; failing that the user picks a database (or all) and,
    for a single database without ``--backup-file``/``--last``, a backup.
    Picking needs a terminal.

    Returns:
        0 on success, RESTORE if any database failed.
    """
    args.verbose = args.verbose or args.debug
    settings = _prepare(args, "restore")
    layout = BackupLayout(settings)

    database = args.database
    if args.last and database is None:
        raise ConfigError("--last requires --database")
    if database is None and args.backup_file and args.backup_file != LATEST:
        artifact = BackupArtifact.parse(Path(args.backup_file))
        if artifact is not None:
            database = artifact.database
    if database is None:
        if not sys.stdin.isatty():
            raise ConfigError("--database is required when not running interactively")
        available = layout.databases_with_backups()
        if not available:
            console.print(f"[yellow]No backups found in {settings.backup_dir}[/yellow]")
            return ExitCode.UNKNOWN_DATABASE
        database = _choose_database(available)

    backup_file = LATEST if args.last else args.backup_file
    chooser = _choose_backup if sys.stdin.isatty() else None

    server = get_server_client(settings)
    container = get_container(settings)
    try:
        await _connect(settings, server)
        summary = await run_restore(
            settings,
            server,
            container,
            database=database,
            backup_file=backup_file,
            to_timestamp=args.to_timestamp,
            replay_binlogs=not args.no_binlogs,
            strict=True if args.strict else None,
            key_file=args.key,
            chooser=chooser,
        )
    finally:
        await server.close()

    _print_restore_summary(summary)
    if summary.error_count:
        console.print(f"[bold red]x[/bold red] Restore completed with {summary.error_count} error(s)")
        return ExitCode.RESTORE
    console.print("[bold green]v[/bold green] Restore completed")
    return ExitCode.OK


async def _async_cleanup_binlogs(args: argparse.Namespace) -> int:
    """Async implementation for cleanup-binlogs command.

    The server is asked for its active segment; when it is unreachable the
    cleanup still runs on local state alone.
    """
    settings = _prepare(args, "cleanup_binlogs")
    keep = args.keep or settings.keep_binlog_generations

    active = None
    server = get_server_client(settings)
    try:
        logs = await server.list_binary_logs()
        active = logs[-1] if logs else None
    except Exception as e:
        console.print(f"[yellow]Could not query active binlog segment: {e}[/yellow]")
    finally:
        await server.close()

    result = cleanup_binlogs(BackupLayout(settings), keep=keep, active_segment=active)
    if result.floor is None:
        console.print("[yellow]No binlog floor determined; nothing deleted[/yellow]")
    else:
        console.print(f"Binlog floor: [bold cyan]{result.floor}[/bold cyan]")
    console.print(
        f"[bold green]v[/bold green] Deleted {len(result.deleted)} segment(s), "
        f"freed {format_size(result.freed_bytes)}"
    )
    return ExitCode.OK


async def _async_health(args: argparse.Namespace) -> int:
    """Async implementation for health command."""
    settings = _prepare(args, "health")
    server = get_server_client(settings)
    try:
        checks = await run_health_check(settings, server, get_container(settings))
    finally:
        await server.close()

    table = Table(title="MariaDB Backup System Health Check", show_header=True, header_style="bold")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Detail")
    styles = {"ok": "green", "warning": "yellow", "error": "red"}
    for check in checks:
        style = styles[check.status]
        table.add_row(check.name, f"[{style}]{check.status.upper()}[/{style}]", check.detail)
    console.print(table)

    if any(check.status == "error" for check in checks):
        return ExitCode.CONNECTIVITY
    return ExitCode.OK


# ============================================================================
# Sync command wrappers
# ============================================================================


@handle_errors
def cmd_backup(args: argparse.Namespace) -> int:
    """Run a full or incremental backup.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_backup(args))


@handle_errors
def cmd_restore(args: argparse.Namespace) -> int:
    """Restore one or all databases.

    Wraps the async implementation with ``asyncio.run()``.
    """
    return asyncio.run(_async_restore(args))


@handle_errors
def cmd_cleanup_backups(args: argparse.Namespace) -> int:
    """Delete full backup generations beyond retention.

    Reads only local state -- no server calls.
    """
    settings = _prepare(args, "cleanup_backups")
    keep = args.keep or settings.keep_backup_generations
    result = cleanup_backups(BackupLayout(settings), keep=keep)
    console.print(
        f"[bold green]v[/bold green] Deleted {len(result.deleted)} file(s), "
        f"freed {format_size(result.freed_bytes)}"
    )
    return ExitCode.OK


@handle_errors
def cmd_cleanup_binlogs(args: argparse.Namespace) -> int:
    """Delete staged binlog segments below the retention floor."""
    return asyncio.run(_async_cleanup_binlogs(args))


@handle_errors
def cmd_health(args: argparse.Namespace) -> int:
    """Check prerequisites and print a status table."""
    return asyncio.run(_async_health(args))


@handle_errors
def cmd_clear_logs(args: argparse.Namespace) -> int:
    """Truncate the command log files."""
    cleared, skipped = clear_logs(args.log_dir)
    console.print(
        f"[bold green]v[/bold green] Cleared {cleared} log file(s) in {args.log_dir}"
        + (f", {skipped} already empty" if skipped else "")
    )
    return ExitCode.OK


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mariadb-backup",
        description="Backup, restore and retention for MariaDB running in Docker",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="key=value settings file (default: ./.env if present)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log debug output",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser("backup", help="Create a full or incremental backup")
    mode = p_backup.add_mutually_exclusive_group(required=True)
    mode.add_argument("--full", action="store_true", help="Dump every database")
    mode.add_argument("--incremental", action="store_true", help="Extract binlog changes since the last backup")
    p_backup.add_argument("--database", help="Back up only this database")
    p_backup.add_argument(
        "--include-empty",
        action="store_true",
        help="Also back up databases without tables",
    )
    p_backup.add_argument("--key", type=Path, default=None, help="Encryption key file")
    p_backup.add_argument("--no-compress", action="store_true", help="Skip gzip compression")
    p_backup.add_argument("--no-checksums", action="store_true", help="Skip sha256 sidecars")
    p_backup.set_defaults(func=cmd_backup)

    # restore command
    p_restore = subparsers.add_parser("restore", help="Restore from backup with optional PITR")
    p_restore.add_argument("--database", help="Database name, or ALL")
    p_restore.add_argument("--backup-file", help="Backup file path, or LATEST")
    p_restore.add_argument("--last", action="store_true", help="Use the most recent backup")
    p_restore.add_argument(
        "--to-timestamp",
        type=parse_timestamp_arg,
        default=None,
        help='Stop binlog replay at "YYYY-MM-DD HH:MM:SS"',
    )
    p_restore.add_argument("--no-binlogs", action="store_true", help="Restore the full backup only")
    p_restore.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first failed binlog replay",
    )
    p_restore.add_argument("--key", type=Path, default=None, help="Decryption key file")
    p_restore.add_argument(
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Log debug output",
    )
    p_restore.add_argument("--debug", action="store_true", help="Enable debug output")
    p_restore.set_defaults(func=cmd_restore)

    # cleanup-backups command
    p_cleanup = subparsers.add_parser("cleanup-backups", help="Delete old full backup generations")
    p_cleanup.add_argument("--keep", type=positive_int, default=None, help="Generations to keep (default 7)")
    p_cleanup.set_defaults(func=cmd_cleanup_backups)

    # cleanup-binlogs command
    p_binlogs = subparsers.add_parser("cleanup-binlogs", help="Delete staged binlogs no longer needed")
    p_binlogs.add_argument("--keep", type=positive_int, default=None, help="Generations to keep (default 2)")
    p_binlogs.set_defaults(func=cmd_cleanup_binlogs)

    # encrypt command
    p_encrypt = subparsers.add_parser("encrypt", help="Encrypt or decrypt a file")
    add_encrypt_arguments(p_encrypt)
    p_encrypt.set_defaults(func=cmd_encrypt)

    # health command
    p_health = subparsers.add_parser("health", help="Check Docker, server and local state")
    p_health.set_defaults(func=cmd_health)

    # clear-logs command
    p_logs = subparsers.add_parser("clear-logs", help="Truncate the command log files")
    p_logs.add_argument("--log-dir", type=Path, default=Path("./logs"), help="Log directory (default ./logs)")
    p_logs.set_defaults(func=cmd_clear_logs)

    return parser


def main() -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
