"""Full and incremental backup coordinator.

A full backup dumps every target database with the server's dump tool
inside the container, records the binlog coordinate the dump is consistent
with, and stages rotated binlog segments to ``binlogs/``.  An incremental
backup extracts, per database, the binlog events between the last recorded
coordinate and the current one.

Artifacts are gzip-compressed, encrypted and checksummed before they land
under their final name; intermediates are always removed.

Usage:
    from mariadb_backup.backup.runner import run_backup

    result = await run_backup(settings, server, container, BackupMode.FULL)
    if not result.success:
        print(f"{result.error_count} database(s) failed")
"""

import asyncio
import gzip
import logging
import os
import posixpath
import re
import shutil
from datetime import datetime
from pathlib import Path

from mariadb_backup.adapters.base import ServerClient
from mariadb_backup.adapters.container import DockerContainer
from mariadb_backup.backup.encryption import encrypt_file, ensure_key
from mariadb_backup.backup.layout import RESERVED_DATABASES, BackupLayout
from mariadb_backup.backup.lock import StateLock
from mariadb_backup.backup.models import (
    BackupMode,
    BackupRunResult,
    BinlogFile,
    Coordinate,
    DatabaseBackupResult,
    SegmentReplay,
    format_timestamp,
)
from mariadb_backup.config.models import BackupSettings
from mariadb_backup.errors import (
    BackupError,
    ChecksumMismatchError,
    MariaDBBackupError,
    MissingCoordinateError,
    ToolError,
    UnknownDatabaseError,
)

logger = logging.getLogger(__name__)

DUMP_TOOLS = ("mariadb-dump", "mysqldump")
BINLOG_TOOLS = ("mariadb-binlog", "mysqlbinlog")

# Tried after the directory of log_bin_basename
CONTAINER_BINLOG_DIRS = ("/var/lib/mysql/binlogs", "/var/lib/mysql")
CONTAINER_TMP_DIR = "/tmp"

_CHANGE_MASTER = re.compile(
    r"^-- CHANGE MASTER TO MASTER_LOG_FILE='(?P<file>[^']+)',\s*MASTER_LOG_POS=(?P<pos>\d+)"
)

# Event types whose BINLOG '...' payload carries row changes
_ROW_EVENTS = ("Table_map", "Write_rows", "Update_rows", "Delete_rows", "Annotate_rows")

# Statements mariadb-binlog emits around every stream
_BOILERPLATE = ("/*!", "DELIMITER", "SET ", "ROLLBACK", "BEGIN", "COMMIT", "use ", "START TRANSACTION")


# ============================================================================
# Output parsing
# ============================================================================


def read_dump_coordinate(path: Path) -> Coordinate | None:
    """Coordinate from a dump's ``-- CHANGE MASTER TO`` header line.

    Returns:
        The coordinate, or None if the dump carries no usable line.
    """
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            match = _CHANGE_MASTER.match(line)
            if match:
                try:
                    return Coordinate.of(match.group("file"), int(match.group("pos")))
                except ValueError:
                    logger.warning(f"Could not extract valid binlog information from {path.name}")
                    return None
    return None


def is_empty_replay(data: bytes) -> bool:
    """True if a ``mariadb-binlog`` stream contains no data statements.

    Comments, session directives, transaction brackets and the format
    description ``BINLOG`` block are not data.
    """
    last_header = ""
    in_binlog_block = False
    for raw in data.decode("utf-8", errors="replace").splitlines():
        line = raw.strip()
        if in_binlog_block:
            if line.endswith("'/*!*/;") or line.endswith("';"):
                in_binlog_block = False
            continue
        if not line:
            continue
        if line.startswith("#"):
            if re.match(r"^#\d{6}\s", line):
                last_header = line
            continue
        if line.startswith("BINLOG '"):
            if any(event in last_header for event in _ROW_EVENTS):
                return False
            in_binlog_block = not (line.endswith("'/*!*/;") or line.endswith("';"))
            continue
        if line.startswith(_BOILERPLATE):
            continue
        return False
    return True


def segments_between(start: Coordinate, end: Coordinate) -> list[SegmentReplay]:
    """Replay steps covering the half-open range ``(start, end]``.

    The first segment starts at ``start.position`` and the last stops at
    ``end.position``; segments in between are read whole.

    Raises:
        BackupError: If the coordinates belong to differently named logs.
    """
    first, last = start.log_file, end.log_file
    if first.base != last.base:
        raise BackupError(f"Binlog base name changed from {first.base} to {last.base}")
    steps = []
    for sequence in range(first.sequence, last.sequence + 1):
        segment = BinlogFile(base=first.base, sequence=sequence, width=first.width)
        steps.append(
            SegmentReplay(
                segment=segment,
                start_position=start.position if sequence == first.sequence else None,
                stop_position=end.position if sequence == last.sequence else None,
            )
        )
    return steps


def _gzip_file(source: Path) -> Path:
    target = source.with_name(source.name + ".gz")
    with source.open("rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)
    return target


# ============================================================================
# Coordinator
# ============================================================================


class BackupRunner:
    """Runs one backup invocation against a server and its container.

    Args:
        settings: Loaded settings.
        server: SQL client for status queries.
        container: Tool runner for the server's container.
        key_file: Encryption key file (``settings.key_file`` if None).
        compress: gzip artifacts before encryption.
        checksums: Write sha256 sidecars for artifacts and staged segments.
    """

    def __init__(
        self,
        settings: BackupSettings,
        server: ServerClient,
        container: DockerContainer,
        key_file: Path | None = None,
        compress: bool = True,
        checksums: bool = True,
    ) -> None:
        self.settings = settings
        self.server = server
        self.container = container
        self.layout = BackupLayout(settings)
        self.key_file = key_file or settings.key_file
        self.compress = compress
        self.checksums = checksums
        self._dump_tool: str | None = None
        self._binlog_tool: str | None = None

    async def run(
        self,
        mode: BackupMode,
        database: str | None = None,
        include_empty: bool = False,
        timestamp: datetime | None = None,
    ) -> BackupRunResult:
        """Back up every target database in ``mode``.

        Per-database failures are recorded in the result and the run
        continues with the next database.

        Raises:
            UnknownDatabaseError: If ``database`` is not on the server.
            LockHeldError: If another backup or cleanup run is active.
        """
        timestamp = timestamp or datetime.now().replace(microsecond=0)
        result = BackupRunResult(mode=mode)

        with StateLock.for_backup_dir(self.settings.backup_dir):
            ensure_key(self.key_file)
            targets, skipped = await self.resolve_databases(database, include_empty)
            result.results.extend(
                DatabaseBackupResult(database=name, mode=mode, status="skipped", message="empty database")
                for name in skipped
            )
            if not targets:
                logger.warning("No databases to back up")
                return result

            logger.info(f"Starting {mode.value} backup of {len(targets)} database(s) at {format_timestamp(timestamp)}")
            if mode is BackupMode.FULL:
                binlog_on = await self._binlog_enabled()
                if binlog_on:
                    await self._flush_binary_logs()
                    result.staged_segments = await self.stage_segments()
                else:
                    logger.warning("Binary logging is not enabled - backups will not include binary log information")
                result.results.extend(await self._run_full(targets, timestamp))
            else:
                result.results.extend(await self._run_incremental(targets, timestamp))
                if await self._binlog_enabled():
                    await self._flush_binary_logs()
                    result.staged_segments = await self.stage_segments()

        logger.info(
            f"{mode.value.capitalize()} backup finished: "
            f"{sum(1 for r in result.results if r.status == 'success')} succeeded, "
            f"{result.error_count} failed"
        )
        return result

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    async def resolve_databases(
        self,
        database: str | None = None,
        include_empty: bool = False,
    ) -> tuple[list[str], list[str]]:
        """Databases to back up and those skipped as empty.

        Falls back to ``MARIADB_DATABASE1..5`` when the server returns no
        list.

        Raises:
            UnknownDatabaseError: If ``database`` is not among the candidates.
        """
        try:
            names = await self.server.list_databases()
        except Exception as e:
            logger.warning(f"Could not list databases on server: {e}")
            names = []
        names = [n for n in names if n not in RESERVED_DATABASES]
        if not names:
            names = self.settings.fallback_databases
            logger.warning(f"Using configured fallback databases: {', '.join(names) or 'none'}")

        if database is not None:
            if database not in names:
                raise UnknownDatabaseError(f"Database '{database}' not found on server")
            names = [database]

        if include_empty:
            return names, []

        targets, skipped = [], []
        for name in names:
            try:
                tables = await self.server.table_count(name)
            except Exception as e:
                logger.warning(f"Could not count tables in {name}: {e}")
                tables = None
            if tables == 0:
                logger.info(f"Skipping empty database {name}")
                skipped.append(name)
            else:
                targets.append(name)
        return targets, skipped

    # ------------------------------------------------------------------
    # Full mode
    # ------------------------------------------------------------------

    async def _run_full(self, targets: list[str], timestamp: datetime) -> list[DatabaseBackupResult]:
        try:
            await self.dump_tool()
        except BackupError as e:
            return [
                DatabaseBackupResult(database=name, mode=BackupMode.FULL, status="failed", message=str(e))
                for name in targets
            ]

        semaphore = asyncio.Semaphore(self.settings.parallel_jobs)

        async def bounded(name: str) -> DatabaseBackupResult:
            async with semaphore:
                return await self.full_backup(name, timestamp)

        return list(await asyncio.gather(*(bounded(name) for name in targets)))

    async def full_backup(self, database: str, timestamp: datetime) -> DatabaseBackupResult:
        """Dump, compress, encrypt and checksum one database, then write its marker."""
        ts = format_timestamp(timestamp)
        plain = self.layout.backup_dir / f"{database}_{BackupMode.FULL.value}_{ts}.sql"
        marker = self.layout.full_marker_path(database, timestamp)
        logger.info(f"Starting full backup for {database}")
        try:
            coordinate = await self._dump(database, plain)
            artifact = await asyncio.to_thread(self._finalize, plain)
            self._write_marker(artifact, marker, coordinate)
        except (MariaDBBackupError, OSError) as e:
            logger.error(f"Error creating full backup for {database}: {e}")
            return DatabaseBackupResult(database=database, mode=BackupMode.FULL, status="failed", message=str(e))
        finally:
            plain.unlink(missing_ok=True)

        if coordinate is None:
            logger.warning(f"No binlog information for {database}; incremental backups will need a new full backup")
        else:
            logger.info(f"Binlog info saved: {marker.name} ({coordinate})")
        logger.info(f"Full backup for {database} completed: {artifact.name}")
        return DatabaseBackupResult(
            database=database,
            mode=BackupMode.FULL,
            status="success",
            artifact=artifact,
            coordinate=coordinate,
        )

    async def _dump(self, database: str, plain: Path) -> Coordinate | None:
        tool = await self.dump_tool()
        base = [tool, "--single-transaction", "-u", self.settings.mariadb_user]
        try:
            await self.container.exec_to_file([*base, "--master-data=2", database], plain)
        except ToolError as e:
            logger.warning(f"Dump with binary log information failed for {database} ({e}); retrying without")
            await self.container.exec_to_file([*base, database], plain)
            return await self.current_coordinate(staged_fallback=False)

        coordinate = read_dump_coordinate(plain)
        if coordinate is None:
            logger.warning(f"No binlog information found in dump of {database}")
        return coordinate

    def _write_marker(self, artifact: Path, marker: Path, coordinate: Coordinate | None) -> None:
        """Write the marker of a new artifact, removing the artifact if that fails."""
        try:
            self.layout.write_marker(marker, coordinate)
        except OSError:
            self.layout.remove_with_sidecars(artifact)
            raise

    def _finalize(self, plain: Path) -> Path:
        source = plain
        try:
            if self.compress:
                source = _gzip_file(plain)
                plain.unlink()
            checksum_dir = self.layout.checksum_dir if self.checksums else None
            return encrypt_file(source, self.key_file, checksum_dir=checksum_dir, write_checksum=self.checksums)
        finally:
            source.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Incremental mode
    # ------------------------------------------------------------------

    async def _run_incremental(self, targets: list[str], timestamp: datetime) -> list[DatabaseBackupResult]:
        current = await self.current_coordinate()
        results = []
        for name in targets:
            try:
                if current is None:
                    raise BackupError("Could not determine the current binlog coordinate")
                results.append(await self.incremental_backup(name, current, timestamp))
            except MariaDBBackupError as e:
                logger.error(f"Incremental backup for {name} failed: {e}")
                results.append(
                    DatabaseBackupResult(database=name, mode=BackupMode.INCREMENTAL, status="failed", message=str(e))
                )
        return results

    async def incremental_backup(
        self,
        database: str,
        current: Coordinate,
        timestamp: datetime,
    ) -> DatabaseBackupResult:
        """Extract binlog events for ``database`` in ``(last, current]``.

        Raises:
            MissingCoordinateError: If no previous coordinate is recorded.
            BackupError: If extraction or artifact creation fails.
        """
        latest = self.layout.latest_marker(database)
        if latest is None:
            raise MissingCoordinateError(
                f"No previous binlog coordinate for {database}; run a full backup first"
            )
        _, last = latest

        if current == last:
            logger.info(f"No new binlog events for {database} since {last}")
            return DatabaseBackupResult(
                database=database, mode=BackupMode.INCREMENTAL, status="skipped",
                coordinate=current, message="no new events",
            )
        if current < last:
            raise BackupError(f"Current coordinate {current} precedes last recorded {last} for {database}")

        logger.info(f"Extracting binlog events for {database} from {last} to {current}")
        tool = await self.binlog_tool()
        stream = bytearray()
        for step in segments_between(last, current):
            stream += await self._extract(tool, database, step)

        if is_empty_replay(bytes(stream)):
            logger.info(f"Binlog range for {database} contains no statements; skipping")
            return DatabaseBackupResult(
                database=database, mode=BackupMode.INCREMENTAL, status="skipped",
                coordinate=current, message="no statements for database",
            )

        ts = format_timestamp(timestamp)
        plain = self.layout.backup_dir / f"{database}_{BackupMode.INCREMENTAL.value}_{ts}.sql"
        marker = self.layout.incremental_marker_path(database, timestamp)
        try:
            plain.write_bytes(bytes(stream))
            artifact = await asyncio.to_thread(self._finalize, plain)
            self._write_marker(artifact, marker, current)
        except OSError as e:
            raise BackupError(f"Could not write incremental backup for {database}: {e}") from e
        finally:
            plain.unlink(missing_ok=True)
        logger.info(f"Incremental backup for {database} completed: {artifact.name}")
        return DatabaseBackupResult(
            database=database,
            mode=BackupMode.INCREMENTAL,
            status="success",
            artifact=artifact,
            coordinate=current,
        )

    async def _extract(self, tool: str, database: str, step: SegmentReplay) -> bytes:
        staged = self.layout.segment_path(step.segment)
        if staged.is_file():
            try:
                self.layout.verify_checksum(staged)
            except ChecksumMismatchError as e:
                logger.warning(f"{e} Reading {step.segment.name} from the container instead")
            else:
                remote = posixpath.join(CONTAINER_TMP_DIR, step.segment.name)
                await self.container.copy_to(staged, remote)
                try:
                    return await self.container.exec([tool, *step.binlog_options(database), remote])
                finally:
                    await self.container.remove(remote)

        for directory in await self._container_binlog_dirs():
            try:
                return await self.container.exec(
                    [tool, *step.binlog_options(database), posixpath.join(directory, step.segment.name)]
                )
            except ToolError as e:
                logger.debug(f"{step.segment.name} not readable in {directory}: {e}")
        raise BackupError(f"Binlog segment {step.segment.name} not found in staging or in the container")

    # ------------------------------------------------------------------
    # Binlog helpers
    # ------------------------------------------------------------------

    async def dump_tool(self) -> str:
        if self._dump_tool is None:
            self._dump_tool = await self._find_tool(DUMP_TOOLS)
            logger.info(f"Using {self._dump_tool} for backup")
        return self._dump_tool

    async def binlog_tool(self) -> str:
        if self._binlog_tool is None:
            self._binlog_tool = await self._find_tool(BINLOG_TOOLS)
        return self._binlog_tool

    async def _find_tool(self, candidates: tuple[str, ...]) -> str:
        tool = await self.container.find_tool(candidates)
        if tool is not None:
            return tool
        raise BackupError(f"Neither {' nor '.join(candidates)} found in container {self.container.name}")

    async def _binlog_enabled(self) -> bool:
        try:
            return await self.server.binlog_enabled()
        except Exception as e:
            logger.warning(f"Could not determine whether binary logging is enabled: {e}")
            return False

    async def _flush_binary_logs(self) -> None:
        try:
            await self.server.flush_binary_logs()
            logger.info("Binary logs flushed")
        except Exception as e:
            logger.warning(f"Failed to flush binary logs - continuing anyway: {e}")

    async def _container_binlog_dirs(self) -> list[str]:
        try:
            basename = await self.server.binlog_basename()
        except Exception as e:
            logger.debug(f"Could not read log_bin_basename: {e}")
            basename = None
        directories = [posixpath.dirname(basename)] if basename else []
        for fallback in CONTAINER_BINLOG_DIRS:
            if fallback not in directories:
                directories.append(fallback)
        return directories

    async def current_coordinate(self, staged_fallback: bool = True) -> Coordinate | None:
        """Current server coordinate, or the end of the newest staged segment."""
        try:
            coordinate = await self.server.master_status()
        except Exception as e:
            logger.warning(f"Could not get master status: {e}")
            coordinate = None
        if coordinate is not None or not staged_fallback:
            return coordinate

        staged = self.layout.list_staged_segments()
        if not staged:
            return None
        newest = staged[-1]
        size = self.layout.segment_path(newest).stat().st_size
        logger.warning(f"Using newest staged segment as current coordinate: {newest.name}:{size}")
        return Coordinate(log_file=newest, position=size)

    async def stage_segments(self) -> list[str]:
        """Copy rotated binlog segments from the container into ``binlogs/``.

        The active (last listed) segment and segments already staged are
        skipped.  Failures are logged as warnings.

        Returns:
            Names of the segments staged by this call.
        """
        try:
            logs = await self.server.list_binary_logs()
        except Exception as e:
            logger.warning(f"Could not list binary logs: {e}")
            return []

        rotated = [name for name in logs[:-1] if BinlogFile.is_segment_name(name)]
        if not rotated:
            return []

        self.layout.binlog_dir.mkdir(parents=True, exist_ok=True)
        directories = await self._container_binlog_dirs()
        staged = []
        for name in rotated:
            target = self.layout.segment_path(name)
            if target.exists():
                continue
            if await self._copy_segment(name, directories, target):
                if self.checksums:
                    self.layout.write_checksum(target)
                staged.append(name)
                logger.info(f"Staged binlog segment {name}")
            else:
                logger.warning(f"Binlog file {name} not found in container")
        return staged

    async def _copy_segment(self, name: str, directories: list[str], target: Path) -> bool:
        partial = target.with_name(f".{target.name}.part")
        for directory in directories:
            try:
                await self.container.copy_from(posixpath.join(directory, name), partial)
            except ToolError:
                continue
            os.replace(partial, target)
            return True
        partial.unlink(missing_ok=True)
        return False


async def run_backup(
    settings: BackupSettings,
    server: ServerClient,
    container: DockerContainer,
    mode: BackupMode,
    database: str | None = None,
    include_empty: bool = False,
    key_file: Path | None = None,
    compress: bool = True,
    checksums: bool = True,
) -> BackupRunResult:
    """Run one full or incremental backup.

    Args:
        settings: Loaded settings.
        server: SQL client for the server.
        container: Tool runner for the server's container.
        mode: ``BackupMode.FULL`` or ``BackupMode.INCREMENTAL``.
        database: Restrict the run to one database.
        include_empty: Also back up databases without tables.
        key_file: Encryption key file (``settings.key_file`` if None).
        compress: gzip artifacts before encryption.
        checksums: Write sha256 sidecars.

    Returns:
        BackupRunResult with one entry per considered database.

    Example:
        result = await run_backup(settings, server, container, BackupMode.INCREMENTAL)
        for entry in result.results:
            print(entry.database, entry.status)
    """
    runner = BackupRunner(
        settings,
        server,
        container,
        key_file=key_file,
        compress=compress,
        checksums=checksums,
    )
    return await runner.run(mode, database=database, include_empty=include_empty)
