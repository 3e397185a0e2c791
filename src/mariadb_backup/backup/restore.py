"""Restore coordinator with optional point-in-time recovery.

A restore verifies and decrypts a full artifact, imports it into the
server, then replays staged binlog segments recorded after the artifact's
coordinate.  With a target timestamp every replay stops at that instant.

Usage:
    from mariadb_backup.backup.restore import run_restore

    summary = await run_restore(
        settings, server, container,
        database="app_db",
        to_timestamp=datetime(2024, 5, 1, 12, 0),
    )
    print(summary.restored_count, summary.segments_applied)
"""

import asyncio
import gzip
import logging
import posixpath
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from mariadb_backup.adapters.base import ServerClient
from mariadb_backup.adapters.container import DockerContainer
from mariadb_backup.backup.encryption import decrypt_bytes, read_passphrase
from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.backup.lock import StateLock
from mariadb_backup.backup.models import (
    BackupArtifact,
    BackupMode,
    DatabaseRestoreResult,
    RestoreSummary,
    SegmentReplay,
)
from mariadb_backup.backup.runner import BINLOG_TOOLS, CONTAINER_TMP_DIR
from mariadb_backup.config.models import BackupSettings
from mariadb_backup.errors import (
    ChecksumMismatchError,
    MariaDBBackupError,
    RestoreError,
    ToolError,
    UnknownDatabaseError,
)

logger = logging.getLogger(__name__)

ALL_DATABASES = "ALL"
LATEST = "LATEST"
CLIENT_TOOLS = ("mariadb", "mysql")

# Receives the database and its full artifacts newest first
BackupChooser = Callable[[str, list[BackupArtifact]], BackupArtifact]


def wrap_import(sql: bytes) -> bytes:
    """Run a dump as one transaction where the statements allow it."""
    return b"SET autocommit=0;\n" + sql + b"\nCOMMIT;\n"


class RestoreCoordinator:
    """Restores databases from local artifacts and staged segments.

    Args:
        settings: Loaded settings.
        server: SQL client for the server.
        container: Tool runner for the server's container.
        key_file: Decryption key file (``settings.key_file`` if None).
        strict: Abort on the first failed segment replay instead of warning
            (``settings.strict_binlog_replay`` if None).
    """

    def __init__(
        self,
        settings: BackupSettings,
        server: ServerClient,
        container: DockerContainer,
        key_file: Path | None = None,
        strict: bool | None = None,
    ) -> None:
        self.settings = settings
        self.server = server
        self.container = container
        self.layout = BackupLayout(settings)
        self.key_file = key_file or settings.key_file
        self.strict = settings.strict_binlog_replay if strict is None else strict
        self._tools: dict[tuple[str, ...], str] = {}

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def available_backups(self, database: str) -> list[BackupArtifact]:
        """Full artifacts for ``database``, newest first."""
        return list(reversed(self.layout.list_full_backups(database)))

    def select_backup(
        self,
        database: str,
        backup_file: str | Path | None = None,
        chooser: BackupChooser | None = None,
    ) -> BackupArtifact:
        """Pick the artifact to restore.

        Args:
            database: Target database.
            backup_file: Artifact path or name, or ``"LATEST"``.  When None,
                ``chooser`` decides, falling back to the newest artifact.
            chooser: Interactive selection callback.

        Raises:
            UnknownDatabaseError: If the database has no full backups.
            RestoreError: If ``backup_file`` is missing or not an artifact.
        """
        if backup_file is not None and str(backup_file) != LATEST:
            return self._explicit_backup(database, Path(backup_file))

        backups = self.available_backups(database)
        if not backups:
            raise UnknownDatabaseError(f"No backups found for database '{database}'")
        if backup_file is None and chooser is not None:
            return chooser(database, backups)
        return backups[0]

    def _explicit_backup(self, database: str, path: Path) -> BackupArtifact:
        candidate = path if path.is_file() else self.layout.backup_dir / path.name
        if not candidate.is_file():
            raise RestoreError(f"Backup file '{path}' not found")
        artifact = BackupArtifact.parse(candidate)
        if artifact is None or artifact.mode is not BackupMode.FULL:
            raise RestoreError(f"'{candidate.name}' is not a full backup artifact")
        if artifact.database != database:
            logger.warning(f"Backup {candidate.name} was taken from {artifact.database}, restoring into {database}")
        return artifact

    # ------------------------------------------------------------------
    # Replay planning
    # ------------------------------------------------------------------

    def plan_replay(
        self,
        artifact: BackupArtifact,
        to_timestamp: datetime | None = None,
    ) -> list[SegmentReplay]:
        """Segments to replay after restoring ``artifact``.

        Staged segments at or after the artifact's coordinate are replayed
        in sequence order; the coordinate's own segment starts at the
        recorded position.  With ``to_timestamp`` every replay stops at that
        instant and segments beyond the next full generation's coordinate
        are dropped.  A target before the artifact's timestamp yields an
        empty plan.
        """
        marker = self.layout.coordinate_for(artifact)
        if marker is None:
            logger.warning(
                f"No binlog coordinate recorded for {artifact.path.name}; restoring the full backup only"
            )
            return []
        if to_timestamp is not None and to_timestamp < artifact.timestamp:
            logger.info(
                f"Target time {to_timestamp} precedes backup time {artifact.timestamp}; no binlogs to replay"
            )
            return []

        segments = [
            s for s in self.layout.list_staged_segments()
            if s.base == marker.log_file.base and s >= marker.log_file
        ]

        if to_timestamp is not None:
            newer = [
                a for a in self.layout.list_full_backups(artifact.database)
                if a.timestamp > artifact.timestamp
            ]
            if newer and to_timestamp < newer[0].timestamp:
                end = self.layout.coordinate_for(newer[0])
                if end is not None:
                    segments = [s for s in segments if s <= end.log_file]

        if segments and segments[0] != marker.log_file:
            logger.warning(
                f"Segment {marker.log_file.name} holding the backup coordinate is not staged; "
                f"replay starts at {segments[0].name}"
            )

        return [
            SegmentReplay(
                segment=segment,
                path=self.layout.segment_path(segment),
                start_position=marker.position if segment == marker.log_file else None,
                stop_datetime=to_timestamp,
            )
            for segment in segments
        ]

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _tool(self, candidates: tuple[str, ...]) -> str:
        if candidates not in self._tools:
            tool = await self.container.find_tool(candidates)
            if tool is None:
                raise RestoreError(f"Neither {' nor '.join(candidates)} found in container {self.container.name}")
            self._tools[candidates] = tool
        return self._tools[candidates]

    def _decrypt(self, artifact: BackupArtifact) -> bytes:
        if not self.layout.verify_checksum(artifact.path):
            logger.warning(f"No checksum found for {artifact.path.name}; skipping verification")
        data = decrypt_bytes(artifact.path.read_bytes(), read_passphrase(self.key_file))
        if artifact.compressed:
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as e:
                raise RestoreError(f"Could not decompress {artifact.path.name}: {e}") from e
        return data

    async def apply_backup(self, artifact: BackupArtifact, database: str | None = None) -> int:
        """Verify, decrypt and import a full artifact.

        Args:
            artifact: Full artifact to restore.
            database: Target database (the artifact's own if None).

        Returns:
            Size of the artifact in bytes.

        Raises:
            ChecksumMismatchError: If the artifact fails verification.
            RestoreError: If the import fails.
        """
        database = database or artifact.database
        logger.info(f"Restoring {database} from {artifact.path.name}")
        sql = await asyncio.to_thread(self._decrypt, artifact)

        try:
            await self.server.create_database(database)
        except Exception as e:
            raise RestoreError(f"Could not create database {database}: {e}") from e

        client = await self._tool(CLIENT_TOOLS)
        try:
            await self.container.exec([client, "-u", self.settings.mariadb_user, database], stdin=wrap_import(sql))
        except ToolError as e:
            raise RestoreError(f"Import into {database} failed: {e}") from e
        logger.info(f"Full backup restored into {database}")
        return artifact.path.stat().st_size

    async def replay(
        self,
        database: str,
        steps: list[SegmentReplay],
        source_database: str | None = None,
    ) -> tuple[int, int, int]:
        """Apply planned segment replays to ``database``.

        Events are filtered by ``source_database`` (the database the
        binlogs were written for), defaulting to ``database``.

        Returns:
            Tuple of (applied, failed, bytes replayed).

        Raises:
            RestoreError: On the first failed segment in strict mode.  A staged
                copy that fails its checksum counts as a failed segment.
        """
        applied = failed = replayed_bytes = 0
        if not steps:
            return applied, failed, replayed_bytes

        binlog_tool = await self._tool(BINLOG_TOOLS)
        client = await self._tool(CLIENT_TOOLS)
        for step in steps:
            name = step.segment.name
            remote = posixpath.join(CONTAINER_TMP_DIR, name)
            try:
                self.layout.verify_checksum(step.path)
                await self.container.copy_to(step.path, remote)
                try:
                    sql = await self.container.exec(
                        [binlog_tool, *step.binlog_options(source_database or database), remote]
                    )
                finally:
                    await self.container.remove(remote)
                await self.container.exec([client, "-u", self.settings.mariadb_user, database], stdin=sql)
            except (ChecksumMismatchError, ToolError, OSError) as e:
                if self.strict:
                    raise RestoreError(f"Replay of {name} into {database} failed: {e}") from e
                logger.warning(f"Replay of {name} into {database} failed, continuing: {e}")
                failed += 1
                continue
            applied += 1
            replayed_bytes += step.path.stat().st_size
            logger.info(f"Replayed {name} into {database}")
        return applied, failed, replayed_bytes

    async def restore_database(
        self,
        database: str,
        backup_file: str | Path | None = None,
        to_timestamp: datetime | None = None,
        replay_binlogs: bool = True,
        chooser: BackupChooser | None = None,
    ) -> DatabaseRestoreResult:
        """Restore one database and replay its binlogs.

        Raises:
            UnknownDatabaseError: If the database has no backups.
            ChecksumMismatchError: If the artifact fails verification.
            RestoreError: If the import, or a strict replay, fails.
        """
        artifact = self.select_backup(database, backup_file, chooser)
        result = DatabaseRestoreResult(database=database, backup_file=artifact.path)
        result.backup_bytes = await self.apply_backup(artifact, database)

        if replay_binlogs:
            steps = self.plan_replay(artifact, to_timestamp)
            logger.info(f"Replaying {len(steps)} binlog segment(s) into {database}")
            applied, failed, replayed = await self.replay(database, steps, artifact.database)
            result.segments_applied = applied
            result.segments_failed = failed
            result.binlog_bytes = replayed

        result.status = "success"
        return result

    async def restore_all(
        self,
        to_timestamp: datetime | None = None,
        replay_binlogs: bool = True,
    ) -> list[DatabaseRestoreResult]:
        """Restore every database with backups from its newest artifact.

        Failures are recorded per database and the run continues.
        """
        results = []
        databases = self.layout.databases_with_backups()
        if not databases:
            raise UnknownDatabaseError(f"No backups found in {self.layout.backup_dir}")
        for database in databases:
            try:
                results.append(
                    await self.restore_database(
                        database,
                        backup_file=LATEST,
                        to_timestamp=to_timestamp,
                        replay_binlogs=replay_binlogs,
                    )
                )
            except MariaDBBackupError as e:
                logger.error(f"Restore of {database} failed: {e}")
                results.append(DatabaseRestoreResult(database=database, status="failed", message=str(e)))
        return results


async def run_restore(
    settings: BackupSettings,
    server: ServerClient,
    container: DockerContainer,
    database: str = ALL_DATABASES,
    backup_file: str | Path | None = None,
    to_timestamp: datetime | None = None,
    replay_binlogs: bool = True,
    strict: bool | None = None,
    key_file: Path | None = None,
    chooser: BackupChooser | None = None,
) -> RestoreSummary:
    """Restore one database, or all of them with ``database="ALL"``.

    Args:
        settings: Loaded settings.
        server: SQL client for the server.
        container: Tool runner for the server's container.
        database: Database name or ``"ALL"``.
        backup_file: Artifact path/name or ``"LATEST"`` (single database).
        to_timestamp: Point in time to stop binlog replay at.
        replay_binlogs: Replay staged binlogs after the full restore.
        strict: Abort on a failed segment replay.
        key_file: Decryption key file.
        chooser: Interactive artifact selection callback.

    Returns:
        RestoreSummary with per-database results and totals.

    Raises:
        LockHeldError: If another backup, restore or cleanup is running.

    Example:
        summary = await run_restore(settings, server, container, "ALL")
        if summary.error_count:
            print("Some databases failed to restore")
    """
    coordinator = RestoreCoordinator(settings, server, container, key_file=key_file, strict=strict)
    started = time.monotonic()
    with StateLock.for_backup_dir(settings.backup_dir):
        if database == ALL_DATABASES:
            results = await coordinator.restore_all(to_timestamp, replay_binlogs)
        else:
            results = [
                await coordinator.restore_database(
                    database,
                    backup_file=backup_file,
                    to_timestamp=to_timestamp,
                    replay_binlogs=replay_binlogs,
                    chooser=chooser,
                )
            ]
    return RestoreSummary(
        results=results,
        to_timestamp=to_timestamp,
        duration_seconds=time.monotonic() - started,
    )
