"""Tests for restore selection, replay planning and application."""

import gzip
from datetime import datetime, timedelta

import pytest

from mariadb_backup.backup.encryption import encrypt_bytes
from mariadb_backup.backup.lock import StateLock
from mariadb_backup.backup.models import BackupMode, Coordinate
from mariadb_backup.backup.restore import LATEST, RestoreCoordinator, run_restore, wrap_import
from mariadb_backup.errors import (
    ChecksumMismatchError,
    LockHeldError,
    RestoreError,
    ToolError,
    UnknownDatabaseError,
)

FULL_TS = datetime(2024, 5, 1, 2, 0, 0)
NEXT_TS = datetime(2024, 5, 2, 2, 0, 0)
DUMP = b"CREATE TABLE `t` (`id` int);\nINSERT INTO `t` VALUES (1);\n"


def _seed_full(layout, database="app_db", ts=FULL_TS, coordinate="mysql-bin.000005 1024", dump=DUMP):
    path = layout.artifact_path(database, BackupMode.FULL, ts)
    path.write_bytes(encrypt_bytes(gzip.compress(dump), b"test-passphrase"))
    layout.write_checksum(path)
    if coordinate is not None:
        log_file, position = coordinate.split()
        layout.write_marker(layout.full_marker_path(database, ts), Coordinate.of(log_file, int(position)))
    return path


def _stage(layout, *names):
    for name in names:
        layout.segment_path(name).write_bytes(b"\xfebin" + name.encode())


def _binlog_exec(fail_segment=None):
    async def side_effect(argv, stdin=None):
        if argv[0] == "mariadb-binlog":
            if fail_segment and argv[-1].endswith(fail_segment):
                raise ToolError(argv, 1, "ERROR: Could not read entry")
            return b"INSERT INTO t VALUES (2);\n"
        return b""
    return side_effect


# ============================================================================
# Selection
# ============================================================================


class TestSelectBackup:
    """Choosing the artifact to restore."""

    def test_latest_by_default(self, settings, layout, server, container):
        _seed_full(layout, ts=FULL_TS)
        newest = _seed_full(layout, ts=NEXT_TS)
        coordinator = RestoreCoordinator(settings, server, container)
        assert coordinator.select_backup("app_db").path == newest
        assert coordinator.select_backup("app_db", LATEST).path == newest

    def test_chooser_receives_newest_first(self, settings, layout, server, container):
        oldest = _seed_full(layout, ts=FULL_TS)
        _seed_full(layout, ts=NEXT_TS)
        seen = []

        def chooser(database, backups):
            seen.append([b.timestamp for b in backups])
            return backups[-1]

        artifact = RestoreCoordinator(settings, server, container).select_backup("app_db", chooser=chooser)

        assert artifact.path == oldest
        assert seen == [[NEXT_TS, FULL_TS]]

    def test_explicit_file_by_name(self, settings, layout, server, container):
        path = _seed_full(layout)
        artifact = RestoreCoordinator(settings, server, container).select_backup("app_db", path.name)
        assert artifact.path == path

    def test_explicit_file_missing(self, settings, layout, server, container):
        with pytest.raises(RestoreError, match="not found"):
            RestoreCoordinator(settings, server, container).select_backup("app_db", "nope.sql.gz.enc")

    def test_explicit_file_must_be_full(self, settings, layout, server, container):
        path = layout.artifact_path("app_db", BackupMode.INCREMENTAL, FULL_TS)
        path.write_bytes(b"x")
        with pytest.raises(RestoreError, match="not a full backup"):
            RestoreCoordinator(settings, server, container).select_backup("app_db", path)

    def test_no_backups(self, settings, server, container):
        with pytest.raises(UnknownDatabaseError):
            RestoreCoordinator(settings, server, container).select_backup("app_db")


# ============================================================================
# Replay planning
# ============================================================================


class TestPlanReplay:
    """Which staged segments follow a full backup."""

    def test_replays_from_recorded_position(self, settings, layout, server, container):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000004", "mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007")
        coordinator = RestoreCoordinator(settings, server, container)

        steps = coordinator.plan_replay(coordinator.select_backup("app_db"))

        assert [s.segment.name for s in steps] == ["mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007"]
        assert [s.start_position for s in steps] == [1024, None, None]
        assert all(s.stop_datetime is None for s in steps)
        assert steps[0].path == layout.segment_path("mysql-bin.000005")

    def test_target_before_backup_is_empty(self, settings, layout, server, container):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005")
        coordinator = RestoreCoordinator(settings, server, container)

        steps = coordinator.plan_replay(coordinator.select_backup("app_db"), FULL_TS - timedelta(minutes=1))

        assert steps == []

    def test_target_stops_at_next_generation(self, settings, layout, server, container):
        first = _seed_full(layout, ts=FULL_TS, coordinate="mysql-bin.000005 1024")
        _seed_full(layout, ts=NEXT_TS, coordinate="mysql-bin.000006 100")
        _stage(layout, "mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007")
        coordinator = RestoreCoordinator(settings, server, container)
        target = FULL_TS + timedelta(hours=10)

        steps = coordinator.plan_replay(coordinator.select_backup("app_db", first), target)

        assert [s.segment.name for s in steps] == ["mysql-bin.000005", "mysql-bin.000006"]
        assert all(s.stop_datetime == target for s in steps)
        assert "--stop-datetime=2024-05-01 12:00:00" in steps[0].binlog_options("app_db")

    def test_target_after_next_generation_keeps_all(self, settings, layout, server, container):
        first = _seed_full(layout, ts=FULL_TS, coordinate="mysql-bin.000005 1024")
        _seed_full(layout, ts=NEXT_TS, coordinate="mysql-bin.000006 100")
        _stage(layout, "mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007")
        coordinator = RestoreCoordinator(settings, server, container)

        steps = coordinator.plan_replay(coordinator.select_backup("app_db", first), NEXT_TS + timedelta(hours=1))

        assert len(steps) == 3

    def test_no_coordinate_means_no_replay(self, settings, layout, server, container):
        _seed_full(layout, coordinate=None)
        _stage(layout, "mysql-bin.000005")
        coordinator = RestoreCoordinator(settings, server, container)

        assert coordinator.plan_replay(coordinator.select_backup("app_db")) == []

    def test_unstaged_start_segment(self, settings, layout, server, container):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000006")
        coordinator = RestoreCoordinator(settings, server, container)

        steps = coordinator.plan_replay(coordinator.select_backup("app_db"))

        assert [s.segment.name for s in steps] == ["mysql-bin.000006"]
        assert steps[0].start_position is None


# ============================================================================
# Apply
# ============================================================================


class TestApplyBackup:
    """Importing a verified artifact."""

    async def test_imports_as_one_transaction(self, settings, layout, server, container, key_file):
        path = _seed_full(layout)
        coordinator = RestoreCoordinator(settings, server, container)

        size = await coordinator.apply_backup(coordinator.select_backup("app_db"))

        assert size == path.stat().st_size
        server.create_database.assert_awaited_once_with("app_db")
        container.exec.assert_awaited_once_with(["mariadb", "-u", "root", "app_db"], stdin=wrap_import(DUMP))
        assert wrap_import(DUMP).startswith(b"SET autocommit=0;\n")
        assert wrap_import(DUMP).endswith(b"COMMIT;\n")

    async def test_checksum_mismatch_aborts_before_import(self, settings, layout, server, container, key_file):
        path = _seed_full(layout)
        with path.open("ab") as handle:
            handle.write(b"corruption")
        coordinator = RestoreCoordinator(settings, server, container)

        with pytest.raises(ChecksumMismatchError):
            await coordinator.apply_backup(coordinator.select_backup("app_db"))

        server.create_database.assert_not_awaited()
        container.exec.assert_not_awaited()

    async def test_import_failure(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        container.exec.side_effect = ToolError(["mariadb"], 1, "ERROR 1064 (42000): syntax error")
        coordinator = RestoreCoordinator(settings, server, container)

        with pytest.raises(RestoreError, match="Import into app_db failed"):
            await coordinator.apply_backup(coordinator.select_backup("app_db"))


class TestReplay:
    """Segment replay in strict and lenient modes."""

    async def test_full_restore_with_replay(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005", "mysql-bin.000006")
        container.exec.side_effect = _binlog_exec()

        summary = await run_restore(settings, server, container, database="app_db", backup_file=LATEST)

        result = summary.results[0]
        assert result.status == "success"
        assert result.segments_applied == 2
        assert result.segments_failed == 0
        assert result.binlog_bytes == sum(layout.segment_path(n).stat().st_size for n in ("mysql-bin.000005", "mysql-bin.000006"))
        binlog_calls = [c.args[0] for c in container.exec.call_args_list if c.args[0][0] == "mariadb-binlog"]
        assert binlog_calls[0] == ["mariadb-binlog", "--database=app_db", "--start-position=1024", "/tmp/mysql-bin.000005"]
        assert container.remove.await_count == 2

    async def test_lenient_counts_failures(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007")
        container.exec.side_effect = _binlog_exec(fail_segment="mysql-bin.000006")

        summary = await run_restore(settings, server, container, database="app_db", strict=False)

        assert summary.results[0].status == "success"
        assert summary.segments_applied == 2
        assert summary.segments_failed == 1

    async def test_strict_aborts(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005", "mysql-bin.000006", "mysql-bin.000007")
        container.exec.side_effect = _binlog_exec(fail_segment="mysql-bin.000006")

        with pytest.raises(RestoreError, match="mysql-bin.000006"):
            await run_restore(settings, server, container, database="app_db", strict=True)

    async def test_corrupted_staged_segment_is_not_replayed(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005")
        segment = layout.segment_path("mysql-bin.000005")
        layout.write_checksum(segment)
        segment.write_bytes(b"\xfebin truncated")
        container.exec.side_effect = _binlog_exec()

        summary = await run_restore(settings, server, container, database="app_db", strict=False)

        assert summary.segments_applied == 0
        assert summary.segments_failed == 1
        container.copy_to.assert_not_awaited()

    async def test_corrupted_staged_segment_aborts_strict(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005")
        segment = layout.segment_path("mysql-bin.000005")
        layout.write_checksum(segment)
        segment.write_bytes(b"\xfebin truncated")

        with pytest.raises(RestoreError, match="Checksum verification failed"):
            await run_restore(settings, server, container, database="app_db", strict=True)
        container.copy_to.assert_not_awaited()

    def test_strict_from_settings(self, settings, server, container):
        settings.strict_binlog_replay = True
        assert RestoreCoordinator(settings, server, container).strict is True
        assert RestoreCoordinator(settings, server, container, strict=False).strict is False

    async def test_no_binlogs(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        _stage(layout, "mysql-bin.000005")

        summary = await run_restore(settings, server, container, database="app_db", replay_binlogs=False)

        assert summary.segments_applied == 0
        container.exec.assert_awaited_once()

    async def test_restore_into_other_database_filters_by_source(self, settings, layout, server, container, key_file):
        path = _seed_full(layout)
        _stage(layout, "mysql-bin.000005")
        container.exec.side_effect = _binlog_exec()

        await run_restore(settings, server, container, database="app_copy", backup_file=path)

        server.create_database.assert_awaited_once_with("app_copy")
        argvs = [c.args[0] for c in container.exec.call_args_list]
        assert argvs[1][1] == "--database=app_db"
        assert argvs[2] == ["mariadb", "-u", "root", "app_copy"]


class TestRestoreAll:
    """Restoring every database with backups."""

    async def test_failures_recorded_per_database(self, settings, layout, server, container, key_file):
        _seed_full(layout, database="app_db")
        broken = _seed_full(layout, database="crm")
        broken.write_bytes(b"Salted__ truncated")

        summary = await run_restore(settings, server, container, replay_binlogs=False)

        statuses = {r.database: r.status for r in summary.results}
        assert statuses == {"app_db": "success", "crm": "failed"}
        assert summary.error_count == 1
        assert summary.restored_count == 1
        assert summary.duration_seconds >= 0

    async def test_no_backups(self, settings, server, container, key_file):
        with pytest.raises(UnknownDatabaseError):
            await run_restore(settings, server, container)

    async def test_lock_held(self, settings, layout, server, container, key_file):
        _seed_full(layout)
        with StateLock.for_backup_dir(settings.backup_dir):
            with pytest.raises(LockHeldError):
                await run_restore(settings, server, container, database="app_db")
        container.exec.assert_not_awaited()
