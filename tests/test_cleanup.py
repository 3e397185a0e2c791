"""Tests for backup generation and staged binlog retention."""

from datetime import datetime, timedelta

import pytest

from mariadb_backup.backup.cleanup import binlog_floor, cleanup_backups, cleanup_binlogs
from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.backup.models import BackupMode, Coordinate

BASE = datetime(2024, 5, 1, 2, 0, 0)


def _make_full(layout: BackupLayout, database: str, day: int, coordinate: str | None = None) -> datetime:
    ts = BASE + timedelta(days=day)
    path = layout.artifact_path(database, BackupMode.FULL, ts)
    path.write_bytes(b"full")
    layout.write_checksum(path)
    if coordinate is not None:
        log_file, position = coordinate.split()
        layout.write_marker(layout.full_marker_path(database, ts), Coordinate.of(log_file, int(position)))
    return ts


def _make_incremental(layout: BackupLayout, database: str, ts: datetime) -> None:
    path = layout.artifact_path(database, BackupMode.INCREMENTAL, ts)
    path.write_bytes(b"incr")
    layout.write_checksum(path)
    layout.write_marker(layout.incremental_marker_path(database, ts), Coordinate.of("mysql-bin.000001", 4))


def _stage(layout: BackupLayout, *names: str) -> None:
    for name in names:
        layout.segment_path(name).write_bytes(b"\xfebin" + name.encode())


class TestCleanupBackups:
    """Keep the newest N full generations and the incrementals built on them."""

    def test_keeps_newest_generations(self, layout):
        days = [_make_full(layout, "app_db", day, f"mysql-bin.00000{day + 1} 4") for day in range(4)]

        result = cleanup_backups(layout, keep=2)

        remaining = [a.timestamp for a in layout.list_full_backups("app_db")]
        assert remaining == days[2:]
        assert len(result.deleted) == 4  # 2 artifacts + 2 markers
        assert result.freed_bytes > 0
        assert not layout.full_marker_path("app_db", days[0]).exists()
        assert not layout.checksum_path(layout.artifact_path("app_db", BackupMode.FULL, days[0])).exists()
        assert layout.full_marker_path("app_db", days[3]).exists()

    def test_deletes_incrementals_of_expired_generation(self, layout):
        first = _make_full(layout, "app_db", 0, "mysql-bin.000001 4")
        second = _make_full(layout, "app_db", 1, "mysql-bin.000002 4")
        expired_incr = first + timedelta(hours=6)
        kept_incr = second + timedelta(hours=6)
        _make_incremental(layout, "app_db", expired_incr)
        _make_incremental(layout, "app_db", kept_incr)

        cleanup_backups(layout, keep=1)

        assert [a.timestamp for a in layout.list_incremental_backups("app_db")] == [kept_incr]
        assert not layout.incremental_marker_path("app_db", expired_incr).exists()
        assert layout.incremental_marker_path("app_db", kept_incr).exists()

    def test_databases_are_independent(self, layout):
        for day in range(3):
            _make_full(layout, "app_db", day)
        _make_full(layout, "crm", 0)

        cleanup_backups(layout, keep=2)

        assert len(layout.list_full_backups("app_db")) == 2
        assert len(layout.list_full_backups("crm")) == 1

    def test_idempotent(self, layout):
        for day in range(3):
            _make_full(layout, "app_db", day)
        cleanup_backups(layout, keep=1)
        second = cleanup_backups(layout, keep=1)
        assert second.deleted == []
        assert second.freed_bytes == 0

    def test_keep_must_be_positive(self, layout):
        with pytest.raises(ValueError):
            cleanup_backups(layout, keep=0)


class TestCleanupBinlogs:
    """Staged segments below the retention floor are removed."""

    def test_floor_from_kept_generation(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000002 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000004 100")
        _make_full(layout, "app_db", 2, "mysql-bin.000006 100")
        assert binlog_floor(layout, keep=2) == Coordinate.of("mysql-bin.000004", 100)

    def test_floor_is_minimum_across_databases(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000005 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000008 4")
        _make_full(layout, "crm", 0, "mysql-bin.000003 4")
        _make_full(layout, "crm", 1, "mysql-bin.000009 4")
        assert binlog_floor(layout, keep=2) == Coordinate.of("mysql-bin.000003", 4)

    def test_deletes_segments_below_floor(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000003 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000005 4")
        _stage(layout, "mysql-bin.000001", "mysql-bin.000002", "mysql-bin.000003", "mysql-bin.000004")

        result = cleanup_binlogs(layout, keep=2)

        assert result.floor == Coordinate.of("mysql-bin.000003", 4)
        assert [s.name for s in layout.list_staged_segments()] == ["mysql-bin.000003", "mysql-bin.000004"]
        assert len(result.deleted) == 2

    def test_no_floor_deletes_nothing(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000003 4")
        _stage(layout, "mysql-bin.000001")

        result = cleanup_binlogs(layout, keep=2)

        assert result.floor is None
        assert result.deleted == []
        assert [s.name for s in layout.list_staged_segments()] == ["mysql-bin.000001"]

    def test_database_with_too_few_fulls_keeps_all_segments(self, layout):
        """A single full of one database still needs segments older than the others' floor."""
        _make_full(layout, "app_db", 0, "mysql-bin.000008 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000009 4")
        _make_full(layout, "crm", 0, "mysql-bin.000002 4")
        names = [f"mysql-bin.{n:06d}" for n in range(1, 9)]
        _stage(layout, *names)

        result = cleanup_binlogs(layout, keep=2)

        assert binlog_floor(layout, keep=2) is None
        assert result.floor is None
        assert result.deleted == []
        assert [s.name for s in layout.list_staged_segments()] == names

    def test_database_without_coordinates_does_not_block_floor(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000003 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000004 4")
        _make_full(layout, "crm", 0)

        assert binlog_floor(layout, keep=2) == Coordinate.of("mysql-bin.000003", 4)

    def test_placeholder_markers_do_not_set_floor(self, layout):
        _make_full(layout, "app_db", 0)
        layout.write_marker(layout.full_marker_path("app_db", BASE), None)
        _make_full(layout, "app_db", 1)
        _stage(layout, "mysql-bin.000001")

        assert cleanup_binlogs(layout, keep=2).deleted == []

    def test_active_segment_is_never_deleted(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000005 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000006 4")
        _stage(layout, "mysql-bin.000003", "mysql-bin.000004")

        cleanup_binlogs(layout, keep=2, active_segment="mysql-bin.000004")

        assert [s.name for s in layout.list_staged_segments()] == ["mysql-bin.000004"]

    def test_other_base_names_untouched(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000005 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000006 4")
        _stage(layout, "other-bin.000001", "mysql-bin.000001")

        cleanup_binlogs(layout, keep=2)

        assert [s.name for s in layout.list_staged_segments()] == ["other-bin.000001"]

    def test_idempotent(self, layout):
        _make_full(layout, "app_db", 0, "mysql-bin.000003 4")
        _make_full(layout, "app_db", 1, "mysql-bin.000004 4")
        _stage(layout, "mysql-bin.000001", "mysql-bin.000002")

        cleanup_binlogs(layout, keep=2)
        assert cleanup_binlogs(layout, keep=2).deleted == []
