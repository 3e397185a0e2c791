"""Tests for binlog coordinates, artifact names and result models."""

from datetime import datetime
from pathlib import Path

import pytest

from mariadb_backup.backup.models import (
    BackupArtifact,
    BackupMode,
    BackupRunResult,
    BinlogFile,
    Coordinate,
    DatabaseBackupResult,
    DatabaseRestoreResult,
    RestoreSummary,
    SegmentReplay,
    format_timestamp,
    parse_timestamp,
    strip_index_suffix,
)


class TestBinlogFile:
    """Segment names parse into (base, sequence) and order numerically."""

    def test_parse(self):
        segment = BinlogFile.parse("mysql-bin.000005")
        assert segment.base == "mysql-bin"
        assert segment.sequence == 5
        assert segment.name == "mysql-bin.000005"

    def test_parse_strips_index_suffix(self):
        assert BinlogFile.parse("mysql-bin.000005.idx").name == "mysql-bin.000005"
        assert BinlogFile.parse("mysql-bin.000005.index").name == "mysql-bin.000005"

    def test_parse_rejects_non_segment(self):
        with pytest.raises(ValueError):
            BinlogFile.parse("mysql-bin.index")

    def test_ordering_uses_sequence_not_string(self):
        assert BinlogFile.parse("mysql-bin.999999") < BinlogFile.parse("mysql-bin.1000000")

    def test_equal_ignores_width(self):
        assert BinlogFile.parse("mysql-bin.5") == BinlogFile.parse("mysql-bin.000005")

    def test_is_segment_name(self):
        assert BinlogFile.is_segment_name("mysql-bin.000001")
        assert not BinlogFile.is_segment_name("mysql-bin.index")
        assert not BinlogFile.is_segment_name("mysql-bin.000001.idx")

    def test_strip_index_suffix(self):
        assert strip_index_suffix("a.000001.idx") == "a.000001"
        assert strip_index_suffix("a.000001") == "a.000001"


class TestCoordinate:
    """Marker content parsing and ordering."""

    def test_parse_marker_content(self):
        coordinate = Coordinate.parse("mysql-bin.000005 1024\n")
        assert coordinate == Coordinate.of("mysql-bin.000005", 1024)

    def test_parse_strips_index_suffix(self):
        coordinate = Coordinate.parse("mysql-bin.000005.idx 1024")
        assert coordinate.log_file.name == "mysql-bin.000005"

    @pytest.mark.parametrize("content", ["", "   \n", "unknown 0"])
    def test_no_coordinate(self, content):
        assert Coordinate.parse(content) is None

    @pytest.mark.parametrize("content", ["mysql-bin.000005", "mysql-bin.000005 abc"])
    def test_malformed(self, content):
        with pytest.raises(ValueError):
            Coordinate.parse(content)

    def test_ordering(self):
        a = Coordinate.of("mysql-bin.000005", 1024)
        b = Coordinate.of("mysql-bin.000005", 2048)
        c = Coordinate.of("mysql-bin.000006", 4)
        assert a < b < c
        assert min([c, a, b]) == a

    def test_format_and_str(self):
        coordinate = Coordinate.of("mysql-bin.000007", 512)
        assert coordinate.format() == "mysql-bin.000007 512"
        assert str(coordinate) == "mysql-bin.000007:512"


class TestBackupArtifact:
    """Artifact file names carry database, mode and timestamp."""

    def test_filename(self):
        ts = datetime(2024, 5, 1, 2, 0, 0)
        assert BackupArtifact.filename("app_db", BackupMode.FULL, ts) == "app_db_full_2024-05-01_02-00-00.sql.gz.enc"
        assert (
            BackupArtifact.filename("app_db", BackupMode.INCREMENTAL, ts, compressed=False)
            == "app_db_incremental_2024-05-01_02-00-00.sql.enc"
        )

    def test_parse(self):
        artifact = BackupArtifact.parse(Path("/b/my_app_db_full_2024-05-01_02-00-00.sql.gz.enc"))
        assert artifact.database == "my_app_db"
        assert artifact.mode is BackupMode.FULL
        assert artifact.timestamp == datetime(2024, 5, 1, 2, 0, 0)
        assert artifact.compressed

    @pytest.mark.parametrize(
        "name",
        ["app_db_full_2024-05-01_02-00-00.sql.gz", "notes.txt", "app_db_full_2024-05-01.sql.gz.enc"],
    )
    def test_parse_rejects(self, name):
        assert BackupArtifact.parse(Path(name)) is None

    def test_timestamp_helpers(self):
        ts = parse_timestamp("2024-05-01_02-03-04")
        assert format_timestamp(ts) == "2024-05-01_02-03-04"


class TestSegmentReplay:
    """mariadb-binlog options for one segment."""

    def test_all_options(self):
        step = SegmentReplay(
            segment=BinlogFile.parse("mysql-bin.000005"),
            start_position=1024,
            stop_position=4096,
            stop_datetime=datetime(2024, 5, 1, 12, 30, 0),
        )
        assert step.binlog_options("app_db") == [
            "--database=app_db",
            "--start-position=1024",
            "--stop-position=4096",
            "--stop-datetime=2024-05-01 12:30:00",
        ]

    def test_whole_segment(self):
        step = SegmentReplay(segment=BinlogFile.parse("mysql-bin.000006"))
        assert step.binlog_options("app_db") == ["--database=app_db"]


class TestResults:
    """Aggregated counts on run results."""

    def test_backup_run_counts_failures(self):
        result = BackupRunResult(
            mode=BackupMode.FULL,
            results=[
                DatabaseBackupResult(database="a", mode=BackupMode.FULL, status="success"),
                DatabaseBackupResult(database="b", mode=BackupMode.FULL, status="failed"),
                DatabaseBackupResult(database="c", mode=BackupMode.FULL, status="skipped"),
            ],
        )
        assert result.error_count == 1
        assert not result.success

    def test_restore_summary_totals(self):
        summary = RestoreSummary(
            results=[
                DatabaseRestoreResult(database="a", status="success", backup_bytes=100, binlog_bytes=10, segments_applied=2),
                DatabaseRestoreResult(database="b", status="failed", segments_failed=1),
            ]
        )
        assert summary.restored_count == 1
        assert summary.error_count == 1
        assert summary.backup_bytes == 100
        assert summary.binlog_bytes == 10
        assert summary.segments_applied == 2
        assert summary.segments_failed == 1
