"""Models for backup artifacts, binlog coordinates, and run results.

Binlog segments are ordered by their numeric sequence rather than by
string comparison, so ``mysql-bin.999999`` sorts before ``mysql-bin.1000000``.

Usage:
    from mariadb_backup.backup.models import BinlogFile, Coordinate

    start = Coordinate.parse("mysql-bin.000005 1024")
    end = Coordinate(log_file=BinlogFile.parse("mysql-bin.000007"), position=512)
    assert start < end
"""

import re
from datetime import datetime
from enum import Enum
from functools import total_ordering
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

# A corrupted marker may carry the server's index file suffix
_INDEX_SUFFIXES = (".index", ".idx")

_BINLOG_NAME = re.compile(r"^(?P<base>.+)\.(?P<sequence>\d+)$")

_ARTIFACT_NAME = re.compile(
    r"^(?P<database>.+)_(?P<mode>full|incremental)_"
    r"(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})"
    r"\.sql(?P<gz>\.gz)?\.enc$"
)


def strip_index_suffix(name: str) -> str:
    """Remove a trailing ``.index``/``.idx`` from a binlog file name."""
    for suffix in _INDEX_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way artifact and marker names embed it."""
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an embedded ``YYYY-MM-DD_HH-MM-SS`` timestamp."""
    return datetime.strptime(value, TIMESTAMP_FORMAT)


# ============================================================================
# Binlog coordinates
# ============================================================================


@total_ordering
class BinlogFile(BaseModel):
    """A binary log segment name split into base name and sequence number."""

    model_config = ConfigDict(frozen=True)

    base: str                 # e.g. "mysql-bin"
    sequence: int             # e.g. 5 for mysql-bin.000005
    width: int = 6            # zero-padded digits in the file name

    @classmethod
    def parse(cls, name: str) -> "BinlogFile":
        """Parse ``mysql-bin.000005`` (an index suffix is tolerated).

        Raises:
            ValueError: If the name has no numeric sequence suffix.
        """
        cleaned = strip_index_suffix(Path(name).name.strip())
        match = _BINLOG_NAME.match(cleaned)
        if not match:
            raise ValueError(f"Not a binlog segment name: {name!r}")
        digits = match.group("sequence")
        return cls(base=match.group("base"), sequence=int(digits), width=len(digits))

    @classmethod
    def is_segment_name(cls, name: str) -> bool:
        """True for segment files, False for index files and anything else."""
        if name.endswith(_INDEX_SUFFIXES):
            return False
        return _BINLOG_NAME.match(name) is not None

    @property
    def name(self) -> str:
        return f"{self.base}.{self.sequence:0{self.width}d}"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, BinlogFile):
            return NotImplemented
        return (self.base, self.sequence) < (other.base, other.sequence)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BinlogFile):
            return NotImplemented
        return (self.base, self.sequence) == (other.base, other.sequence)

    def __hash__(self) -> int:
        return hash((self.base, self.sequence))

    def __str__(self) -> str:
        return self.name


@total_ordering
class Coordinate(BaseModel):
    """A position in the binary log: segment plus byte offset."""

    model_config = ConfigDict(frozen=True)

    log_file: BinlogFile
    position: int = Field(ge=0)

    @classmethod
    def of(cls, log_file: str, position: int) -> "Coordinate":
        return cls(log_file=BinlogFile.parse(log_file), position=position)

    @classmethod
    def parse(cls, text: str) -> "Coordinate | None":
        """Parse marker content ``"<log-file> <position>"``.

        Returns ``None`` for empty content or the ``unknown 0`` placeholder
        written when the server had binary logging disabled.

        Raises:
            ValueError: If the content is present but malformed.
        """
        fields = text.split()
        if not fields or fields[0] == "unknown":
            return None
        if len(fields) < 2 or not fields[1].isdigit():
            raise ValueError(f"Malformed binlog coordinate: {text.strip()!r}")
        return cls(log_file=BinlogFile.parse(fields[0]), position=int(fields[1]))

    def format(self) -> str:
        return f"{self.log_file.name} {self.position}"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Coordinate):
            return NotImplemented
        return (self.log_file, self.position) < (other.log_file, other.position)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Coordinate):
            return NotImplemented
        return self.log_file == other.log_file and self.position == other.position

    def __hash__(self) -> int:
        return hash((self.log_file, self.position))

    def __str__(self) -> str:
        return f"{self.log_file.name}:{self.position}"


# ============================================================================
# Artifacts
# ============================================================================


class BackupMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class BackupArtifact(BaseModel):
    """An encrypted dump file identified by (database, mode, timestamp)."""

    database: str
    mode: BackupMode
    timestamp: datetime
    path: Path
    compressed: bool = True

    @classmethod
    def filename(
        cls,
        database: str,
        mode: BackupMode,
        timestamp: datetime,
        compressed: bool = True,
    ) -> str:
        suffix = ".sql.gz.enc" if compressed else ".sql.enc"
        return f"{database}_{mode.value}_{format_timestamp(timestamp)}{suffix}"

    @classmethod
    def parse(cls, path: Path) -> "BackupArtifact | None":
        """Build an artifact from its file name, or ``None`` if it isn't one."""
        match = _ARTIFACT_NAME.match(path.name)
        if not match:
            return None
        return cls(
            database=match.group("database"),
            mode=BackupMode(match.group("mode")),
            timestamp=parse_timestamp(match.group("timestamp")),
            path=path,
            compressed=match.group("gz") is not None,
        )

    @property
    def timestamp_label(self) -> str:
        return format_timestamp(self.timestamp)


class SegmentReplay(BaseModel):
    """One ``mariadb-binlog`` invocation over a single segment."""

    segment: BinlogFile
    path: Path | None = None              # staged copy, if one exists
    start_position: int | None = None
    stop_position: int | None = None
    stop_datetime: datetime | None = None

    def binlog_options(self, database: str) -> list[str]:
        """Command-line options for ``mariadb-binlog``."""
        options = [f"--database={database}"]
        if self.start_position is not None:
            options.append(f"--start-position={self.start_position}")
        if self.stop_position is not None:
            options.append(f"--stop-position={self.stop_position}")
        if self.stop_datetime is not None:
            options.append(f"--stop-datetime={self.stop_datetime:%Y-%m-%d %H:%M:%S}")
        return options


# ============================================================================
# Run results
# ============================================================================


Status = Literal["success", "skipped", "failed"]


class DatabaseBackupResult(BaseModel):
    """Outcome of backing up one database."""

    database: str
    mode: BackupMode
    status: Status
    artifact: Path | None = None
    coordinate: Coordinate | None = None
    message: str = ""


class BackupRunResult(BaseModel):
    """Outcome of one backup invocation across all target databases."""

    mode: BackupMode
    results: list[DatabaseBackupResult] = Field(default_factory=list)
    staged_segments: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def success(self) -> bool:
        return self.error_count == 0


class DatabaseRestoreResult(BaseModel):
    """Outcome of restoring one database."""

    database: str
    backup_file: Path | None = None
    status: Status = "failed"
    segments_applied: int = 0
    segments_failed: int = 0
    backup_bytes: int = 0
    binlog_bytes: int = 0
    message: str = ""


class RestoreSummary(BaseModel):
    """Aggregated restore statistics."""

    results: list[DatabaseRestoreResult] = Field(default_factory=list)
    to_timestamp: datetime | None = None
    duration_seconds: float = 0.0

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def restored_count(self) -> int:
        return sum(1 for r in self.results if r.status == "success")

    @property
    def backup_bytes(self) -> int:
        return sum(r.backup_bytes for r in self.results)

    @property
    def binlog_bytes(self) -> int:
        return sum(r.binlog_bytes for r in self.results)

    @property
    def segments_applied(self) -> int:
        return sum(r.segments_applied for r in self.results)

    @property
    def segments_failed(self) -> int:
        return sum(r.segments_failed for r in self.results)


class CleanupResult(BaseModel):
    """Files removed by a retention cleaner."""

    deleted: list[Path] = Field(default_factory=list)
    freed_bytes: int = 0
    floor: Coordinate | None = None     # binlog cleaner only
