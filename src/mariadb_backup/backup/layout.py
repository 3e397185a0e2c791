"""On-disk state layout: artifacts, coordinate markers, checksums, segments.

Layout under ``backup_dir``::

    <db>_full_<ts>.sql.gz.enc
    <db>_incremental_<ts>.sql.gz.enc
    checksums/<artifact>.sha256
    binlog_info/last_binlog_info_<db>_<ts>.txt
    incr/last_binlog_info_<db>_<ts>_incr.txt
    binlogs/<segment-file>

Markers hold two whitespace-separated fields: segment name and byte offset.
"""

import hashlib
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from mariadb_backup.backup.models import (
    BackupArtifact,
    BackupMode,
    BinlogFile,
    Coordinate,
    format_timestamp,
)
from mariadb_backup.config.models import BackupSettings
from mariadb_backup.errors import ChecksumMismatchError

logger = logging.getLogger(__name__)

# Schema created by some server images for binlog storage, never dumped
RESERVED_DATABASES = frozenset({"binlogs"})


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class BackupLayout:
    """Paths and listings for the persisted backup state.

    Args:
        settings: Settings supplying the directory locations.
    """

    def __init__(self, settings: BackupSettings) -> None:
        self.backup_dir = settings.backup_dir
        self.binlog_dir = settings.binlog_dir
        self.binlog_info_dir = settings.binlog_info_dir
        self.incr_info_dir = settings.incr_info_dir
        self.checksum_dir = settings.checksum_dir

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def artifact_path(
        self,
        database: str,
        mode: BackupMode,
        timestamp: datetime,
        compressed: bool = True,
    ) -> Path:
        return self.backup_dir / BackupArtifact.filename(database, mode, timestamp, compressed)

    def checksum_path(self, path: Path) -> Path:
        return self.checksum_dir / f"{path.name}.sha256"

    def full_marker_path(self, database: str, timestamp: datetime) -> Path:
        return self.binlog_info_dir / f"last_binlog_info_{database}_{format_timestamp(timestamp)}.txt"

    def incremental_marker_path(self, database: str, timestamp: datetime) -> Path:
        return self.incr_info_dir / f"last_binlog_info_{database}_{format_timestamp(timestamp)}_incr.txt"

    def segment_path(self, segment: BinlogFile | str) -> Path:
        name = segment.name if isinstance(segment, BinlogFile) else segment
        return self.binlog_dir / name

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def _artifacts(self, pattern: str) -> list[BackupArtifact]:
        if not self.backup_dir.is_dir():
            return []
        artifacts = []
        for path in self.backup_dir.glob(pattern):
            artifact = BackupArtifact.parse(path)
            if artifact is not None:
                artifacts.append(artifact)
        return sorted(artifacts, key=lambda a: (a.timestamp, a.path.name))

    def list_full_backups(self, database: str) -> list[BackupArtifact]:
        """Full artifacts for ``database``, oldest first."""
        return [
            a for a in self._artifacts("*_full_*.enc")
            if a.database == database and a.mode is BackupMode.FULL
        ]

    def list_incremental_backups(self, database: str) -> list[BackupArtifact]:
        """Incremental artifacts for ``database``, oldest first."""
        return [
            a for a in self._artifacts("*_incremental_*.enc")
            if a.database == database and a.mode is BackupMode.INCREMENTAL
        ]

    def databases_with_backups(self) -> list[str]:
        """Sorted names of databases that have at least one full artifact."""
        names = {
            a.database for a in self._artifacts("*_full_*.enc")
            if a.mode is BackupMode.FULL
        }
        return sorted(names - RESERVED_DATABASES)

    def list_staged_segments(self) -> list[BinlogFile]:
        """Staged binlog segments in sequence order (index files excluded)."""
        if not self.binlog_dir.is_dir():
            return []
        segments = [
            BinlogFile.parse(p.name)
            for p in self.binlog_dir.iterdir()
            if p.is_file() and BinlogFile.is_segment_name(p.name)
        ]
        return sorted(segments)

    # ------------------------------------------------------------------
    # Coordinate markers
    # ------------------------------------------------------------------

    def write_marker(self, path: Path, coordinate: Coordinate | None) -> None:
        """Persist a coordinate marker atomically.

        ``None`` writes the ``unknown 0`` placeholder so the marker is never
        empty; readers treat it as "no coordinate".
        """
        content = coordinate.format() if coordinate is not None else "unknown 0"
        atomic_write_text(path, content + "\n")

    def read_marker(self, path: Path) -> Coordinate | None:
        """Read a marker, returning ``None`` if missing, empty or unusable."""
        if not path.is_file():
            return None
        try:
            return Coordinate.parse(path.read_text())
        except ValueError as e:
            logger.warning(f"Ignoring unreadable binlog marker {path}: {e}")
            return None

    def full_marker_for(self, artifact: BackupArtifact) -> Path | None:
        """Marker of a full backup, checking the legacy ``incr/`` location too."""
        primary = self.full_marker_path(artifact.database, artifact.timestamp)
        if primary.is_file():
            return primary
        legacy = self.incr_info_dir / primary.name
        if legacy.is_file():
            return legacy
        return None

    def coordinate_for(self, artifact: BackupArtifact) -> Coordinate | None:
        marker = self.full_marker_for(artifact)
        return self.read_marker(marker) if marker is not None else None

    def latest_marker(self, database: str) -> tuple[datetime, Coordinate] | None:
        """Newest recorded coordinate among full and incremental markers.

        Returns:
            ``(timestamp, coordinate)`` of the newest usable marker, or
            ``None`` when the database has no usable marker.
        """
        candidates: list[tuple[datetime, Coordinate]] = []
        for artifact in self.list_full_backups(database):
            coordinate = self.coordinate_for(artifact)
            if coordinate is not None:
                candidates.append((artifact.timestamp, coordinate))
        for artifact in self.list_incremental_backups(database):
            coordinate = self.read_marker(
                self.incremental_marker_path(database, artifact.timestamp)
            )
            if coordinate is not None:
                candidates.append((artifact.timestamp, coordinate))
        if not candidates:
            return None
        return max(candidates, key=lambda c: (c[0], c[1]))

    # ------------------------------------------------------------------
    # Checksums
    # ------------------------------------------------------------------

    def write_checksum(self, path: Path, checksum_path: Path | None = None) -> Path:
        """Write a ``sha256sum``-style sidecar for ``path``."""
        target = checksum_path or self.checksum_path(path)
        atomic_write_text(target, f"{sha256_file(path)}  {path.name}\n")
        return target

    def verify_checksum(self, path: Path) -> bool:
        return verify_checksum(path, self.checksum_dir)

    def remove_with_sidecars(self, path: Path) -> int:
        """Delete a file and its checksum sidecars, returning bytes freed."""
        freed = 0
        for candidate in (path, self.checksum_path(path), path.with_name(path.name + ".sha256")):
            if candidate.is_file():
                freed += candidate.stat().st_size
                candidate.unlink()
        return freed


def read_checksum(path: Path) -> str:
    """Expected digest from a sidecar (bare hash or ``sha256sum`` format)."""
    fields = path.read_text().split()
    return fields[0].lower() if fields else ""


def sidecar_candidates(path: Path, checksum_dir: Path | None = None) -> list[Path]:
    """Possible checksum sidecar locations for ``path``, preferred first."""
    candidates = []
    if checksum_dir is not None:
        candidates.append(checksum_dir / f"{path.name}.sha256")
    candidates.append(path.with_name(path.name + ".sha256"))
    return candidates


def verify_checksum(path: Path, checksum_dir: Path | None = None) -> bool:
    """Check ``path`` against its sidecar.

    Returns:
        True if a sidecar was found and matched, False if none exists.

    Raises:
        ChecksumMismatchError: If a sidecar exists and does not match.
    """
    for sidecar in sidecar_candidates(path, checksum_dir):
        if sidecar.is_file():
            if read_checksum(sidecar) != sha256_file(path):
                raise ChecksumMismatchError(
                    f"Checksum verification failed for {path.name}! File may be corrupted."
                )
            logger.debug(f"Checksum verified for {path.name}")
            return True
    return False
