"""Retention cleaners for backup generations and staged binlog segments.

``cleanup_backups`` keeps the newest N full backups per database together
with the incrementals that build on them.  ``cleanup_binlogs`` deletes
staged segments no retained restore path can need: everything older than
the coordinate of the oldest generation still kept.

Both cleaners are idempotent and run under the state lock.

Usage:
    layout = BackupLayout(settings)
    result = cleanup_backups(layout, keep=settings.keep_backup_generations)
    result = cleanup_binlogs(layout, keep=2, active_segment="mysql-bin.000042")
"""

import logging
from pathlib import Path

from mariadb_backup.backup.layout import BackupLayout
from mariadb_backup.backup.lock import StateLock
from mariadb_backup.backup.models import BinlogFile, CleanupResult, Coordinate

logger = logging.getLogger(__name__)


def _delete(layout: BackupLayout, result: CleanupResult, path: Path) -> None:
    if not path.exists():
        return
    result.freed_bytes += layout.remove_with_sidecars(path)
    result.deleted.append(path)
    logger.info(f"Deleted {path.name}")


def cleanup_backups(layout: BackupLayout, keep: int = 7) -> CleanupResult:
    """Delete full backups beyond the newest ``keep`` per database.

    For each deleted full backup its checksum, its coordinate marker and
    the incrementals taken before the next full backup are removed too.

    Args:
        layout: State layout to clean.
        keep: Full generations to retain per database (at least 1).

    Returns:
        CleanupResult with deleted paths and bytes freed.
    """
    if keep < 1:
        raise ValueError("keep must be at least 1")

    result = CleanupResult()
    with StateLock.for_backup_dir(layout.backup_dir):
        for database in layout.databases_with_backups():
            fulls = layout.list_full_backups(database)
            if len(fulls) <= keep:
                logger.info(f"{database}: {len(fulls)} full backup(s), nothing to delete")
                continue

            expired = fulls[:-keep]
            incrementals = layout.list_incremental_backups(database)
            logger.info(f"{database}: deleting {len(expired)} of {len(fulls)} full backup(s)")
            for index, artifact in enumerate(expired):
                next_full = fulls[index + 1].timestamp
                _delete(layout, result, artifact.path)
                marker = layout.full_marker_for(artifact)
                if marker is not None:
                    _delete(layout, result, marker)
                for incremental in incrementals:
                    if artifact.timestamp <= incremental.timestamp < next_full:
                        _delete(layout, result, incremental.path)
                        _delete(
                            layout,
                            result,
                            layout.incremental_marker_path(database, incremental.timestamp),
                        )

    logger.info(f"Backup cleanup removed {len(result.deleted)} file(s), {result.freed_bytes} bytes")
    return result


def binlog_floor(layout: BackupLayout, keep: int = 2) -> Coordinate | None:
    """Oldest coordinate any retained generation needs.

    For every database with at least ``keep`` full backups, the marker of
    its ``keep``-th newest full backup is a candidate; the floor is the
    smallest candidate.  A database with fewer backups, any of which has a
    coordinate, still needs every staged segment, so there is no floor.

    Returns:
        The floor coordinate, or None if nothing may be deleted.
    """
    candidates = []
    for database in layout.databases_with_backups():
        fulls = layout.list_full_backups(database)
        if len(fulls) < keep:
            if any(layout.coordinate_for(artifact) is not None for artifact in fulls):
                logger.info(
                    f"{database}: only {len(fulls)} of {keep} full backup(s), keeping all binlogs"
                )
                return None
            continue
        coordinate = layout.coordinate_for(fulls[-keep])
        if coordinate is None:
            logger.warning(f"{database}: no usable coordinate for {fulls[-keep].path.name}")
            continue
        candidates.append(coordinate)
    return min(candidates) if candidates else None


def cleanup_binlogs(
    layout: BackupLayout,
    keep: int = 2,
    active_segment: str | None = None,
) -> CleanupResult:
    """Delete staged segments older than the retention floor.

    Args:
        layout: State layout to clean.
        keep: Full generations whose replay path must stay intact.
        active_segment: The server's current segment, never deleted.

    Returns:
        CleanupResult with deleted paths, bytes freed and the floor used.
    """
    if keep < 1:
        raise ValueError("keep must be at least 1")

    result = CleanupResult()
    with StateLock.for_backup_dir(layout.backup_dir):
        floor = binlog_floor(layout, keep)
        result.floor = floor
        if floor is None:
            logger.info("No binlog floor could be determined; nothing deleted")
            return result

        active = BinlogFile.parse(active_segment) if active_segment else None
        logger.info(f"Keeping staged segments from {floor.log_file.name} onwards")
        for segment in layout.list_staged_segments():
            if segment.base != floor.log_file.base or segment >= floor.log_file:
                continue
            if active is not None and segment == active:
                continue
            _delete(layout, result, layout.segment_path(segment))

    logger.info(f"Binlog cleanup removed {len(result.deleted)} file(s), {result.freed_bytes} bytes")
    return result
