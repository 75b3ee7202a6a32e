"""Backup store: snapshots, compressed archives and retention of past installs."""

from __future__ import annotations

import os
import re
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from deployment_agent.core.config import DEFAULT_RETENTION_COUNT
from deployment_agent.deploy import archive
from deployment_agent.deploy.locks import KeyedLocks
from deployment_agent.deploy.models import BackupArchive, BackupSnapshot, RetrySchedule
from deployment_agent.deploy.retry import RetryPolicy, retry_on_io

logger = structlog.get_logger()

BACKUPS_DIR_NAME = "Backups"
SNAPSHOT_PREFIX = "Backup_"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
SNAPSHOT_NAME_RE = re.compile(r"^Backup_(?P<name>.+)_(?P<stamp>\d{14}(?:_\d+)?)$")


def snapshot_name(base_name: str, when: datetime) -> str:
    return f"{SNAPSHOT_PREFIX}{base_name}_{when.strftime(TIMESTAMP_FORMAT)}"


def logical_name(archive_path: Path) -> Optional[str]:
    """Resolve the service directory name an archive belongs to.

    The stored comment carries the snapshot name the archive was built from;
    rotated archives also carry it in their file stem.
    """
    for candidate in (archive.read_comment(archive_path), archive_path.stem):
        if not candidate:
            continue
        match = SNAPSHOT_NAME_RE.match(candidate)
        if match:
            return match.group("name")
    return None


def _absolute(path: Path) -> Path:
    # Normalized without following symlinks
    return Path(os.path.abspath(path))


def _created(path: Path) -> float:
    # Archives are written once and never modified afterwards
    return path.stat().st_mtime


class BackupStore:
    """Owns the ``Backups`` directory next to each install directory."""

    def __init__(
        self,
        retry: RetryPolicy,
        move_schedule: RetrySchedule,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.retry = retry
        self.move_schedule = move_schedule
        self.clock = clock
        self._prune_locks = KeyedLocks()

    @staticmethod
    def backups_root_for(directory: Path) -> Path:
        return _absolute(directory).parent / BACKUPS_DIR_NAME

    def snapshot(self, directory: Path, cancel_event: Optional[threading.Event] = None) -> BackupSnapshot:
        """Move ``directory`` to a timestamped snapshot under the backups root.

        A symlinked install directory is moved as a link; its target is left
        where it is.
        """
        directory = _absolute(directory)
        backups_root = self.backups_root_for(directory)
        backups_root.mkdir(parents=True, exist_ok=True)

        created_at = self.clock()
        name = snapshot_name(directory.name, created_at)
        destination = backups_root / name
        suffix = 1
        while destination.exists():
            destination = backups_root / f"{name}_{suffix}"
            suffix += 1

        def _move():
            os.rename(directory, destination)

        self.retry.execute(_move, retry_on_io, self.move_schedule, cancel_event)
        logger.info("Install directory archived", source=str(directory), snapshot=str(destination))
        return BackupSnapshot(
            name=destination.name,
            path=destination,
            base_name=directory.name,
            created_at=created_at,
        )

    def compress(self, snapshot: BackupSnapshot, cancel_event: Optional[threading.Event] = None) -> Path:
        """Zip the snapshot to ``<Name>.zip`` and delete the snapshot directory.

        A previous ``<Name>.zip`` is rotated to its own timestamped name first.
        """
        backups_root = snapshot.backups_root
        archive_path = backups_root / f"{snapshot.base_name}.zip"
        if archive_path.exists():
            self._rotate(archive_path, snapshot.base_name)

        archive.create_from_directory(snapshot.path, archive_path, comment=snapshot.name)
        logger.info("Snapshot compressed", snapshot=snapshot.name, archive=str(archive_path))

        def _delete():
            if snapshot.path.is_symlink():
                snapshot.path.unlink()
            else:
                shutil.rmtree(snapshot.path)

        self.retry.execute(_delete, retry_on_io, self.move_schedule, cancel_event)
        return archive_path

    def _rotate(self, archive_path: Path, base_name: str) -> Path:
        comment = archive.read_comment(archive_path)
        if comment and SNAPSHOT_NAME_RE.match(comment):
            rotated_stem = comment
        else:
            stamp = datetime.fromtimestamp(_created(archive_path))
            rotated_stem = snapshot_name(base_name, stamp)

        rotated = archive_path.with_name(f"{rotated_stem}.zip")
        suffix = 1
        while rotated.exists():
            rotated = archive_path.with_name(f"{rotated_stem}_{suffix}.zip")
            suffix += 1
        # rename keeps the mtime, so rotation does not reorder history
        os.rename(archive_path, rotated)
        logger.info("Previous archive rotated", archive=str(archive_path), rotated=str(rotated))
        return rotated

    def prune(
        self,
        backups_root: Path,
        retention_count: int = DEFAULT_RETENTION_COUNT,
        base_name: Optional[str] = None,
    ) -> List[Path]:
        """Delete all but the newest ``retention_count`` archives per service name.

        Names are compared case-insensitively. Returns the deleted paths.
        """
        if not backups_root.is_dir():
            return []

        with self._prune_locks.hold(os.path.normcase(str(backups_root.resolve()))):
            groups: Dict[str, List[Path]] = {}
            for path in backups_root.glob("*.zip"):
                if not path.is_file():
                    continue
                name = logical_name(path)
                if name is None:
                    continue
                if base_name is not None and name.casefold() != base_name.casefold():
                    continue
                groups.setdefault(name.casefold(), []).append(path)

            deleted: List[Path] = []
            for name, paths in groups.items():
                paths.sort(key=_created, reverse=True)
                for path in paths[retention_count:]:
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        continue
                    deleted.append(path)
                    logger.info("Pruned backup archive", archive=str(path), name=name)
            return deleted

    def list_backups(self, directory: Path) -> List[BackupArchive]:
        """Archives belonging to ``directory``, newest first."""
        backups_root = self.backups_root_for(directory)
        if not backups_root.is_dir():
            return []
        base_name = _absolute(directory).name.casefold()
        entries = []
        for path in backups_root.glob("*.zip"):
            name = logical_name(path)
            if name is None or name.casefold() != base_name:
                continue
            stat = path.stat()
            entries.append(
                BackupArchive(
                    name=path.name,
                    path=str(path),
                    size=stat.st_size,
                    createdAt=datetime.fromtimestamp(stat.st_mtime),
                )
            )
        entries.sort(key=lambda entry: entry.createdAt, reverse=True)
        return entries
