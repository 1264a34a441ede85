"""Append-only archive for superseded and orphaned artifacts."""

import errno
import logging
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import ArchiveError, FileSystemError
from .paths import REASON_DELETED, archive_path
from .tree_index import walk_files

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def move_file(source: Path, target: Path) -> None:
    """
    Rename source to target, copying then unlinking across devices.

    Raises:
        OSError: If the rename (or the copy fallback) fails
    """
    try:
        os.rename(source, target)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        shutil.copy2(source, target)
        os.unlink(source)


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove partial archive copy {path}: {e}")


def prune_empty_dirs(directory: Path, keep: Optional[Path] = None) -> int:
    """
    Remove empty directories below (and including) directory, bottom-up.

    Args:
        directory: Top of the subtree to prune
        keep: A directory that is never removed even when empty

    Returns:
        Number of directories removed
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    removed = 0
    for current, _dirs, _files in os.walk(directory, topdown=False):
        current_path = Path(current)
        if keep is not None and current_path == keep:
            continue
        try:
            current_path.rmdir()
            removed += 1
        except OSError:
            pass
    return removed


class ArchiveStore:
    """
    Relocates artifacts under the reserved .archive subtree.

    Entries are write-once: an existing entry is never overwritten, a
    colliding name gets a numeric counter instead.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the archive store.

        Args:
            clock: Returns the timestamp embedded in entry names (default: UTC now)
        """
        self._clock = clock or _utc_now
        self._lock = threading.Lock()

    def archive(
        self,
        artifact_path: Path,
        dest_root: Path,
        alias: str,
        relative_dir: Path,
        reason: str = REASON_DELETED,
        note: Optional[str] = None,
    ) -> Path:
        """
        Move a live artifact into the archive.

        Args:
            artifact_path: Live artifact to archive
            dest_root: Destination tree root
            alias: Root alias segment of the artifact's path
            relative_dir: Directory of the artifact below the alias
            reason: "deleted" or "archived", embedded in the entry name
            note: Markdown appended to the archive entry once it is moved

        Returns:
            Path of the new archive entry

        Raises:
            ArchiveError: If the artifact could not be relocated
        """
        artifact_path = Path(artifact_path)
        target = archive_path(dest_root, alias, relative_dir, artifact_path.name, self._clock(), reason)

        with self._lock:
            target = self._unique(target)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ArchiveError(f"Cannot create archive directory {target.parent}: {e}", str(artifact_path))

            if not artifact_path.is_file():
                raise ArchiveError(f"Artifact does not exist: {artifact_path}", str(artifact_path))

            try:
                move_file(artifact_path, target)
            except OSError as e:
                if artifact_path.is_file() and target.exists():
                    _discard(target)
                raise ArchiveError(f"Failed to archive {artifact_path}: {e}", str(artifact_path))

            if note:
                self._annotate(target, note.replace("{archive_path}", str(target)))

        logger.info(f"Archived {artifact_path.name} to {target}")
        return target

    def restore(self, entry: Path, target_path: Path) -> Path:
        """
        Move an archive entry back to a live artifact path.

        Raises:
            FileSystemError: If the entry could not be moved
        """
        target_path = Path(target_path)
        with self._lock:
            if target_path.exists():
                raise FileSystemError(f"Restore target already exists: {target_path}", str(target_path))
            try:
                target_path.parent.mkdir(parents=True, exist_ok=True)
                move_file(Path(entry), target_path)
            except OSError as e:
                raise FileSystemError(f"Failed to restore {entry} to {target_path}: {e}", str(entry))
        logger.info(f"Restored {entry} to {target_path}")
        return target_path

    def archive_tree(
        self,
        directory: Path,
        dest_root: Path,
        alias: str,
        relative_dir: Path,
        reason: str = REASON_DELETED,
    ) -> List[Path]:
        """
        Archive every file below a live directory, preserving its shape.

        Emptied directories are removed afterwards. Failures on individual
        files do not stop the rest of the subtree.

        Returns:
            Paths of the new archive entries

        Raises:
            ArchiveError: If any file could not be archived
        """
        directory = Path(directory)
        entries = []
        failures = []
        for path in list(walk_files(directory)):
            sub_dir = Path(relative_dir) / path.parent.relative_to(directory)
            try:
                entries.append(self.archive(path, dest_root, alias, sub_dir, reason))
            except ArchiveError as e:
                logger.error(str(e))
                failures.append(str(path))
        prune_empty_dirs(directory)
        if failures:
            raise ArchiveError(f"{len(failures)} file(s) could not be archived under {directory}", failures[0])
        return entries

    @staticmethod
    def _unique(target: Path) -> Path:
        if not target.exists():
            return target
        stem, suffix = target.stem, target.suffix
        counter = 1
        while True:
            candidate = target.with_name(f"{stem}-{counter}{suffix}")
            if not candidate.exists():
                return candidate
            counter += 1

    @staticmethod
    def _annotate(artifact_path: Path, note: str) -> None:
        try:
            with open(artifact_path, "a", encoding="utf-8") as f:
                f.write(note)
        except OSError as e:
            logger.warning(f"Could not annotate archive entry {artifact_path}: {e}")
