"""Read-only scans of source and destination trees."""

import logging
import os
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set

from .paths import ARCHIVE_DIR_NAME, ARTIFACT_SUFFIX, is_archive_entry_for, parse_artifact_name

logger = logging.getLogger(__name__)


def walk_files(
    root: Path,
    exclude_archive: bool = True,
    follow_symlinks: bool = False,
) -> Iterator[Path]:
    """
    Yield every file below root, depth-first, in lexicographic order.

    Uses an explicit stack instead of recursion. A missing root yields
    nothing. Symlinked directories are only entered when follow_symlinks
    is set, and then each real directory is visited at most once.

    Args:
        root: Directory to walk
        exclude_archive: Skip directories named .archive
        follow_symlinks: Descend into symlinked directories
    """
    root = Path(root)
    if not root.is_dir():
        return

    visited: Set[str] = set()
    stack: List[Path] = [root]

    while stack:
        directory = stack.pop()
        if follow_symlinks:
            real = os.path.realpath(directory)
            if real in visited:
                logger.debug(f"Skipping already visited directory: {directory}")
                continue
            visited.add(real)

        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Cannot list directory {directory}: {e}")
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=follow_symlinks):
                    if exclude_archive and entry.name == ARCHIVE_DIR_NAME:
                        continue
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=follow_symlinks):
                    yield Path(entry.path)
            except OSError:
                continue

        stack.extend(reversed(subdirs))


def iter_files(
    root: Path,
    predicate: Optional[Callable[[Path], bool]] = None,
    follow_symlinks: bool = False,
) -> List[Path]:
    """All files below root (archive excluded) accepted by predicate."""
    return [
        path for path in walk_files(root, follow_symlinks=follow_symlinks)
        if predicate is None or predicate(path)
    ]


def iter_artifacts(dest_root: Path) -> List[Path]:
    """All live artifacts below dest_root."""
    return iter_files(dest_root, lambda p: parse_artifact_name(p.name) is not None)


def find_by_fingerprint(dest_root: Path, fingerprint: str) -> Optional[Path]:
    """
    Find the live artifact carrying a fingerprint anywhere below dest_root.

    Args:
        dest_root: Destination tree root
        fingerprint: Content fingerprint

    Returns:
        The first matching artifact path in traversal order, or None
    """
    suffix = f"_{fingerprint}{ARTIFACT_SUFFIX}"
    for path in walk_files(dest_root):
        if path.name.endswith(suffix) and parse_artifact_name(path.name) is not None:
            return path
    return None


def find_by_base_name_prefix(search_dir: Path, base_name: str, recursive: bool = True) -> List[Path]:
    """
    Find live artifacts whose name starts with "{base_name}_" and ends with ".md".

    Args:
        search_dir: Directory to search
        base_name: Source file stem
        recursive: Also search subdirectories (archive excluded)
    """
    prefix = f"{base_name}_"

    def matches(path: Path) -> bool:
        return path.name.startswith(prefix) and path.name.endswith(ARTIFACT_SUFFIX)

    if recursive:
        return iter_files(search_dir, matches)
    return [p for p in list_files(search_dir) if matches(p)]


def find_versions(search_dir: Path, base_name: str) -> List[Path]:
    """Artifacts directly inside search_dir whose parsed base name is exactly base_name."""
    found = []
    for path in list_files(search_dir):
        parsed = parse_artifact_name(path.name)
        if parsed is not None and parsed[0] == base_name:
            found.append(path)
    return found


def find_in_archive(dest_root: Path, base_name: str, fingerprint: str) -> Optional[Path]:
    """
    Find the newest archive entry produced from {base_name}_{fingerprint}.md.

    Archive entry names carry a sortable timestamp, so the lexicographically
    greatest name is the most recent one.
    """
    archive_root = Path(dest_root) / ARCHIVE_DIR_NAME
    candidates = [
        path for path in walk_files(archive_root, exclude_archive=False)
        if is_archive_entry_for(path.name, base_name, fingerprint)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.name, str(p)))


def list_files(directory: Path) -> List[Path]:
    """Files directly inside a directory, sorted; empty if it does not exist."""
    try:
        with os.scandir(directory) as it:
            return [Path(e.path) for e in sorted(it, key=lambda e: e.name) if e.is_file()]
    except (FileNotFoundError, NotADirectoryError):
        return []
