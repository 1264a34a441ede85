"""
Pure path construction for destination artifacts and archive entries.

Live artifacts:  {dest_root}/{alias}/{relative_dir}/{base_name}_{fingerprint}.md
Archive entries: {dest_root}/.archive/{alias}/{relative_dir}/{artifact_name}_{reason}_{stamp}.md

Nothing in this module touches the filesystem or reads the clock.
"""

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

ARCHIVE_DIR_NAME = ".archive"
ARTIFACT_SUFFIX = ".md"

REASON_DELETED = "deleted"
REASON_ARCHIVED = "archived"

_HEX = re.compile(r"^[0-9a-f]{8,128}$")

PathLike = Union[str, Path]


def artifact_name(base_name: str, fingerprint: str) -> str:
    """Deterministic artifact file name for a source base name and fingerprint."""
    return f"{base_name}_{fingerprint}{ARTIFACT_SUFFIX}"


def parse_artifact_name(name: str) -> Optional[Tuple[str, str]]:
    """
    Split an artifact file name into (base_name, fingerprint).

    The fingerprint follows the last underscore, so base names may
    themselves contain underscores.

    Returns:
        (base_name, fingerprint), or None if the name is not an artifact name
    """
    if not name.endswith(ARTIFACT_SUFFIX):
        return None
    stem = name[: -len(ARTIFACT_SUFFIX)]
    base, sep, fingerprint = stem.rpartition("_")
    if not sep or not base or not _HEX.match(fingerprint):
        return None
    return base, fingerprint


def relative_dir_for(root_path: PathLike, source_path: PathLike) -> Path:
    """Parent directory of a source file relative to its monitored root."""
    return Path(source_path).parent.relative_to(Path(root_path))


def destination_dir(dest_root: PathLike, alias: str, relative_dir: PathLike) -> Path:
    """Live destination directory mirroring a source directory."""
    return Path(dest_root) / alias / Path(relative_dir)


def canonical_artifact_path(
    dest_root: PathLike,
    alias: str,
    relative_dir: PathLike,
    base_name: str,
    fingerprint: str,
) -> Path:
    """The single path an artifact for this content must occupy when current."""
    return destination_dir(dest_root, alias, relative_dir) / artifact_name(base_name, fingerprint)


def archive_dir(dest_root: PathLike, alias: str, relative_dir: PathLike) -> Path:
    """Archive directory mirroring a live destination directory."""
    return Path(dest_root) / ARCHIVE_DIR_NAME / alias / Path(relative_dir)


def format_timestamp(timestamp: datetime) -> str:
    """Filesystem-safe UTC timestamp, e.g. 2024-05-01T10-20-30-123456Z."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def archive_path(
    dest_root: PathLike,
    alias: str,
    relative_dir: PathLike,
    original_artifact_name: str,
    timestamp: datetime,
    reason: str = REASON_DELETED,
) -> Path:
    """Archive entry path for an artifact; the timestamp is supplied by the caller."""
    name = f"{original_artifact_name}_{reason}_{format_timestamp(timestamp)}{ARTIFACT_SUFFIX}"
    return archive_dir(dest_root, alias, relative_dir) / name


def is_archive_entry_for(name: str, base_name: str, fingerprint: str) -> bool:
    """Whether an archive entry name was produced from {base_name}_{fingerprint}.md."""
    original = artifact_name(base_name, fingerprint)
    return name == original or name.startswith(f"{original}_")
