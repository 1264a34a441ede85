"""Data models for the docmirror package."""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import ValidationError


_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class EventKind(Enum):
    """Kinds of source change handled by the reconciliation engine."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    DIRECTORY_REMOVED = "directory_removed"


class ReconcileAction(Enum):
    """What the engine did to the destination tree for one event."""
    CONVERTED = "converted"
    UPDATED = "updated"
    MOVED = "moved"
    RESTORED = "restored"
    ARCHIVED = "archived"
    DELETED = "deleted"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class MonitoredRoot:
    """
    An external source directory under observation.

    Attributes:
        path: Absolute path of the source directory
        alias: Label used as the first destination path segment
        enabled: Whether the root is watched and rescanned
    """
    path: Path
    alias: str = ""
    enabled: bool = True

    def __post_init__(self):
        if isinstance(self.path, str):
            object.__setattr__(self, "path", Path(self.path))
        if self.alias is None:
            object.__setattr__(self, "alias", "")

    @property
    def output_name(self) -> str:
        """Destination folder name: the alias, or the sanitized basename."""
        if self.alias and self.alias.strip():
            return self.alias.strip()
        return _UNSAFE_NAME_CHARS.sub("_", self.path.name)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "path": str(self.path),
            "alias": self.alias,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Union[dict, str]) -> "MonitoredRoot":
        """Create from dictionary, or from a bare path string (legacy settings)."""
        if isinstance(data, str):
            return cls(path=Path(data))
        return cls(
            path=Path(data["path"]),
            alias=data.get("alias") or "",
            enabled=data.get("enabled", True),
        )


@dataclass(frozen=True)
class ChangeEvent:
    """
    A normalized source change, consumed exactly once by the engine.

    Attributes:
        kind: What happened to the source path
        source_path: Absolute path of the affected file or directory
        root: The monitored root the path belongs to
        timestamp: Unix timestamp when the change was observed
    """
    kind: EventKind
    source_path: Path
    root: MonitoredRoot
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.kind, EventKind):
            raise ValidationError(f"unknown event kind: {self.kind!r}")
        if isinstance(self.source_path, str):
            object.__setattr__(self, "source_path", Path(self.source_path))
        if not self.source_path.is_absolute():
            raise ValidationError(f"source_path must be absolute: {self.source_path}")
        if not self.root.path.is_absolute():
            raise ValidationError(f"root must be absolute: {self.root.path}")
        try:
            self.source_path.relative_to(self.root.path)
        except ValueError:
            raise ValidationError(
                f"'{self.source_path}' is not inside monitored root '{self.root.path}'"
            )

    @property
    def relative_dir(self) -> Path:
        """Directory of the source relative to its root (the path itself for directory events)."""
        if self.kind == EventKind.DIRECTORY_REMOVED:
            return self.source_path.relative_to(self.root.path)
        return self.source_path.parent.relative_to(self.root.path)

    @property
    def base_name(self) -> str:
        return self.source_path.stem

    @property
    def extension(self) -> str:
        return self.source_path.suffix.lower()


@dataclass
class RawFSEvent:
    """
    Raw event from the filesystem watcher before normalization.

    Attributes:
        event_type: Raw event type string (created, deleted, modified, moved)
        src_path: Source path of the event
        dest_path: Destination path (for move events)
        is_directory: Whether this is a directory event
        timestamp: Unix timestamp when the event occurred
    """
    event_type: str
    src_path: Path
    dest_path: Optional[Path] = None
    is_directory: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass
class ReconcileResult:
    """Outcome of handling a single change event."""
    action: ReconcileAction
    source_path: Path
    artifact_path: Optional[Path] = None
    message: str = ""
    archived: List[Path] = field(default_factory=list)


@dataclass
class TreeReport:
    """Aggregate outcome of a full-tree rescan of one monitored root."""
    root: MonitoredRoot
    converted: int = 0
    updated: int = 0
    moved: int = 0
    restored: int = 0
    archived: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record(self, result: ReconcileResult) -> None:
        """Count one per-file result."""
        if result.action == ReconcileAction.ARCHIVED:
            self.archived += max(1, len(result.archived))
            return
        counters = {
            ReconcileAction.CONVERTED: "converted",
            ReconcileAction.UPDATED: "updated",
            ReconcileAction.MOVED: "moved",
            ReconcileAction.RESTORED: "restored",
            ReconcileAction.DELETED: "deleted",
            ReconcileAction.FAILED: "failed",
        }
        name = counters.get(result.action, "skipped")
        setattr(self, name, getattr(self, name) + 1)
        self.archived += len(result.archived)

    def record_failure(self, path: Path, error: Exception) -> None:
        self.failed += 1
        self.errors.append(f"{path}: {error}")

    @property
    def changed(self) -> int:
        return (
            self.converted + self.updated + self.moved
            + self.restored + self.archived + self.deleted
        )

    def summary(self) -> str:
        """Single human-readable line describing the rescan."""
        text = (
            f"Rescan of '{self.root.output_name}' complete: "
            f"{self.converted} converted, {self.updated} updated, "
            f"{self.moved} moved, {self.restored} restored, "
            f"{self.archived} archived, {self.deleted} deleted, "
            f"{self.skipped} unchanged"
        )
        if self.failed:
            text += f", {self.failed} failed (see log)"
        return text
