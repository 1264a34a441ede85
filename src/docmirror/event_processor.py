"""Normalization and debouncing of raw filesystem events."""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .config import SyncConfig
from .exceptions import ValidationError
from .models import ChangeEvent, EventKind, MonitoredRoot, RawFSEvent
from .root_manager import RootManager
from .tree_index import walk_files

logger = logging.getLogger(__name__)


@dataclass
class PendingEvent:
    """An event waiting to be emitted after the debounce window."""
    kind: EventKind
    path: Path
    root: MonitoredRoot
    timestamp: float = field(default_factory=time.time)

    def to_change_event(self) -> ChangeEvent:
        return ChangeEvent(self.kind, self.path, self.root, self.timestamp)


class EventDebouncer:
    """
    Debounces rapid file change events.

    Coalesces multiple events on the same path within a time window
    according to semantic rules. Events leave the debouncer in the order
    their latest change arrived.
    """

    def __init__(self, debounce_ms: int = 50):
        """
        Initialize the debouncer.

        Args:
            debounce_ms: Debounce window in milliseconds
        """
        self.debounce_ms = debounce_ms
        self._pending: Dict[Path, PendingEvent] = {}
        self._lock = threading.Lock()

    def add(self, event: PendingEvent) -> None:
        """
        Add an event to the debouncer.

        Coalescing rules:
        - Multiple MODIFIEDs -> single MODIFIED (latest timestamp)
        - ADDED then MODIFIED -> single ADDED
        - ADDED then REMOVED -> cancel out (no event)
        - REMOVED then ADDED -> MODIFIED (file replaced)
        - DIRECTORY_REMOVED drops pending events for paths inside the directory

        Args:
            event: The pending event to add
        """
        with self._lock:
            path = event.path

            if event.kind == EventKind.DIRECTORY_REMOVED:
                for pending_path in list(self._pending):
                    if pending_path != path and _is_within(pending_path, path):
                        del self._pending[pending_path]
                self._pending.pop(path, None)
                self._pending[path] = event
                return

            existing = self._pending.pop(path, None)
            if existing is None:
                self._pending[path] = event
                return

            if event.kind == EventKind.MODIFIED:
                if existing.kind in (EventKind.ADDED, EventKind.MODIFIED):
                    existing.timestamp = event.timestamp
                    self._pending[path] = existing
                else:
                    self._pending[path] = event

            elif event.kind == EventKind.REMOVED:
                if existing.kind != EventKind.ADDED:
                    self._pending[path] = event

            elif event.kind == EventKind.ADDED:
                if existing.kind == EventKind.REMOVED:
                    self._pending[path] = PendingEvent(
                        kind=EventKind.MODIFIED,
                        path=path,
                        root=event.root,
                        timestamp=event.timestamp,
                    )
                else:
                    self._pending[path] = event

    def flush(self, current_time: float) -> List[PendingEvent]:
        """
        Flush events older than the debounce window.

        Args:
            current_time: Current timestamp

        Returns:
            List of events ready to emit
        """
        window_sec = self.debounce_ms / 1000.0
        ready = []

        with self._lock:
            for path, event in list(self._pending.items()):
                if (current_time - event.timestamp) >= window_sec:
                    ready.append(event)
                    del self._pending[path]

        return ready

    def flush_all(self) -> List[PendingEvent]:
        """
        Flush all pending events regardless of time.

        Returns:
            List of all pending events
        """
        with self._lock:
            events = list(self._pending.values())
            self._pending.clear()
            return events

    def clear(self) -> None:
        """Clear all pending events."""
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class EventProcessor:
    """
    Turns raw watcher events into ChangeEvents.

    A file moved within the watched roots becomes Added(destination)
    followed by Removed(source); a moved directory becomes Added for each
    monitored file under its new location followed by DirectoryRemoved for
    the old one. The engine's fingerprint lookup then relocates artifacts
    instead of converting again.
    """

    def __init__(self, root_manager: RootManager, config: Optional[SyncConfig] = None):
        """
        Initialize the event processor.

        Args:
            root_manager: Registry of watched roots
            config: Sync configuration (extension filter, ignore patterns, debounce)
        """
        self.root_manager = root_manager
        self.config = config or SyncConfig()
        self._debouncer = EventDebouncer(self.config.debounce_ms)
        self._lock = threading.Lock()

    def process(self, raw_event: RawFSEvent) -> None:
        """
        Process a raw filesystem event.

        Args:
            raw_event: The raw event from the filesystem watcher
        """
        logger.debug(f"EventProcessor.process: {raw_event.event_type} - {raw_event.src_path}")

        with self._lock:
            if raw_event.event_type == "moved":
                self._handle_move(raw_event)
            elif raw_event.event_type == "deleted":
                self._handle_delete(raw_event)
            elif raw_event.event_type == "created":
                self._handle_create(raw_event)
            elif raw_event.event_type == "modified":
                self._handle_modify(raw_event)

    def _handle_move(self, raw_event: RawFSEvent) -> None:
        src_path = Path(raw_event.src_path).absolute()
        if raw_event.dest_path is None:
            return
        dest_path = Path(raw_event.dest_path).absolute()

        if raw_event.is_directory:
            self._add_directory_contents(dest_path, raw_event.timestamp)
            self._queue_directory_removed(src_path, raw_event.timestamp)
        else:
            self._queue_file(EventKind.ADDED, dest_path, raw_event.timestamp)
            self._queue_file(EventKind.REMOVED, src_path, raw_event.timestamp)

    def _handle_delete(self, raw_event: RawFSEvent) -> None:
        path = Path(raw_event.src_path).absolute()
        if raw_event.is_directory:
            self._queue_directory_removed(path, raw_event.timestamp)
        else:
            self._queue_file(EventKind.REMOVED, path, raw_event.timestamp)

    def _handle_create(self, raw_event: RawFSEvent) -> None:
        path = Path(raw_event.src_path).absolute()
        if raw_event.is_directory:
            self._add_directory_contents(path, raw_event.timestamp)
        else:
            self._queue_file(EventKind.ADDED, path, raw_event.timestamp)

    def _handle_modify(self, raw_event: RawFSEvent) -> None:
        if raw_event.is_directory:
            return
        self._queue_file(EventKind.MODIFIED, Path(raw_event.src_path).absolute(), raw_event.timestamp)

    def _queue_file(self, kind: EventKind, path: Path, timestamp: float) -> None:
        root = self.root_manager.find_root_for_path(path)
        if root is None or not root.enabled:
            return
        if not self.config.is_monitored(path):
            return
        if self._ignored(root, path):
            return
        self._add(PendingEvent(kind, path, root, timestamp))

    def _queue_directory_removed(self, path: Path, timestamp: float) -> None:
        root = self.root_manager.find_root_for_path(path)
        if root is None or not root.enabled or path == root.path:
            return
        if self._ignored(root, path):
            return
        self._add(PendingEvent(EventKind.DIRECTORY_REMOVED, path, root, timestamp))

    def _add_directory_contents(self, directory: Path, timestamp: float) -> None:
        """A directory appeared with its contents in place; watchdog reports only the directory."""
        root = self.root_manager.find_root_for_path(directory)
        if root is None or not root.enabled or self._ignored(root, directory):
            return
        for path in walk_files(directory, follow_symlinks=self.config.follow_symlinks):
            self._queue_file(EventKind.ADDED, path, timestamp)

    def _ignored(self, root: MonitoredRoot, path: Path) -> bool:
        try:
            relative = path.relative_to(root.path)
        except ValueError:
            relative = Path(path.name)
        return self.config.should_ignore(relative)

    def _add(self, pending: PendingEvent) -> None:
        try:
            pending.to_change_event()
        except ValidationError as e:
            logger.warning(f"Dropping malformed event: {e}")
            return
        self._debouncer.add(pending)

    def flush(self, current_time: Optional[float] = None) -> List[ChangeEvent]:
        """
        Emit events whose debounce window has elapsed.

        Returns:
            ChangeEvents in arrival order
        """
        if current_time is None:
            current_time = time.time()
        with self._lock:
            return [p.to_change_event() for p in self._debouncer.flush(current_time)]

    def flush_all(self) -> List[ChangeEvent]:
        """Emit every pending event immediately."""
        with self._lock:
            return [p.to_change_event() for p in self._debouncer.flush_all()]

    def pending_count(self) -> int:
        return len(self._debouncer)

    def clear(self) -> None:
        """Clear all pending state."""
        with self._lock:
            self._debouncer.clear()


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False
