"""File system watcher using watchdog library."""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from watchdog.observers import Observer
from watchdog.events import (
    FileSystemEventHandler,
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
)

from .config import SyncConfig
from .exceptions import MonitoringError
from .models import MonitoredRoot, RawFSEvent
from .paths import ARCHIVE_DIR_NAME

logger = logging.getLogger(__name__)


class FSEventHandler(FileSystemEventHandler):
    """Handler that converts watchdog events to RawFSEvent."""

    def __init__(
        self,
        callback: Callable[[RawFSEvent], None],
        config: SyncConfig,
        root: MonitoredRoot,
    ):
        super().__init__()
        self.callback = callback
        self.config = config
        self.root = root

    def _should_ignore(self, path: Path) -> bool:
        """Ignore patterns are matched against the path relative to the root."""
        try:
            relative = path.relative_to(self.root.path)
        except ValueError:
            return False
        if ARCHIVE_DIR_NAME in relative.parts:
            return True
        return self.config.should_ignore(relative)

    def _emit(self, event_type: str, src_path: Path, dest_path: Optional[Path] = None, is_directory: bool = False):
        """Emit a RawFSEvent to the callback."""
        if self._should_ignore(src_path):
            # A rename from an ignored temp name is how many editors save
            if not (dest_path and not self._should_ignore(dest_path)):
                return
            event_type, src_path, dest_path = "created", dest_path, None
        elif dest_path and self._should_ignore(dest_path):
            event_type, dest_path = "deleted", None

        raw_event = RawFSEvent(
            event_type=event_type,
            src_path=src_path,
            dest_path=dest_path,
            is_directory=is_directory,
            timestamp=time.time(),
        )
        try:
            self.callback(raw_event)
        except Exception as e:
            logger.error(f"Error handling {event_type} event for {src_path}: {e}")

    def on_created(self, event):
        is_dir = isinstance(event, DirCreatedEvent)
        self._emit("created", Path(event.src_path), is_directory=is_dir)

    def on_deleted(self, event):
        is_dir = isinstance(event, DirDeletedEvent)
        self._emit("deleted", Path(event.src_path), is_directory=is_dir)

    def on_modified(self, event):
        is_dir = isinstance(event, DirModifiedEvent)
        self._emit("modified", Path(event.src_path), is_directory=is_dir)

    def on_moved(self, event):
        is_dir = isinstance(event, DirMovedEvent)
        self._emit(
            "moved",
            Path(event.src_path),
            Path(event.dest_path),
            is_directory=is_dir,
        )


class FSWatcherPool:
    """
    Manages multiple watchdog observers, one per root.

    Provides a unified interface for starting and stopping
    watchers for multiple root directories.
    """

    def __init__(
        self,
        event_callback: Callable[[RawFSEvent], None],
        config: Optional[SyncConfig] = None,
    ):
        """
        Initialize the watcher pool.

        Args:
            event_callback: Callback function for raw filesystem events
            config: Sync configuration
        """
        self.event_callback = event_callback
        self.config = config or SyncConfig()
        self._observers: Dict[Path, Observer] = {}
        self._lock = threading.Lock()

    def start_watching(self, root: MonitoredRoot) -> bool:
        """
        Start watching a root directory recursively.

        Args:
            root: The monitored root

        Returns:
            True if watching started, False if already watching

        Raises:
            MonitoringError: If the observer could not be started
        """
        with self._lock:
            if root.path in self._observers:
                return False

            if not root.path.is_dir():
                raise MonitoringError(f"Monitored folder does not exist: {root.path}", str(root.path))

            observer = Observer()
            handler = FSEventHandler(self.event_callback, self.config, root)
            try:
                observer.schedule(handler, str(root.path), recursive=True)
                observer.start()
            except OSError as e:
                raise MonitoringError(f"Cannot watch {root.path}: {e}", str(root.path))

            self._observers[root.path] = observer
            logger.info(f"Watching {root.path} as '{root.output_name}'")
            return True

    def stop_watching(self, root: MonitoredRoot) -> bool:
        """
        Stop watching a root directory.

        Returns:
            True if watching stopped, False if not watching
        """
        with self._lock:
            observer = self._observers.pop(root.path, None)

        if observer is None:
            return False
        observer.stop()
        observer.join(timeout=5.0)
        return True

    def stop_all(self) -> int:
        """
        Stop all watchers.

        Returns:
            Number of watchers stopped
        """
        with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()

        for observer in observers:
            observer.stop()
        for observer in observers:
            observer.join(timeout=5.0)
        return len(observers)

    def is_watching(self, root: MonitoredRoot) -> bool:
        with self._lock:
            return root.path in self._observers

    def get_watched_roots(self) -> List[Path]:
        with self._lock:
            return list(self._observers.keys())

    def __len__(self) -> int:
        """Return the number of active watchers."""
        with self._lock:
            return len(self._observers)
