"""Watch-mode orchestrator: observers, debouncing and per-root workers."""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import SyncConfig
from .engine import ReconciliationEngine
from .event_processor import EventProcessor
from .exceptions import (
    MirrorError,
    RootError,
    RootNotFoundError,
    WatcherAlreadyRunningError,
    WatcherNotRunningError,
)
from .fs_watcher import FSWatcherPool
from .models import ChangeEvent, MonitoredRoot, TreeReport
from .root_manager import RootManager

logger = logging.getLogger(__name__)


@dataclass
class _RescanTask:
    root: MonitoredRoot
    future: Future


class _RootWorker:
    """Single consumer thread for one root; events for a root never run concurrently."""

    def __init__(self, root: MonitoredRoot, run: Callable[[object], None], stop_event: threading.Event):
        self.root = root
        self.queue: "queue.Queue[object]" = queue.Queue()
        self._run = run
        self._stop_event = stop_event
        self.thread = threading.Thread(
            target=self._loop,
            name=f"Worker-{root.output_name}",
            daemon=True,
        )

    def _loop(self) -> None:
        logger.debug(f"Worker for '{self.root.output_name}' started")
        while not self._stop_event.is_set():
            try:
                item = self.queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._run(item)
            finally:
                self.queue.task_done()
        logger.debug(f"Worker for '{self.root.output_name}' stopped")

    def drain(self) -> int:
        """Drop queued items, failing pending rescans."""
        dropped = 0
        while True:
            try:
                item = self.queue.get_nowait()
            except queue.Empty:
                return dropped
            if isinstance(item, _RescanTask):
                item.future.set_exception(WatcherNotRunningError("Watcher stopped before rescan ran"))
            self.queue.task_done()
            dropped += 1


class WatchCoordinator:
    """
    Main orchestrator for watch mode.

    Coordinates root management, filesystem watching, event normalization
    and one serialized worker per monitored root. Events for different
    roots are reconciled concurrently.
    """

    def __init__(
        self,
        config: SyncConfig,
        engine: ReconciliationEngine,
        notifier: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Sync configuration
            engine: Engine that applies each event
            notifier: Sink for start/stop notices (default: the engine's notifier)
        """
        self.config = config
        self.engine = engine
        self.notify = notifier or engine.notify

        self._root_manager = RootManager()
        self._event_processor = EventProcessor(self._root_manager, config)
        self._fs_watcher_pool: Optional[FSWatcherPool] = None

        self._workers: Dict[Path, _RootWorker] = {}
        self._running = False
        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._dispatch_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_roots(self) -> List[MonitoredRoot]:
        """Roots with an active worker."""
        return self._root_manager.get_roots()

    def start(self) -> None:
        """
        Start watching in background threads and return immediately.

        Raises:
            ConfigurationError: If the configuration is incomplete
            WatcherAlreadyRunningError: If already running
        """
        with self._lock:
            if self._running:
                raise WatcherAlreadyRunningError("Watcher is already running")

            self.config.validate(require_roots=True)
            self.engine.dest_root.mkdir(parents=True, exist_ok=True)

            self._stop_event.clear()
            self._root_manager.clear()
            self._event_processor.clear()
            self._fs_watcher_pool = FSWatcherPool(self._event_processor.process, self.config)

            for root in self.config.enabled_roots():
                try:
                    self._root_manager.add_root(root)
                except RootError as e:
                    logger.error(f"Not watching {root.path}: {e}")
                    continue
                worker = _RootWorker(root, self._run_item, self._stop_event)
                self._workers[root.path] = worker
                worker.thread.start()

            self.engine.move_cache.start()

            self._flush_thread = threading.Thread(target=self._flush_loop, name="FlushLoop", daemon=True)
            self._flush_thread.start()

            for root in self._root_manager.get_roots():
                try:
                    self._fs_watcher_pool.start_watching(root)
                except MirrorError as e:
                    logger.error(f"Failed to start monitoring {root.path}: {e}")

            self._running = True

        self.notify(f"Watching {len(self._fs_watcher_pool)} folder(s)")

    def stop(self) -> None:
        """
        Stop watching.

        Observers are closed first, then each worker finishes its current
        item; queued and still-debouncing events are dropped.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False

            if self._fs_watcher_pool is not None:
                self._fs_watcher_pool.stop_all()
            self._stop_event.set()

            if self._flush_thread is not None and self._flush_thread.is_alive():
                self._flush_thread.join(timeout=2.0)
            self._flush_thread = None

            dropped = len(self._event_processor.flush_all())
            for worker in self._workers.values():
                worker.thread.join()
                dropped += worker.drain()
            self._workers.clear()
            self._root_manager.clear()

            self.engine.move_cache.stop()

        if dropped:
            logger.info(f"Dropped {dropped} pending event(s) on shutdown")
        self.notify("Stopped watching")

    def submit(self, event: ChangeEvent) -> None:
        """
        Queue an event on its root's worker.

        Raises:
            WatcherNotRunningError: If the coordinator is not running
            RootNotFoundError: If the event's root has no worker
        """
        if not self._running:
            raise WatcherNotRunningError("Watcher is not running")
        worker = self._workers.get(event.root.path)
        if worker is None:
            raise RootNotFoundError(f"Not watching {event.root.path}")
        worker.queue.put(event)

    def rescan(self, timeout: Optional[float] = None) -> List[TreeReport]:
        """
        Rescan every enabled root.

        While running, the rescan is queued on each root's worker so it
        serializes with live events for that root.

        Args:
            timeout: Seconds to wait for each root's rescan

        Returns:
            One TreeReport per root
        """
        if not self._running:
            return self.engine.reconcile_all()

        tasks = []
        for worker in list(self._workers.values()):
            task = _RescanTask(worker.root, Future())
            worker.queue.put(task)
            tasks.append(task)
        return [task.future.result(timeout=timeout) for task in tasks]

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """
        Block until no event is debouncing or queued.

        Returns:
            True if idle was reached before the timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._dispatch_lock:
                idle = self._event_processor.pending_count() == 0 and all(
                    w.queue.unfinished_tasks == 0 for w in list(self._workers.values())
                )
            if idle:
                return True
            time.sleep(0.05)
        return False

    def _run_item(self, item: object) -> None:
        if isinstance(item, _RescanTask):
            if not item.future.set_running_or_notify_cancel():
                return
            try:
                item.future.set_result(self.engine.reconcile_tree(item.root))
            except Exception as e:
                logger.error(f"Rescan of {item.root.path} failed: {e}")
                item.future.set_exception(e)
            return

        try:
            self.engine.handle(item)
        except MirrorError as e:
            logger.error(f"Failed to reconcile {item.source_path}: {e}")
        except Exception:
            logger.exception(f"Unexpected error reconciling {item.source_path}")

    def _flush_loop(self) -> None:
        """Worker loop that periodically flushes debounced events."""
        flush_interval = self.config.flush_interval_ms / 1000.0
        logger.debug(f"Flush loop started, interval={flush_interval}s")

        while not self._stop_event.is_set():
            try:
                self._dispatch_ready()
            except Exception as e:
                logger.error(f"Flush loop error: {e}")

            self._stop_event.wait(timeout=flush_interval)

    def _dispatch_ready(self) -> int:
        """Move debounced events onto worker queues; wait_idle never sees them in between."""
        with self._dispatch_lock:
            events = self._event_processor.flush()
            for event in events:
                worker = self._workers.get(event.root.path)
                if worker is not None:
                    worker.queue.put(event)
            return len(events)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
