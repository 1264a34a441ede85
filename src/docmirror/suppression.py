"""Short-lived record of artifacts the engine has just relocated."""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveRecord:
    """Where an artifact was moved to, and when (clock seconds)."""
    destination: Path
    timestamp: float


class RecentMoveCache:
    """
    Fingerprint -> recent move, used to ignore removals that race a move.

    Every operation, including the periodic sweep, goes through one lock.
    An entry whose age has reached the TTL never suppresses anything, even
    if the sweep has not removed it yet.
    """

    def __init__(
        self,
        ttl_seconds: float = 15.0,
        sweep_interval_seconds: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of a record
            sweep_interval_seconds: Interval of the background sweep
            clock: Monotonic seconds source (default: time.monotonic)
        """
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, MoveRecord] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record(self, fingerprint: str, destination: Path) -> None:
        with self._lock:
            self._entries[fingerprint] = MoveRecord(Path(destination), self._clock())

    def lookup(self, fingerprint: str) -> Optional[MoveRecord]:
        """Return the live record for a fingerprint, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if self._clock() - entry.timestamp >= self.ttl_seconds:
                del self._entries[fingerprint]
                return None
            return entry

    def is_suppressed(self, fingerprint: str) -> bool:
        return self.lookup(fingerprint) is not None

    def sweep(self) -> int:
        """
        Drop expired records.

        Returns:
            Number of records removed
        """
        with self._lock:
            now = self._clock()
            expired = [
                fp for fp, entry in self._entries.items()
                if now - entry.timestamp >= self.ttl_seconds
            ]
            for fp in expired:
                del self._entries[fp]
        if expired:
            logger.debug(f"Swept {len(expired)} expired move record(s)")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def start(self) -> None:
        """Start the periodic sweep thread (no-op if already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="MoveCacheSweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Cancel the periodic sweep and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Move cache sweep error: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
