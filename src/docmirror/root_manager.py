"""Thread-safe management of monitored source roots."""

import threading
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import RootAlreadyExistsError, RootNotFoundError
from .models import MonitoredRoot


class RootManager:
    """
    Thread-safe registry of the roots being watched.

    Roots are keyed by their resolved path, so two spellings of the same
    directory count as one root. Overlapping roots are rejected because
    a file inside both would be mirrored twice.
    """

    def __init__(self):
        """Initialize the root manager."""
        self._roots: Dict[Path, MonitoredRoot] = {}
        self._lock = threading.RLock()

    def add_root(self, root: MonitoredRoot, must_exist: bool = True) -> MonitoredRoot:
        """
        Add a root to watch.

        Args:
            root: The monitored root
            must_exist: If True, raise error if the directory doesn't exist

        Returns:
            The registered root

        Raises:
            RootNotFoundError: If must_exist and the directory doesn't exist
            RootAlreadyExistsError: If the root, or an overlapping one, is already registered
        """
        key = root.path.resolve()

        if must_exist and not key.is_dir():
            raise RootNotFoundError(f"Monitored folder does not exist: {root.path}")

        with self._lock:
            if key in self._roots:
                raise RootAlreadyExistsError(f"Root already being watched: {root.path}")

            for existing_key, existing in self._roots.items():
                if _is_within(key, existing_key):
                    raise RootAlreadyExistsError(
                        f"'{root.path}' is already inside watched root '{existing.path}'"
                    )
                if _is_within(existing_key, key):
                    raise RootAlreadyExistsError(
                        f"'{root.path}' contains already-watched root '{existing.path}'"
                    )
                if existing.output_name == root.output_name:
                    raise RootAlreadyExistsError(
                        f"Alias '{root.output_name}' is already used by '{existing.path}'"
                    )

            self._roots[key] = root
            return root

    def remove_root(self, path: Path) -> bool:
        """
        Remove a root from watching.

        Returns:
            True if the root was removed, False if not found
        """
        with self._lock:
            return self._roots.pop(Path(path).resolve(), None) is not None

    def get_roots(self) -> List[MonitoredRoot]:
        """Registered roots in insertion order."""
        with self._lock:
            return list(self._roots.values())

    def find_root_for_path(self, path: Path) -> Optional[MonitoredRoot]:
        """
        Find which root contains the given path.

        The path is compared as given first, then resolved, so paths
        reported by the watcher under a symlinked root still match.
        """
        path = Path(path)
        with self._lock:
            for root in self._roots.values():
                if _is_within(path, root.path):
                    return root
            resolved = path.resolve()
            for key, root in self._roots.items():
                if _is_within(resolved, key):
                    return root
            return None

    def has_root(self, path: Path) -> bool:
        with self._lock:
            return Path(path).resolve() in self._roots

    def clear(self) -> int:
        """
        Remove all roots.

        Returns:
            Number of roots removed
        """
        with self._lock:
            count = len(self._roots)
            self._roots.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._roots)

    def __contains__(self, path: Path) -> bool:
        return self.has_root(path)


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False
