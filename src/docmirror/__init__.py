"""
Document Mirror Package

Keeps a Markdown mirror of external document folders inside a vault.

Features:
- Conversion of office and text documents through an external converter
- Content-addressed artifact names ({base}_{sha256}.md)
- Move and rename detection by fingerprint, without reconversion
- Write-once archive of deleted and superseded artifacts
- Live watching with per-root serialized workers
- Full-tree rescans that converge after missed events
"""

from .models import (
    EventKind,
    ReconcileAction,
    MonitoredRoot,
    ChangeEvent,
    RawFSEvent,
    ReconcileResult,
    TreeReport,
)

from .config import SyncConfig, LoggingConfig, load_config, save_config

from .exceptions import (
    MirrorError,
    ConfigurationError,
    ValidationError,
    FileSystemError,
    SourceNotFoundError,
    ConversionError,
    ConversionTimeoutError,
    FileConversionError,
    ArchiveError,
    MonitoringError,
    RootError,
    RootNotFoundError,
    RootAlreadyExistsError,
    WatcherNotRunningError,
    WatcherAlreadyRunningError,
)

from .hasher import compute_fingerprint
from .archive import ArchiveStore
from .gateway import ConversionGateway, MarkItDownGateway, CallableGateway
from .suppression import RecentMoveCache
from .engine import ReconciliationEngine
from .root_manager import RootManager
from .fs_watcher import FSWatcherPool, FSEventHandler
from .event_processor import EventProcessor, EventDebouncer
from .coordinator import WatchCoordinator


__all__ = [
    # Models
    "EventKind",
    "ReconcileAction",
    "MonitoredRoot",
    "ChangeEvent",
    "RawFSEvent",
    "ReconcileResult",
    "TreeReport",
    # Config
    "SyncConfig",
    "LoggingConfig",
    "load_config",
    "save_config",
    # Exceptions
    "MirrorError",
    "ConfigurationError",
    "ValidationError",
    "FileSystemError",
    "SourceNotFoundError",
    "ConversionError",
    "ConversionTimeoutError",
    "FileConversionError",
    "ArchiveError",
    "MonitoringError",
    "RootError",
    "RootNotFoundError",
    "RootAlreadyExistsError",
    "WatcherNotRunningError",
    "WatcherAlreadyRunningError",
    # Components
    "compute_fingerprint",
    "ArchiveStore",
    "ConversionGateway",
    "MarkItDownGateway",
    "CallableGateway",
    "RecentMoveCache",
    "ReconciliationEngine",
    "RootManager",
    "FSWatcherPool",
    "FSEventHandler",
    "EventProcessor",
    "EventDebouncer",
    # Orchestration
    "WatchCoordinator",
]

__version__ = "0.1.0"
