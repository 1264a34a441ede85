"""Configuration for the docmirror package."""

import fnmatch
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import ConfigurationError
from .models import MonitoredRoot

logger = logging.getLogger(__name__)

ENV_PREFIX = "DOCMIRROR_"


def _default_monitored_extensions() -> Dict[str, bool]:
    return {
        ".pdf": True,
        ".doc": True,
        ".docx": True,
        ".xls": True,
        ".xlsx": True,
        ".ppt": True,
        ".pptx": True,
        ".txt": True,
        ".html": True,
        ".htm": True,
        ".rtf": True,
        ".odt": True,
        ".ods": True,
        ".odp": True,
    }


@dataclass
class LoggingConfig:
    """
    Logging options.

    Attributes:
        enabled: Whether to write a log file in addition to the console
        log_file: Path of the log file
        max_log_size: Size in bytes at which the log file is rotated
        max_log_files: Number of rotated files kept
        log_level: One of DEBUG, INFO, WARN, WARNING, ERROR
    """
    enabled: bool = True
    log_file: Path = field(default_factory=lambda: Path(".docmirror/logs/docmirror.log"))
    max_log_size: int = 5 * 1024 * 1024
    max_log_files: int = 5
    log_level: str = "INFO"

    def __post_init__(self):
        if isinstance(self.log_file, str):
            self.log_file = Path(self.log_file)

    @property
    def level(self) -> int:
        name = self.log_level.upper()
        if name == "WARN":
            name = "WARNING"
        return getattr(logging, name, logging.INFO)


@dataclass
class SyncConfig:
    """
    Settings consumed read-only by the watcher and reconciliation engine.

    Attributes:
        roots: Monitored source directories
        vault_path: Directory the destination folder lives in
        output_folder: Destination folder name inside vault_path
        monitored_extensions: Extension -> enabled flag
        archive_on_change: Archive stale/removed artifacts instead of deleting them
        conversion_timeout_seconds: Bound on a single converter invocation
        max_retries: Extra conversion attempts after the first failure
        retry_delay_seconds: Base delay of the linear retry backoff
        move_suppression_ttl_seconds: Lifetime of a recent-move record
        suppression_sweep_interval_seconds: Interval of the recent-move sweep
        debounce_ms: Milliseconds to wait before emitting coalesced events
        flush_interval_ms: Interval for flushing pending events
        ignore_patterns: Glob patterns for files to ignore
        follow_symlinks: Whether tree walks descend into symlinked directories
        converter_command: Command line prefix of the external converter
        docintel_endpoint: Optional Document Intelligence endpoint for the converter
        conversion_workers: Threads available for concurrent conversions
    """
    roots: List[MonitoredRoot] = field(default_factory=list)
    vault_path: Optional[Path] = None
    output_folder: str = "ExternalConverted"
    monitored_extensions: Dict[str, bool] = field(default_factory=_default_monitored_extensions)
    archive_on_change: bool = True
    conversion_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    move_suppression_ttl_seconds: float = 15.0
    suppression_sweep_interval_seconds: float = 10.0
    debounce_ms: int = 50
    flush_interval_ms: int = 100
    ignore_patterns: List[str] = field(default_factory=lambda: [
        ".*",
        "*.tmp",
        "*.swp",
        "*.swo",
        "*~",
        "~$*",
        ".git/*",
        "__pycache__/*",
        "Thumbs.db",
    ])
    follow_symlinks: bool = False
    converter_command: List[str] = field(default_factory=lambda: ["markitdown"])
    docintel_endpoint: str = ""
    conversion_workers: int = 4
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        if isinstance(self.vault_path, str):
            self.vault_path = Path(self.vault_path) if self.vault_path.strip() else None
        self.roots = [
            r if isinstance(r, MonitoredRoot) else MonitoredRoot.from_dict(r)
            for r in self.roots
        ]
        self.monitored_extensions = {
            self._normalize_extension(ext): bool(enabled)
            for ext, enabled in self.monitored_extensions.items()
        }
        if isinstance(self.converter_command, str):
            self.converter_command = self.converter_command.split()
        if isinstance(self.logging, dict):
            self.logging = LoggingConfig(**self.logging)

    @staticmethod
    def _normalize_extension(ext: str) -> str:
        ext = ext.strip().lower()
        return ext if ext.startswith(".") else f".{ext}"

    @property
    def destination_root(self) -> Path:
        """Absolute destination tree root ({vault_path}/{output_folder})."""
        if self.vault_path is None:
            raise ConfigurationError("No vault path configured")
        if not self.output_folder or not self.output_folder.strip():
            raise ConfigurationError("No destination output folder configured")
        return (self.vault_path / self.output_folder.strip()).resolve()

    def enabled_roots(self) -> List[MonitoredRoot]:
        """Enabled roots with a non-blank path."""
        return [r for r in self.roots if r.enabled and str(r.path).strip() not in ("", ".")]

    def validate(self, require_roots: bool = True) -> None:
        """
        Check the settings an operation needs before any filesystem mutation.

        Raises:
            ConfigurationError: If a required setting is missing or invalid
        """
        self.destination_root
        if require_roots and not self.enabled_roots():
            raise ConfigurationError("No enabled monitored folders configured")
        for root in self.enabled_roots():
            if not root.path.is_absolute():
                raise ConfigurationError(f"Monitored folder must be an absolute path: {root.path}")
        if self.conversion_timeout_seconds <= 0:
            raise ConfigurationError("conversion_timeout_seconds must be positive")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative")
        if not self.converter_command:
            raise ConfigurationError("converter_command must not be empty")

    def is_monitored(self, path: Path) -> bool:
        """Check if the file extension is enabled for monitoring."""
        if isinstance(path, str):
            path = Path(path)
        return self.monitored_extensions.get(path.suffix.lower(), False)

    def should_ignore(self, path: Path) -> bool:
        """
        Check if a path should be ignored based on ignore patterns.

        Args:
            path: Path to check

        Returns:
            True if the path should be ignored
        """
        path_str = str(path)
        name = path.name

        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(name, pattern):
                return True
            if fnmatch.fnmatch(path_str, f"*/{pattern}"):
                return True
            if fnmatch.fnmatch(path_str, pattern):
                return True

        return False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "roots": [r.to_dict() for r in self.roots],
            "vault_path": str(self.vault_path) if self.vault_path else None,
            "output_folder": self.output_folder,
            "monitored_extensions": dict(self.monitored_extensions),
            "archive_on_change": self.archive_on_change,
            "conversion_timeout_seconds": self.conversion_timeout_seconds,
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay_seconds,
            "move_suppression_ttl_seconds": self.move_suppression_ttl_seconds,
            "suppression_sweep_interval_seconds": self.suppression_sweep_interval_seconds,
            "debounce_ms": self.debounce_ms,
            "flush_interval_ms": self.flush_interval_ms,
            "ignore_patterns": list(self.ignore_patterns),
            "follow_symlinks": self.follow_symlinks,
            "converter_command": list(self.converter_command),
            "docintel_endpoint": self.docintel_endpoint,
            "conversion_workers": self.conversion_workers,
            "logging": {
                "enabled": self.logging.enabled,
                "log_file": str(self.logging.log_file),
                "max_log_size": self.logging.max_log_size,
                "max_log_files": self.logging.max_log_files,
                "log_level": self.logging.log_level,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


def apply_env_overrides(config: SyncConfig, environ: Optional[Dict[str, str]] = None) -> SyncConfig:
    """
    Override settings from DOCMIRROR_* environment variables.

    Recognized: DOCMIRROR_VAULT_PATH, DOCMIRROR_OUTPUT_FOLDER,
    DOCMIRROR_ARCHIVE_ON_CHANGE, DOCMIRROR_CONVERSION_TIMEOUT,
    DOCMIRROR_MAX_RETRIES, DOCMIRROR_CONVERTER_COMMAND,
    DOCMIRROR_DOCINTEL_ENDPOINT, DOCMIRROR_LOG_LEVEL.
    """
    env = os.environ if environ is None else environ

    def get(name: str) -> Optional[str]:
        value = env.get(ENV_PREFIX + name)
        return value if value not in (None, "") else None

    try:
        if get("VAULT_PATH"):
            config.vault_path = Path(get("VAULT_PATH"))
        if get("OUTPUT_FOLDER"):
            config.output_folder = get("OUTPUT_FOLDER")
        if get("ARCHIVE_ON_CHANGE"):
            config.archive_on_change = get("ARCHIVE_ON_CHANGE").lower() in ("1", "true", "yes", "on")
        if get("CONVERSION_TIMEOUT"):
            config.conversion_timeout_seconds = float(get("CONVERSION_TIMEOUT"))
        if get("MAX_RETRIES"):
            config.max_retries = int(get("MAX_RETRIES"))
        if get("CONVERTER_COMMAND"):
            config.converter_command = get("CONVERTER_COMMAND").split()
        if get("DOCINTEL_ENDPOINT"):
            config.docintel_endpoint = get("DOCINTEL_ENDPOINT")
        if get("LOG_LEVEL"):
            config.logging.log_level = get("LOG_LEVEL")
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment override: {e}")
    return config


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> SyncConfig:
    """
    Load settings from a JSON file (if given and present) plus environment overrides.

    Raises:
        ConfigurationError: If the file cannot be parsed
    """
    config = SyncConfig()
    if path is not None:
        path = Path(path)
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"Cannot read settings file {path}: {e}")
            if not isinstance(data, dict):
                raise ConfigurationError(f"Settings file {path} must contain a JSON object")
            try:
                config = SyncConfig.from_dict(data)
            except (TypeError, KeyError) as e:
                raise ConfigurationError(f"Invalid settings in {path}: {e}")
        else:
            logger.info(f"Settings file not found, using defaults: {path}")
    return apply_env_overrides(config, environ)


def save_config(config: SyncConfig, path: Path) -> None:
    """Write settings to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
