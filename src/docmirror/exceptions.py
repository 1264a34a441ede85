"""Custom exceptions for the docmirror package."""

from typing import Optional


class MirrorError(Exception):
    """Base exception for all docmirror errors."""
    pass


class ConfigurationError(MirrorError):
    """A required setting is missing or invalid."""
    pass


class ValidationError(MirrorError, ValueError):
    """A change event or other input is malformed."""
    pass


class FileSystemError(MirrorError):
    """A path is missing, unreadable, or a directory could not be created."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class SourceNotFoundError(FileSystemError):
    """The source file vanished before it could be read."""
    pass


class ConversionError(MirrorError):
    """The conversion gateway failed for a single attempt."""
    pass


class ConversionTimeoutError(ConversionError):
    """The conversion gateway did not finish within its timeout."""
    pass


class FileConversionError(MirrorError):
    """Conversion failed after all retries; a placeholder artifact was written."""
    def __init__(self, message: str, file_path: str, timed_out: bool = False):
        super().__init__(message)
        self.file_path = file_path
        self.timed_out = timed_out


class ArchiveError(MirrorError):
    """An artifact could not be relocated into the archive."""
    def __init__(self, message: str, file_path: str):
        super().__init__(message)
        self.file_path = file_path


class MonitoringError(MirrorError):
    """A watch subscription could not be established."""
    def __init__(self, message: str, folder_path: str):
        super().__init__(message)
        self.folder_path = folder_path


class RootError(MirrorError):
    """Error related to monitored root management."""
    pass


class RootNotFoundError(RootError):
    """Specified root folder does not exist."""
    pass


class RootAlreadyExistsError(RootError):
    """Root folder is already monitored, or overlaps a monitored root."""
    pass


class WatcherNotRunningError(MirrorError):
    """Watch coordinator is not running."""
    pass


class WatcherAlreadyRunningError(MirrorError):
    """Watch coordinator is already running."""
    pass
