"""Logging configuration for the docmirror command line."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: Optional[LoggingConfig] = None, console: bool = True) -> Optional[Path]:
    """
    Configure the root logger with a console handler and a rotating log file.

    Calling it again replaces the handlers installed by a previous call.

    Args:
        config: Logging settings (defaults to LoggingConfig())
        console: Also log to stderr

    Returns:
        Path of the log file, or None if file logging is disabled
    """
    config = config or LoggingConfig()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, "_docmirror", False):
            root_logger.removeHandler(handler)
            handler.close()
    root_logger.setLevel(config.level)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._docmirror = True
        root_logger.addHandler(console_handler)

    if not config.enabled:
        return None

    log_file = Path(config.log_file).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.max_log_size,
        backupCount=config.max_log_files,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler._docmirror = True
    root_logger.addHandler(file_handler)

    return log_file
