#!/usr/bin/env python3
"""
CLI for mirroring external folders into a Markdown vault.

Usage:
    docmirror watch --vault ~/Notes --root ~/Documents/Reports=reports
    docmirror rescan --config settings.json
    docmirror sync-file ~/Documents/Reports/q3.pdf --config settings.json
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import SyncConfig, load_config
from .coordinator import WatchCoordinator
from .engine import ReconciliationEngine
from .exceptions import ConfigurationError, FileConversionError, MirrorError
from .gateway import MarkItDownGateway
from .logging_setup import setup_logging
from .models import EventKind, MonitoredRoot

logger = logging.getLogger("docmirror.cli")


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def parse_root(value: str) -> MonitoredRoot:
    """Parse PATH or PATH=ALIAS."""
    path, sep, alias = value.partition("=")
    if not path:
        raise argparse.ArgumentTypeError(f"Invalid root: {value!r}")
    return MonitoredRoot(path=Path(path).expanduser().absolute(), alias=alias if sep else "")


def build_config(args) -> SyncConfig:
    """Settings file and environment, then command line overrides."""
    config = load_config(Path(args.config) if args.config else None)
    if args.vault:
        config.vault_path = Path(args.vault).expanduser()
    if args.output_folder:
        config.output_folder = args.output_folder
    if args.roots:
        config.roots = list(args.roots)
    if args.no_archive:
        config.archive_on_change = False
    if args.log_level:
        config.logging.log_level = args.log_level
    if args.no_log_file:
        config.logging.enabled = False
    return config


def build_engine(config: SyncConfig) -> ReconciliationEngine:
    gateway = MarkItDownGateway(
        command=config.converter_command,
        timeout=config.conversion_timeout_seconds,
        docintel_endpoint=config.docintel_endpoint,
    )
    return ReconciliationEngine(config, gateway)


def cmd_watch(args, config: SyncConfig) -> int:
    """Run the watcher until interrupted."""
    engine = build_engine(config)
    shutdown = GracefulShutdown()

    try:
        with WatchCoordinator(config, engine) as coordinator:
            if args.rescan:
                for report in coordinator.rescan():
                    if report.failed:
                        logger.warning(f"{report.failed} file(s) failed in '{report.root.output_name}'")

            for root in coordinator.get_roots():
                logger.info(f"  - {root.path} -> {root.output_name}")
            logger.info(f"Destination: {engine.dest_root}")
            logger.info("Press Ctrl+C to stop")

            while not shutdown.should_exit:
                time.sleep(0.5)
    finally:
        engine.close()

    logger.info("Watcher stopped")
    return 0


def cmd_rescan(args, config: SyncConfig) -> int:
    """Run one convergent pass over every enabled root."""
    engine = build_engine(config)
    try:
        reports = engine.reconcile_all()
    finally:
        engine.close()

    failed = sum(r.failed for r in reports)
    for report in reports:
        print(report.summary())
        for error in report.errors:
            print(f"  failed: {error}")
    return 1 if failed else 0


def cmd_sync_file(args, config: SyncConfig) -> int:
    """Reconcile a single source file."""
    config.validate(require_roots=True)
    engine = build_engine(config)
    try:
        kind = EventKind.REMOVED if args.removed else EventKind.ADDED
        result = engine.handle(engine.event_for_path(Path(args.path).expanduser(), kind))
    except FileConversionError as e:
        logger.error(str(e))
        return 1
    finally:
        engine.close()

    print(f"{result.action.value}: {result.artifact_path or result.source_path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docmirror",
        description="Mirror external document folders into a Markdown vault",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to JSON settings file")
    common.add_argument("--vault", help="Vault root directory")
    common.add_argument("--output-folder", help="Destination folder inside the vault")
    common.add_argument(
        "--root", dest="roots", action="append", type=parse_root, metavar="PATH[=ALIAS]",
        help="Folder to monitor (repeatable; replaces roots from the settings file)",
    )
    common.add_argument("--no-archive", action="store_true", help="Delete artifacts instead of archiving them")
    common.add_argument("--log-level", choices=["DEBUG", "INFO", "WARN", "WARNING", "ERROR"])
    common.add_argument("--no-log-file", action="store_true", help="Log to the console only")

    subparsers = parser.add_subparsers(dest="command", required=True)

    watch = subparsers.add_parser("watch", parents=[common], help="Watch folders and mirror changes")
    watch.add_argument("--rescan", action="store_true", help="Rescan every root before watching")
    watch.set_defaults(func=cmd_watch)

    rescan = subparsers.add_parser("rescan", parents=[common], help="Bring the vault in sync once")
    rescan.set_defaults(func=cmd_rescan)

    sync_file = subparsers.add_parser("sync-file", parents=[common], help="Reconcile one source file")
    sync_file.add_argument("path", help="Source file inside a monitored folder")
    sync_file.add_argument("--removed", action="store_true", help="Treat the file as deleted")
    sync_file.set_defaults(func=cmd_sync_file)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = build_config(args)
        setup_logging(config.logging)
        return args.func(args, config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except MirrorError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
