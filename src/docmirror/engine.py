"""
Reconciliation engine: decides and applies destination-tree mutations.

For every change event the engine works out what the destination tree
should look like and gets it there by converting, moving, restoring,
archiving or skipping. Content fingerprints identify documents, so a moved
or renamed source relocates its existing artifact instead of being
converted again.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .archive import ArchiveStore, move_file, prune_empty_dirs
from .config import SyncConfig
from .exceptions import (
    ArchiveError,
    ConversionError,
    ConversionTimeoutError,
    FileConversionError,
    FileSystemError,
    MirrorError,
    SourceNotFoundError,
    ValidationError,
)
from .gateway import ConversionGateway
from .hasher import compute_fingerprint
from .models import (
    ChangeEvent,
    EventKind,
    MonitoredRoot,
    ReconcileAction,
    ReconcileResult,
    TreeReport,
)
from .paths import (
    REASON_ARCHIVED,
    REASON_DELETED,
    canonical_artifact_path,
    destination_dir,
    parse_artifact_name,
)
from .suppression import RecentMoveCache
from . import tree_index

logger = logging.getLogger(__name__)
notice_logger = logging.getLogger("docmirror.notice")

PLACEHOLDER_HEADING = "# Conversion Error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_placeholder(path: Path) -> bool:
    """Whether an artifact is an error placeholder rather than converted output."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.readline().startswith(PLACEHOLDER_HEADING)
    except OSError:
        return False


def artifact_source(path: Path) -> Optional[Path]:
    """The source_path recorded in an artifact's front matter, or None."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            if f.readline().rstrip("\n") != "---":
                return None
            for line in f:
                line = line.rstrip("\n")
                if line == "---":
                    break
                key, sep, value = line.partition(": ")
                if sep and key == "source_path":
                    return Path(json.loads(value))
    except (OSError, ValueError, TypeError):
        return None
    return None


def _write_atomic(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


class ReconciliationEngine:
    """
    Brings the destination tree into agreement with monitored source trees.

    Events for the same monitored root are serialized by a per-root lock,
    so a rescan and a live event never touch the same destination path
    at once; events for different roots may run concurrently.
    """

    def __init__(
        self,
        config: SyncConfig,
        gateway: ConversionGateway,
        archive_store: Optional[ArchiveStore] = None,
        move_cache: Optional[RecentMoveCache] = None,
        notifier: Optional[Callable[[str], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Sync settings
            gateway: External converter
            archive_store: Archive implementation (default: ArchiveStore with clock)
            move_cache: Recent-move suppression cache shared with the coordinator
            notifier: Sink for human-readable status lines (default: docmirror.notice logger)
            clock: Wall clock used for metadata and archive names
            sleep: Used between conversion retries (default: time.sleep)
        """
        self.config = config
        self.gateway = gateway
        self._clock = clock or _utc_now
        self.archive_store = archive_store or ArchiveStore(clock=self._clock)
        self.move_cache = move_cache or RecentMoveCache(
            ttl_seconds=config.move_suppression_ttl_seconds,
            sweep_interval_seconds=config.suppression_sweep_interval_seconds,
        )
        self.notify = notifier or notice_logger.info
        self._sleep = sleep or time.sleep

        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self._scratch: Optional[Path] = None
        self._root_locks: Dict[Path, threading.RLock] = {}
        self._root_locks_guard = threading.Lock()

    @property
    def dest_root(self) -> Path:
        return self.config.destination_root

    def root_lock(self, root: MonitoredRoot) -> threading.RLock:
        """The lock serializing all work for one monitored root."""
        with self._root_locks_guard:
            lock = self._root_locks.get(root.path)
            if lock is None:
                lock = threading.RLock()
                self._root_locks[root.path] = lock
            return lock

    def event_for_path(self, path: Path, kind: EventKind = EventKind.ADDED) -> ChangeEvent:
        """
        Build an event for a path under one of the enabled roots.

        Raises:
            ValidationError: If the path is not inside any enabled root
        """
        path = Path(path).absolute()
        for root in self.config.enabled_roots():
            try:
                path.relative_to(root.path)
            except ValueError:
                continue
            return ChangeEvent(kind, path, root)
        raise ValidationError(f"{path} is not inside any enabled monitored folder")

    # Event handling

    def handle(self, event: ChangeEvent, notify: bool = True) -> ReconcileResult:
        """
        Apply the destination-tree mutation for one change event.

        Replaying an event is harmless: a second Added for unchanged content
        finds its artifact already in place.

        Args:
            event: The change to reconcile
            notify: Emit one status line for the completed operation

        Returns:
            ReconcileResult describing what was done

        Raises:
            ValidationError: If the event is malformed
            ConfigurationError: If no destination is configured
            FileConversionError: If conversion failed (a placeholder was written)
            FileSystemError, ArchiveError: If a filesystem step failed
        """
        if not isinstance(event, ChangeEvent):
            raise ValidationError(f"Not a change event: {event!r}")

        if event.kind != EventKind.DIRECTORY_REMOVED and not self.config.is_monitored(event.source_path):
            logger.debug(f"Skipping {event.source_path} (type {event.extension} not monitored)")
            return ReconcileResult(ReconcileAction.SKIPPED, event.source_path, message="type not monitored")

        dest_root = self.dest_root

        try:
            with self.root_lock(event.root):
                result = self._dispatch(event, dest_root)
        except MirrorError as e:
            if notify:
                self.notify(f"error: {event.source_path.name}: {e}")
            raise

        if notify and result.action not in (ReconcileAction.SKIPPED, ReconcileAction.SUPPRESSED):
            self.notify(result.message)
        return result

    def _dispatch(self, event: ChangeEvent, dest_root: Path) -> ReconcileResult:
        logger.debug(f"Handling {event.kind.value}: {event.source_path}")
        if event.kind in (EventKind.ADDED, EventKind.MODIFIED):
            return self._handle_added(event, dest_root)
        if event.kind == EventKind.REMOVED:
            return self._handle_removed(event, dest_root)
        return self._handle_directory_removed(event, dest_root)

    def _handle_added(self, event: ChangeEvent, dest_root: Path) -> ReconcileResult:
        source = event.source_path
        if not source.is_file():
            logger.info(f"Source no longer exists: {source}")
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="source vanished")

        try:
            fingerprint = compute_fingerprint(source)
        except SourceNotFoundError:
            logger.info(f"Source vanished before hashing: {source}")
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="source vanished")

        alias = event.root.output_name
        relative_dir = event.relative_dir
        base_name = event.base_name
        canonical = canonical_artifact_path(dest_root, alias, relative_dir, base_name, fingerprint)

        if canonical.is_file():
            existing = canonical
        else:
            existing = tree_index.find_by_fingerprint(dest_root, fingerprint)
        retry_placeholder = False

        if existing is not None and existing != canonical and is_placeholder(existing):
            logger.info(f"Discarding placeholder for moved source: {existing}")
            try:
                existing.unlink()
            except OSError as e:
                raise FileSystemError(f"Failed to remove placeholder {existing}: {e}", str(existing))
            existing = None

        if existing is not None and existing != canonical:
            owner = self._live_owner(existing, dest_root, fingerprint, source)
            if owner is not None:
                logger.info(f"{source} has the same content as {owner}; keeping artifact {existing}")
                return ReconcileResult(
                    ReconcileAction.SKIPPED, source, existing,
                    message=f"duplicate content of {owner.name}",
                )
            try:
                canonical.parent.mkdir(parents=True, exist_ok=True)
                move_file(existing, canonical)
            except OSError as e:
                raise FileSystemError(f"Failed to move {existing} to {canonical}: {e}", str(existing))
            self.move_cache.record(fingerprint, canonical)
            logger.info(f"Moved existing artifact: {existing} -> {canonical}")
            archived = self._retire_stale_versions(event, dest_root, canonical, fingerprint)
            return ReconcileResult(
                ReconcileAction.MOVED, source, canonical,
                message=f"moved: {self._display(existing, dest_root)} -> {self._display(canonical, dest_root)}",
                archived=archived,
            )

        if existing == canonical:
            if not is_placeholder(canonical):
                logger.debug(f"Artifact already current: {canonical}")
                return ReconcileResult(ReconcileAction.SKIPPED, source, canonical, message="already current")
            logger.info(f"Retrying conversion over placeholder: {canonical}")
            retry_placeholder = True
        else:
            entry = tree_index.find_in_archive(dest_root, base_name, fingerprint)
            if entry is not None:
                self.archive_store.restore(entry, canonical)
                return ReconcileResult(
                    ReconcileAction.RESTORED, source, canonical,
                    message=f"restored: {self._display(canonical, dest_root)} from archive",
                )

        archived = self._retire_stale_versions(event, dest_root, canonical, fingerprint)

        try:
            canonical.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Cannot create destination directory {canonical.parent}: {e}", str(canonical.parent))

        self._convert_to_artifact(event, canonical, fingerprint)

        replaced = retry_placeholder or bool(archived) or event.kind == EventKind.MODIFIED
        action = ReconcileAction.UPDATED if replaced else ReconcileAction.CONVERTED
        return ReconcileResult(
            action, source, canonical,
            message=f"{action.value}: {source.name} -> {self._display(canonical, dest_root)}",
            archived=archived,
        )

    def _retire_stale_versions(
        self,
        event: ChangeEvent,
        dest_root: Path,
        canonical: Path,
        fingerprint: str,
    ) -> List[Path]:
        """Archive (or delete) older artifacts of the same source in the canonical directory."""
        archived = []
        for stale in tree_index.find_versions(canonical.parent, event.base_name):
            if stale == canonical or self._owned_by_other_source(stale, event.source_path):
                continue
            if self.config.archive_on_change:
                note = self._archive_note("Archive Information", "Archived on", event.source_path)
                try:
                    archived.append(self.archive_store.archive(
                        stale, dest_root, event.root.output_name, event.relative_dir,
                        REASON_ARCHIVED, note=note,
                    ))
                except ArchiveError as e:
                    logger.error(f"Failed to archive stale version {stale}: {e}")
            else:
                try:
                    stale.unlink()
                    logger.info(f"Deleted stale version: {stale}")
                except OSError as e:
                    logger.error(f"Failed to delete stale version {stale}: {e}")
        return archived

    def _handle_removed(self, event: ChangeEvent, dest_root: Path) -> ReconcileResult:
        source = event.source_path
        if source.exists():
            logger.info(f"Source exists again, ignoring removal: {source}")
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="source exists")

        alias = event.root.output_name
        relative_dir = event.relative_dir
        target_dir = destination_dir(dest_root, alias, relative_dir)
        matches = tree_index.find_by_base_name_prefix(target_dir, event.base_name, recursive=False)

        if not matches:
            logger.info(f"No artifacts found for removed source: {source}")
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="no artifacts")

        for artifact in matches:
            parsed = parse_artifact_name(artifact.name)
            if parsed is not None and self.move_cache.is_suppressed(parsed[1]):
                logger.info(f"{artifact} was just moved; ignoring removal of {source}")
                return ReconcileResult(ReconcileAction.SUPPRESSED, source, artifact, message="recently moved")

        matches = [a for a in matches if not self._still_owned(a, dest_root, source)]
        if not matches:
            logger.info(f"Artifacts in {target_dir} belong to other sources; nothing to retire for {source}")
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="no artifacts")

        archived = []
        failures = []
        for artifact in matches:
            try:
                if self.config.archive_on_change:
                    note = self._archive_note("Deletion Information", "Deleted on", source)
                    archived.append(self.archive_store.archive(
                        artifact, dest_root, alias, relative_dir, REASON_DELETED, note=note,
                    ))
                else:
                    artifact.unlink()
                    logger.info(f"Deleted artifact: {artifact}")
            except (ArchiveError, OSError) as e:
                logger.error(f"Failed to retire {artifact} for removed source {source}: {e}")
                failures.append(e)

        if failures:
            first = failures[0]
            if isinstance(first, ArchiveError):
                raise first
            raise FileSystemError(f"Failed to delete artifact for {source}: {first}", str(source))

        if self.config.archive_on_change:
            return ReconcileResult(
                ReconcileAction.ARCHIVED, source, message=f"archived: {len(archived)} artifact(s) for {source.name}",
                archived=archived,
            )
        return ReconcileResult(
            ReconcileAction.DELETED, source, message=f"deleted: {len(matches)} artifact(s) for {source.name}",
        )

    def _handle_directory_removed(self, event: ChangeEvent, dest_root: Path) -> ReconcileResult:
        source = event.source_path
        if source.is_dir():
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="directory exists")

        alias = event.root.output_name
        relative_dir = event.relative_dir
        target = destination_dir(dest_root, alias, relative_dir)
        if not target.is_dir():
            return ReconcileResult(ReconcileAction.SKIPPED, source, message="no destination directory")

        if self.config.archive_on_change:
            entries = self.archive_store.archive_tree(target, dest_root, alias, relative_dir)
            return ReconcileResult(
                ReconcileAction.ARCHIVED, source, target,
                message=f"archived: folder {self._display(target, dest_root)} ({len(entries)} artifact(s))",
                archived=entries,
            )

        try:
            shutil.rmtree(target)
        except OSError as e:
            raise FileSystemError(f"Failed to delete {target}: {e}", str(target))
        return ReconcileResult(
            ReconcileAction.DELETED, source, target,
            message=f"deleted: folder {self._display(target, dest_root)}",
        )

    # Conversion

    def _convert_to_artifact(self, event: ChangeEvent, canonical: Path, fingerprint: str) -> None:
        """Convert outside the destination tree, then publish the result with provenance metadata."""
        source = event.source_path
        try:
            content = self._convert_with_retry(source, canonical.name)
        except ConversionError as e:
            timed_out = isinstance(e, ConversionTimeoutError)
            logger.error(f"Error converting {source}: {e}")
            self._write_placeholder(event, canonical, fingerprint, e)
            raise FileConversionError(f"Conversion failed for {source}: {e}", str(source), timed_out) from e

        try:
            _write_atomic(canonical, self._with_provenance(content, event, fingerprint))
        except OSError as e:
            raise FileSystemError(f"Cannot write artifact {canonical}: {e}", str(canonical))

    def _convert_with_retry(self, source: Path, artifact_name: str) -> str:
        """Bounded retry loop with linear backoff (retry_delay * attempt)."""
        attempts = self.config.max_retries + 1
        last_error: Optional[ConversionError] = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._sleep(self.config.retry_delay_seconds * (attempt - 1))
            try:
                content = self._convert_once(source, artifact_name)
                if attempt > 1:
                    logger.info(f"Conversion recovered for {source} on attempt {attempt}")
                return content
            except ConversionError as e:
                last_error = e
                logger.warning(f"Conversion attempt {attempt}/{attempts} failed for {source}: {e}")
        raise last_error

    def _convert_once(self, source: Path, artifact_name: str) -> str:
        timeout = self.config.conversion_timeout_seconds
        scratch = self._scratch_dir() / f"{uuid.uuid4().hex[:8]}-{artifact_name}"
        future = self._get_executor().submit(self._run_gateway, source, scratch)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            # A running thread cannot be interrupted; it removes its scratch file when it returns.
            logger.warning(f"Abandoning conversion of {source} after {timeout:g} seconds")
            raise ConversionTimeoutError(f"Conversion timed out after {timeout:g} seconds")
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(f"{type(e).__name__}: {e}") from e

    def _run_gateway(self, source: Path, scratch: Path) -> str:
        try:
            self.gateway.convert(source, scratch)
            return scratch.read_text(encoding="utf-8", errors="replace")
        finally:
            try:
                scratch.unlink()
            except FileNotFoundError:
                pass

    def _scratch_dir(self) -> Path:
        with self._executor_lock:
            if self._scratch is None:
                try:
                    self._scratch = Path(tempfile.mkdtemp(prefix="docmirror-"))
                except OSError as e:
                    raise FileSystemError(f"Cannot create conversion scratch directory: {e}")
            return self._scratch

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, self.config.conversion_workers),
                    thread_name_prefix="convert",
                )
            return self._executor

    def _with_provenance(self, content: str, event: ChangeEvent, fingerprint: str) -> str:
        source = event.source_path
        fields = [
            ("original_name", event.base_name),
            ("file_type", event.extension),
            ("source_path", str(source)),
            ("parent_folder", source.parent.name),
            ("fingerprint", fingerprint),
            ("converted_at", self._clock().isoformat()),
            ("event", event.kind.value),
        ]
        header = "".join(f"{key}: {json.dumps(value)}\n" for key, value in fields)
        return f"---\n{header}---\n\n{content}"

    def _write_placeholder(self, event: ChangeEvent, canonical: Path, fingerprint: str, error: Exception) -> None:
        source = event.source_path
        text = (
            f"{PLACEHOLDER_HEADING}: {event.base_name}\n\n"
            f"## Error Information\n"
            f"- Original Name: {event.base_name}\n"
            f"- File Type: {event.extension}\n"
            f"- Source Location: {source}\n"
            f"- Parent Folder: {source.parent.name}\n"
            f"- Fingerprint: {fingerprint}\n"
            f"- Error Time: {self._clock().isoformat()}\n"
            f"- Error Details: {error}\n\n"
            f"The file will be converted again on the next change or rescan.\n"
        )
        try:
            _write_atomic(canonical, text)
        except OSError as e:
            logger.error(f"Failed to write error placeholder {canonical}: {e}")

    def _archive_note(self, heading: str, label: str, source: Path) -> str:
        return (
            f"\n\n## {heading}\n"
            f"- {label}: {self._clock().isoformat()}\n"
            f"- Original Source: {source}\n"
            f"- Archive Location: {{archive_path}}\n"
        )

    # Rescan

    def reconcile_tree(self, root: MonitoredRoot) -> TreeReport:
        """
        Full diff-and-sync of one monitored root.

        Pass one synthesizes an Added event for every monitored source file.
        Pass two retires every live artifact under the root's alias whose
        base name matches no monitored source file anywhere under the root.
        Per-file failures are counted and never stop the walk.

        Raises:
            ConfigurationError: If no destination is configured
        """
        self.config.validate(require_roots=False)
        dest_root = self.dest_root
        report = TreeReport(root=root)
        alias_dir = dest_root / root.output_name

        with self.root_lock(root):
            if root.path.is_dir():
                sources = tree_index.iter_files(
                    root.path,
                    lambda p: self._is_candidate(root, p),
                    follow_symlinks=self.config.follow_symlinks,
                )
            else:
                logger.warning(f"Monitored folder does not exist, retiring its artifacts: {root.path}")
                sources = []

            for source in sources:
                try:
                    result = self._dispatch(ChangeEvent(EventKind.ADDED, source, root), dest_root)
                    report.record(result)
                except (MirrorError, OSError) as e:
                    logger.error(f"Rescan failed for {source}: {e}")
                    report.record_failure(source, e)

            live_bases = {p.stem for p in sources}
            for artifact in tree_index.iter_artifacts(alias_dir):
                base_name, _fingerprint = parse_artifact_name(artifact.name)
                if base_name in live_bases:
                    continue
                relative_dir = artifact.parent.relative_to(alias_dir)
                try:
                    if self.config.archive_on_change:
                        note = self._archive_note("Deletion Information", "Deleted on", root.path / relative_dir)
                        self.archive_store.archive(
                            artifact, dest_root, root.output_name, relative_dir, REASON_DELETED, note=note,
                        )
                        report.archived += 1
                    else:
                        artifact.unlink()
                        report.deleted += 1
                    logger.info(f"Retired orphaned artifact: {artifact}")
                except (ArchiveError, OSError) as e:
                    logger.error(f"Failed to retire orphaned artifact {artifact}: {e}")
                    report.record_failure(artifact, e)

            prune_empty_dirs(alias_dir, keep=alias_dir if root.path.is_dir() else None)

        self.notify(report.summary())
        return report

    def reconcile_all(self) -> List[TreeReport]:
        """
        Rescan every enabled root.

        Raises:
            ConfigurationError: If no destination or no enabled roots are configured
        """
        self.config.validate(require_roots=True)
        return [self.reconcile_tree(root) for root in self.config.enabled_roots()]

    def _is_candidate(self, root: MonitoredRoot, path: Path) -> bool:
        if not self.config.is_monitored(path):
            return False
        return not self.config.should_ignore(path.relative_to(root.path))

    def _owned_by_other_source(self, artifact: Path, source: Path) -> bool:
        """
        Whether an artifact was converted from a different source that still exists.

        Sources sharing a base name (report.pdf and report.docx) share an
        artifact name prefix, so names alone cannot tell their artifacts
        apart. The recorded source_path can, as long as the artifact has not
        been renamed since it was written.
        """
        owner = artifact_source(artifact)
        if owner is None or owner == source:
            return False
        parsed = parse_artifact_name(artifact.name)
        if parsed is None or parsed[0] != owner.stem:
            return False
        return owner.is_file()

    def _still_owned(self, artifact: Path, dest_root: Path, source: Path) -> bool:
        """Whether an artifact matched by a removed source's name belongs to a live sibling."""
        if self._owned_by_other_source(artifact, source):
            return True
        parsed = parse_artifact_name(artifact.name)
        return parsed is not None and self._live_owner(artifact, dest_root, parsed[1], source) is not None

    def _live_owner(self, artifact: Path, dest_root: Path, fingerprint: str, source: Path) -> Optional[Path]:
        """
        Find another live source file that still owns an artifact.

        An artifact belongs to a source in the mirrored directory with the
        same base name and the same content. Returns None if there is none,
        i.e. the artifact's source has moved or disappeared.
        """
        parsed = parse_artifact_name(artifact.name)
        try:
            parts = artifact.relative_to(dest_root).parts
        except ValueError:
            return None
        if parsed is None or len(parts) < 2:
            return None
        alias, sub_dir = parts[0], Path(*parts[1:-1])
        for root in self.config.enabled_roots():
            if root.output_name != alias:
                continue
            for candidate in tree_index.list_files(root.path / sub_dir):
                if candidate == source or candidate.stem != parsed[0]:
                    continue
                if not self.config.is_monitored(candidate):
                    continue
                try:
                    if compute_fingerprint(candidate) == fingerprint:
                        return candidate
                except FileSystemError:
                    continue
        return None

    @staticmethod
    def _display(path: Path, dest_root: Path) -> str:
        try:
            return str(path.relative_to(dest_root))
        except ValueError:
            return str(path)

    def close(self) -> None:
        """Shut down the conversion pool, letting in-flight conversions finish."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
            scratch, self._scratch = self._scratch, None
        if executor is not None:
            executor.shutdown(wait=True)
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
