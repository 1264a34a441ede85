"""Tests for the reconciliation engine."""

import hashlib
import shutil
import threading
import time
from pathlib import Path

import pytest

from conftest import FakeGateway, StepClock
from docmirror.engine import ReconciliationEngine, is_placeholder
from docmirror.exceptions import (
    ConfigurationError,
    ConversionTimeoutError,
    FileConversionError,
    ValidationError,
)
from docmirror.models import ChangeEvent, EventKind, MonitoredRoot, ReconcileAction
from docmirror.suppression import RecentMoveCache


def sha(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def write(root: MonitoredRoot, relative: str, content: str) -> Path:
    path = root.path / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def added(root: MonitoredRoot, path: Path) -> ChangeEvent:
    return ChangeEvent(EventKind.ADDED, path, root)


def removed(root: MonitoredRoot, path: Path) -> ChangeEvent:
    return ChangeEvent(EventKind.REMOVED, path, root)


def live_artifacts(dest_root: Path):
    return sorted(
        str(p.relative_to(dest_root)) for p in dest_root.rglob("*.md")
        if ".archive" not in p.relative_to(dest_root).parts
    )


def archive_entries(dest_root: Path):
    archive = dest_root / ".archive"
    if not archive.exists():
        return []
    return sorted(str(p.relative_to(archive)) for p in archive.rglob("*") if p.is_file())


class TestAdded:
    """Tests for Added/Modified handling."""

    def test_converts_new_file(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "reports/report.pdf", "quarterly")

        result = engine.handle(added(source_root, source))

        expected = dest_root / "docs" / "reports" / f"report_{sha('quarterly')}.md"
        assert result.action == ReconcileAction.CONVERTED
        assert result.artifact_path == expected
        assert expected.exists()
        assert gateway.calls == [source]

    def test_artifact_has_provenance_front_matter(self, engine, source_root):
        source = write(source_root, "report.pdf", "body text")

        result = engine.handle(added(source_root, source))

        content = result.artifact_path.read_text(encoding="utf-8")
        assert content.startswith("---\n")
        assert 'original_name: "report"' in content
        assert 'file_type: ".pdf"' in content
        assert f'fingerprint: "{sha("body text")}"' in content
        assert content.rstrip().endswith("body text")

    def test_replay_is_idempotent(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "report.pdf", "same")
        engine.handle(added(source_root, source))
        before = live_artifacts(dest_root)

        result = engine.handle(added(source_root, source))

        assert result.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == before
        assert len(gateway.calls) == 1

    def test_unmonitored_extension_is_skipped(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "image.png", "pixels")

        result = engine.handle(added(source_root, source))

        assert result.action == ReconcileAction.SKIPPED
        assert gateway.calls == []
        assert not dest_root.exists() or live_artifacts(dest_root) == []

    def test_vanished_source_is_skipped(self, engine, source_root):
        result = engine.handle(added(source_root, source_root.path / "gone.pdf"))
        assert result.action == ReconcileAction.SKIPPED

    def test_rejects_non_event(self, engine):
        with pytest.raises(ValidationError):
            engine.handle("not an event")

    def test_missing_vault_fails_before_touching_disk(self, config, gateway, source_root):
        config.vault_path = None
        engine = ReconciliationEngine(config, gateway)
        source = write(source_root, "report.pdf", "x")

        with pytest.raises(ConfigurationError):
            engine.handle(added(source_root, source))
        assert gateway.calls == []

    def test_modified_content_archives_stale_version(self, engine, source_root, dest_root):
        source = write(source_root, "report.pdf", "v1")
        engine.handle(added(source_root, source))
        source.write_text("v2", encoding="utf-8")

        result = engine.handle(ChangeEvent(EventKind.MODIFIED, source, source_root))

        assert result.action == ReconcileAction.UPDATED
        assert live_artifacts(dest_root) == [f"docs/report_{sha('v2')}.md"]
        entries = archive_entries(dest_root)
        assert len(entries) == 1
        assert entries[0].startswith(f"docs/report_{sha('v1')}.md_archived_")
        assert "## Archive Information" in (dest_root / ".archive" / entries[0]).read_text(encoding="utf-8")

    def test_modified_without_archive_deletes_stale_version(self, engine, config, source_root, dest_root):
        config.archive_on_change = False
        source = write(source_root, "report.pdf", "v1")
        engine.handle(added(source_root, source))
        source.write_text("v2", encoding="utf-8")

        engine.handle(ChangeEvent(EventKind.MODIFIED, source, source_root))

        assert live_artifacts(dest_root) == [f"docs/report_{sha('v2')}.md"]
        assert archive_entries(dest_root) == []


class TestMoveDetection:
    """Moves and renames reuse the existing artifact."""

    def test_move_to_other_directory(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "a/report.pdf", "content")
        engine.handle(added(source_root, source))
        target = source_root.path / "b" / "report.pdf"
        target.parent.mkdir()
        source.rename(target)

        result = engine.handle(added(source_root, target))
        follow_up = engine.handle(removed(source_root, source))

        assert result.action == ReconcileAction.MOVED
        assert follow_up.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/b/report_{sha('content')}.md"]
        assert len(gateway.calls) == 1
        assert archive_entries(dest_root) == []

    def test_rename_with_different_prefix_needs_no_suppression(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        target = source_root.path / "report-v2.pdf"
        source.rename(target)

        engine.handle(added(source_root, target))
        follow_up = engine.handle(removed(source_root, source))

        assert follow_up.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/report-v2_{sha('content')}.md"]
        assert len(gateway.calls) == 1

    def test_rename_sharing_prefix_is_suppressed(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        target = source_root.path / "report_final.pdf"
        source.rename(target)

        engine.handle(added(source_root, target))
        follow_up = engine.handle(removed(source_root, source))

        assert follow_up.action == ReconcileAction.SUPPRESSED
        assert live_artifacts(dest_root) == [f"docs/report_final_{sha('content')}.md"]
        assert archive_entries(dest_root) == []
        assert len(gateway.calls) == 1

    def test_removal_after_ttl_is_not_suppressed(self, engine, source_root, dest_root, move_clock):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        target = source_root.path / "report_final.pdf"
        source.rename(target)
        engine.handle(added(source_root, target))

        move_clock.advance(15.0)
        target.unlink()
        follow_up = engine.handle(removed(source_root, source))

        assert follow_up.action == ReconcileAction.ARCHIVED
        assert live_artifacts(dest_root) == []

    def test_removal_after_ttl_keeps_artifact_of_renamed_file(self, engine, source_root, dest_root, move_clock):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        target = source_root.path / "report_final.pdf"
        source.rename(target)
        engine.handle(added(source_root, target))

        move_clock.advance(15.0)
        follow_up = engine.handle(removed(source_root, source))

        assert follow_up.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/report_final_{sha('content')}.md"]
        assert archive_entries(dest_root) == []

    def test_move_over_existing_file_archives_old_version(self, engine, source_root, dest_root, gateway):
        old = write(source_root, "b/report.pdf", "old")
        engine.handle(added(source_root, old))
        source = write(source_root, "a/report.pdf", "new")
        engine.handle(added(source_root, source))
        source.replace(old)

        result = engine.handle(added(source_root, old))
        follow_up = engine.handle(removed(source_root, source))

        assert result.action == ReconcileAction.MOVED
        assert len(result.archived) == 1
        assert follow_up.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/b/report_{sha('new')}.md"]
        assert len(archive_entries(dest_root)) == 1
        assert len(gateway.calls) == 2

    def test_duplicate_content_keeps_single_artifact(self, engine, source_root, dest_root, gateway):
        first = write(source_root, "a/report.pdf", "same bytes")
        engine.handle(added(source_root, first))
        second = write(source_root, "b/copy.pdf", "same bytes")

        result = engine.handle(added(source_root, second))

        assert result.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/a/report_{sha('same bytes')}.md"]
        assert len(gateway.calls) == 1


class TestRemoved:
    """Tests for Removed handling."""

    def test_delete_archives_artifact(self, engine, source_root, dest_root):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        source.unlink()

        result = engine.handle(removed(source_root, source))

        assert result.action == ReconcileAction.ARCHIVED
        assert live_artifacts(dest_root) == []
        entries = archive_entries(dest_root)
        assert len(entries) == 1
        assert entries[0].startswith(f"docs/report_{sha('content')}.md_deleted_2024-05-01T10-")
        text = (dest_root / ".archive" / entries[0]).read_text(encoding="utf-8")
        assert "## Deletion Information" in text
        assert str(dest_root / ".archive" / entries[0]) in text

    def test_delete_without_archive_removes_artifact(self, engine, config, source_root, dest_root):
        config.archive_on_change = False
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        source.unlink()

        result = engine.handle(removed(source_root, source))

        assert result.action == ReconcileAction.DELETED
        assert live_artifacts(dest_root) == []
        assert archive_entries(dest_root) == []

    def test_removed_without_artifact_is_skipped(self, engine, source_root):
        result = engine.handle(removed(source_root, source_root.path / "never.pdf"))
        assert result.action == ReconcileAction.SKIPPED

    def test_removed_but_present_again_is_skipped(self, engine, source_root, dest_root):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))

        result = engine.handle(removed(source_root, source))

        assert result.action == ReconcileAction.SKIPPED
        assert len(live_artifacts(dest_root)) == 1

    def test_directory_removed_archives_subtree(self, engine, source_root, dest_root):
        a = write(source_root, "project/a.docx", "a")
        b = write(source_root, "project/sub/b.docx", "b")
        engine.handle(added(source_root, a))
        engine.handle(added(source_root, b))
        shutil.rmtree(source_root.path / "project")

        result = engine.handle(ChangeEvent(EventKind.DIRECTORY_REMOVED, source_root.path / "project", source_root))

        assert result.action == ReconcileAction.ARCHIVED
        assert len(result.archived) == 2
        assert live_artifacts(dest_root) == []
        assert not (dest_root / "docs" / "project").exists()
        entries = archive_entries(dest_root)
        assert any(e.startswith("docs/project/sub/b_") for e in entries)

    def test_same_name_different_extension_keeps_both(self, engine, source_root, dest_root):
        pdf = write(source_root, "report.pdf", "pdf body")
        docx = write(source_root, "report.docx", "docx body")
        engine.handle(added(source_root, pdf))
        engine.handle(added(source_root, docx))

        assert live_artifacts(dest_root) == sorted([
            f"docs/report_{sha('pdf body')}.md",
            f"docs/report_{sha('docx body')}.md",
        ])

        docx.write_text("docx v2", encoding="utf-8")
        result = engine.handle(ChangeEvent(EventKind.MODIFIED, docx, source_root))

        assert result.action == ReconcileAction.UPDATED
        assert len(result.archived) == 1
        assert live_artifacts(dest_root) == sorted([
            f"docs/report_{sha('pdf body')}.md",
            f"docs/report_{sha('docx v2')}.md",
        ])

        pdf.unlink()
        result = engine.handle(removed(source_root, pdf))

        assert result.action == ReconcileAction.ARCHIVED
        assert len(result.archived) == 1
        assert live_artifacts(dest_root) == [f"docs/report_{sha('docx v2')}.md"]

    def test_removed_keeps_artifact_shared_with_sibling(self, engine, source_root, dest_root):
        pdf = write(source_root, "report.pdf", "same bytes")
        docx = write(source_root, "report.docx", "same bytes")
        engine.handle(added(source_root, pdf))
        engine.handle(added(source_root, docx))
        pdf.unlink()

        result = engine.handle(removed(source_root, pdf))

        assert result.action == ReconcileAction.SKIPPED
        assert live_artifacts(dest_root) == [f"docs/report_{sha('same bytes')}.md"]
        assert archive_entries(dest_root) == []

    def test_directory_removed_without_archive_deletes_subtree(self, engine, config, source_root, dest_root):
        config.archive_on_change = False
        a = write(source_root, "project/a.docx", "a")
        b = write(source_root, "project/sub/b.docx", "b")
        engine.handle(added(source_root, a))
        engine.handle(added(source_root, b))
        shutil.rmtree(source_root.path / "project")

        result = engine.handle(ChangeEvent(EventKind.DIRECTORY_REMOVED, source_root.path / "project", source_root))

        assert result.action == ReconcileAction.DELETED
        assert result.archived == []
        assert not (dest_root / "docs" / "project").exists()
        assert live_artifacts(dest_root) == []
        assert archive_entries(dest_root) == []


class TestRestore:
    """Content that comes back is restored from the archive."""

    def test_restore_from_archive(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "report.pdf", "content")
        engine.handle(added(source_root, source))
        source.unlink()
        engine.handle(removed(source_root, source))

        write(source_root, "report.pdf", "content")
        result = engine.handle(added(source_root, source))

        assert result.action == ReconcileAction.RESTORED
        assert live_artifacts(dest_root) == [f"docs/report_{sha('content')}.md"]
        assert archive_entries(dest_root) == []
        assert len(gateway.calls) == 1


class TestConversionFailures:
    """Placeholders, retries and timeouts."""

    def test_failure_writes_placeholder(self, config, source_root, dest_root, notices):
        engine = ReconciliationEngine(config, FakeGateway(fail_always=True), notifier=notices.append)
        source = write(source_root, "broken.docx", "junk")

        with pytest.raises(FileConversionError) as exc_info:
            engine.handle(added(source_root, source))
        engine.close()

        placeholder = dest_root / "docs" / f"broken_{sha('junk')}.md"
        assert placeholder.exists()
        assert is_placeholder(placeholder)
        assert "cannot parse broken.docx" in placeholder.read_text(encoding="utf-8")
        assert exc_info.value.file_path == str(source)
        assert not exc_info.value.timed_out
        assert any(n.startswith("error:") for n in notices)

    def test_retries_until_success(self, config, source_root, dest_root):
        config.max_retries = 2
        config.retry_delay_seconds = 0.5
        delays = []
        gateway = FakeGateway(fail_times=2)
        engine = ReconciliationEngine(config, gateway, sleep=delays.append)
        source = write(source_root, "flaky.pdf", "ok")

        result = engine.handle(added(source_root, source))
        engine.close()

        assert result.action == ReconcileAction.CONVERTED
        assert len(gateway.calls) == 3
        assert delays == [0.5, 1.0]
        assert not is_placeholder(result.artifact_path)

    def test_timeout_writes_placeholder(self, config, source_root, dest_root):
        config.conversion_timeout_seconds = 0.1
        engine = ReconciliationEngine(config, FakeGateway(delay=1.0))
        source = write(source_root, "slow.pdf", "big")

        with pytest.raises(FileConversionError) as exc_info:
            engine.handle(added(source_root, source))
        engine.close()

        assert exc_info.value.timed_out
        assert isinstance(exc_info.value.__cause__, ConversionTimeoutError)
        assert is_placeholder(dest_root / "docs" / f"slow_{sha('big')}.md")

    def test_abandoned_conversion_leaves_no_scratch_file(self, config, source_root, dest_root):
        config.conversion_timeout_seconds = 0.2
        gateway = FakeGateway(delay=0.6)
        engine = ReconciliationEngine(config, gateway)
        source = write(source_root, "slow.pdf", "big")

        with pytest.raises(FileConversionError):
            engine.handle(added(source_root, source))
        time.sleep(1.0)
        engine.close()

        files = sorted(p.name for p in dest_root.rglob("*") if p.is_file())
        assert files == [f"slow_{sha('big')}.md"]
        assert is_placeholder(dest_root / "docs" / files[0])

    def test_placeholder_is_retried(self, config, source_root, dest_root):
        failing = ReconciliationEngine(config, FakeGateway(fail_always=True))
        source = write(source_root, "broken.docx", "junk")
        with pytest.raises(FileConversionError):
            failing.handle(added(source_root, source))
        failing.close()

        engine = ReconciliationEngine(config, FakeGateway())
        result = engine.handle(added(source_root, source))
        engine.close()

        assert result.action == ReconcileAction.UPDATED
        assert not is_placeholder(result.artifact_path)
        assert archive_entries(dest_root) == []


class TestReconcileTree:
    """Tests for full-tree rescans."""

    def test_rescan_converts_everything(self, engine, source_root, dest_root, notices):
        write(source_root, "a.pdf", "a")
        write(source_root, "nested/b.docx", "b")
        write(source_root, "skip.png", "c")
        write(source_root, ".hidden/d.pdf", "d")

        report = engine.reconcile_tree(source_root)

        assert report.converted == 2
        assert report.failed == 0
        assert live_artifacts(dest_root) == sorted([
            f"docs/a_{sha('a')}.md",
            f"docs/nested/b_{sha('b')}.md",
        ])
        assert notices[-1] == report.summary()

    def test_rescan_is_idempotent(self, engine, source_root, dest_root, gateway):
        write(source_root, "a.pdf", "a")
        engine.reconcile_tree(source_root)

        report = engine.reconcile_tree(source_root)

        assert report.changed == 0
        assert report.skipped == 1
        assert len(gateway.calls) == 1

    def test_rescan_archives_orphans(self, engine, source_root, dest_root):
        source = write(source_root, "old/report.pdf", "content")
        engine.reconcile_tree(source_root)
        source.unlink()

        report = engine.reconcile_tree(source_root)

        assert report.archived == 1
        assert live_artifacts(dest_root) == []
        assert not (dest_root / "docs" / "old").exists()
        assert (dest_root / "docs").is_dir()

    def test_rescan_deletes_orphans_without_archive(self, engine, config, source_root, dest_root):
        config.archive_on_change = False
        source = write(source_root, "old/report.pdf", "content")
        engine.reconcile_tree(source_root)
        source.unlink()

        report = engine.reconcile_tree(source_root)

        assert report.deleted == 1
        assert report.archived == 0
        assert live_artifacts(dest_root) == []
        assert archive_entries(dest_root) == []
        assert not (dest_root / "docs" / "old").exists()

    def test_rescan_converges_after_missed_move(self, engine, source_root, dest_root, gateway):
        source = write(source_root, "a/report.pdf", "content")
        engine.reconcile_tree(source_root)
        (source_root.path / "b").mkdir()
        source.rename(source_root.path / "b" / "report.pdf")

        report = engine.reconcile_tree(source_root)

        assert report.moved == 1
        assert live_artifacts(dest_root) == [f"docs/b/report_{sha('content')}.md"]
        assert len(gateway.calls) == 1

    def test_rescan_counts_failures_and_continues(self, config, source_root, dest_root):
        gateway = FakeGateway(fail_times=1)
        engine = ReconciliationEngine(config, gateway, clock=StepClock())
        write(source_root, "a.pdf", "a")
        write(source_root, "b.pdf", "b")

        report = engine.reconcile_tree(source_root)
        engine.close()

        assert report.failed == 1
        assert report.converted == 1
        assert "1 failed" in report.summary()

    def test_missing_root_retires_all_artifacts(self, engine, source_root, dest_root):
        write(source_root, "a.pdf", "a")
        engine.reconcile_tree(source_root)
        shutil.rmtree(source_root.path)

        report = engine.reconcile_tree(source_root)

        assert report.archived == 1
        assert live_artifacts(dest_root) == []

    def test_reconcile_all_requires_roots(self, config, gateway):
        config.roots = []
        engine = ReconciliationEngine(config, gateway)
        with pytest.raises(ConfigurationError):
            engine.reconcile_all()


class TestEventForPath:
    def test_finds_enclosing_root(self, engine, source_root):
        path = source_root.path / "x" / "report.pdf"
        event = engine.event_for_path(path)
        assert event.root == source_root
        assert event.kind == EventKind.ADDED

    def test_outside_roots(self, engine, tmp_path):
        with pytest.raises(ValidationError):
            engine.event_for_path(tmp_path / "elsewhere.pdf")


class TestConcurrency:
    def test_same_root_events_do_not_interleave(self, config, source_root, dest_root):
        gateway = FakeGateway(delay=0.05)
        engine = ReconciliationEngine(config, gateway)
        sources = [write(source_root, f"f{i}.pdf", f"content {i}") for i in range(4)]
        active = []
        peak = []
        original = gateway.convert

        def tracking_convert(source_path, destination_path):
            active.append(1)
            peak.append(len(active))
            try:
                original(source_path, destination_path)
            finally:
                active.pop()

        gateway.convert = tracking_convert
        threads = [threading.Thread(target=engine.handle, args=(added(source_root, s),)) for s in sources]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        engine.close()

        assert max(peak) == 1
        assert len(live_artifacts(dest_root)) == 4
