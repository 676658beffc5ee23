# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for ChangeWatcher."""

import time

import pytest
from watchdog.events import (
    DirCreatedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from cpg_engine.change_watcher import ChangeWatcher
from cpg_engine.config import Config
from cpg_engine.models import ChangeType


@pytest.fixture
def watcher(tmp_path):
    return ChangeWatcher(str(tmp_path), Config.from_dict({}))


class TestRecording:
    """Tests for event recording and filtering."""

    def test_initialization(self, tmp_path, watcher):
        assert watcher.project_root == tmp_path.resolve()
        assert watcher.pending_count() == 0
        assert not watcher.is_running()

    def test_relative_and_absolute_paths(self, tmp_path, watcher):
        watcher.record_event(str(tmp_path / "pkg" / "a.py"), ChangeType.MODIFIED)
        watcher.record_event("b.py", ChangeType.MODIFIED)

        assert watcher.pending_count() == 2

    def test_filtered_paths_are_ignored(self, tmp_path, watcher):
        """Test untracked extensions, excluded tests, ignored dirs and outside paths."""
        watcher.record_event(str(tmp_path / "notes.txt"), ChangeType.ADDED)
        watcher.record_event(str(tmp_path / "test_app.py"), ChangeType.ADDED)
        watcher.record_event(str(tmp_path / ".git" / "hooks" / "x.py"), ChangeType.ADDED)
        watcher.record_event(str(tmp_path / ".tox" / "env.py"), ChangeType.ADDED)
        watcher.record_event(str(tmp_path.parent / "elsewhere.py"), ChangeType.ADDED)

        assert watcher.pending_count() == 0

    def test_language_selection(self, tmp_path):
        watcher = ChangeWatcher(str(tmp_path), Config.from_dict({"languages": ["python"]}))

        assert watcher.should_track("a.py")
        assert not watcher.should_track("web/app.ts")

    def test_latest_event_wins(self, watcher):
        watcher.record_event("a.py", ChangeType.MODIFIED)
        watcher.record_event("a.py", ChangeType.DELETED)

        assert watcher.pending_count() == 1
        assert watcher.drain_changes()[0].change_type == ChangeType.DELETED


class TestDraining:
    """Tests for converting pending events into FileChanges."""

    def test_drain_reads_content_and_clears(self, tmp_path, watcher):
        (tmp_path / "b.py").write_text("B = 2\n")
        (tmp_path / "a.py").write_text("A = 1\n")
        watcher.record_event("b.py", ChangeType.MODIFIED)
        watcher.record_event("a.py", ChangeType.ADDED)

        changes = watcher.drain_changes()

        assert [(c.file_path, c.change_type) for c in changes] == [
            ("a.py", ChangeType.ADDED),
            ("b.py", ChangeType.MODIFIED),
        ]
        assert changes[0].new_content == "A = 1\n"
        assert watcher.pending_count() == 0
        assert watcher.drain_changes() == []

    def test_added_then_modified_stays_added(self, tmp_path, watcher):
        (tmp_path / "new.py").write_text("N = 1\n")
        watcher.record_event("new.py", ChangeType.ADDED)
        watcher.record_event("new.py", ChangeType.MODIFIED)

        assert watcher.drain_changes()[0].change_type == ChangeType.ADDED

    def test_missing_file_becomes_deleted(self, watcher):
        watcher.record_event("gone.py", ChangeType.MODIFIED)

        changes = watcher.drain_changes()

        assert changes[0].change_type == ChangeType.DELETED
        assert changes[0].new_content is None

    def test_oversized_file_is_skipped(self, tmp_path):
        watcher = ChangeWatcher(str(tmp_path), Config.from_dict({"max_file_size_bytes": 4}))
        (tmp_path / "big.py").write_text("BIG = 'x' * 100\n")
        watcher.record_event("big.py", ChangeType.MODIFIED)

        assert watcher.drain_changes() == []


class TestEventHandler:
    """Tests for watchdog event mapping."""

    def test_created_modified_deleted(self, tmp_path, watcher):
        handler = watcher._event_handler
        (tmp_path / "c.py").write_text("C = 1\n")
        (tmp_path / "m.py").write_text("M = 1\n")

        handler.on_created(FileCreatedEvent(str(tmp_path / "c.py")))
        handler.on_modified(FileModifiedEvent(str(tmp_path / "m.py")))
        handler.on_deleted(FileDeletedEvent(str(tmp_path / "d.py")))

        changes = {c.file_path: c.change_type for c in watcher.drain_changes()}
        assert changes == {
            "c.py": ChangeType.ADDED,
            "d.py": ChangeType.DELETED,
            "m.py": ChangeType.MODIFIED,
        }

    def test_directory_events_ignored(self, tmp_path, watcher):
        watcher._event_handler.on_created(DirCreatedEvent(str(tmp_path / "pkg.py")))

        assert watcher.pending_count() == 0

    def test_move_is_delete_plus_add(self, tmp_path, watcher):
        (tmp_path / "new_name.py").write_text("X = 1\n")

        watcher._event_handler.on_moved(
            FileMovedEvent(str(tmp_path / "old_name.py"), str(tmp_path / "new_name.py"))
        )

        changes = {c.file_path: c.change_type for c in watcher.drain_changes()}
        assert changes == {"new_name.py": ChangeType.ADDED, "old_name.py": ChangeType.DELETED}


class TestObserver:
    """Tests for the live watchdog observer."""

    def test_start_and_stop(self, watcher):
        watcher.start()
        try:
            assert watcher.is_running()
            with pytest.raises(RuntimeError):
                watcher.start()
        finally:
            watcher.stop()

        assert not watcher.is_running()

    def test_file_creation_is_detected(self, tmp_path, watcher):
        watcher.start()
        try:
            time.sleep(0.1)
            (tmp_path / "live.py").write_text("LIVE = 1\n")

            deadline = time.time() + 5.0
            while watcher.pending_count() == 0 and time.time() < deadline:
                time.sleep(0.05)
        finally:
            watcher.stop()

        changes = watcher.drain_changes()
        assert [c.file_path for c in changes] == ["live.py"]
        assert changes[0].new_content == "LIVE = 1\n"
