# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File system watcher that collects pending changes for incremental updates.

The watcher never touches the graph. Events are recorded per root-relative
path (the latest event wins) and turned into FileChange objects only when
drain_changes() is called, which reads the current file content from disk.

Event mapping:
- created -> added
- modified -> modified (stays added if the file was created since the last drain)
- deleted -> deleted
- moved -> deleted (old path) + added (new path)

Filtering uses the same include/exclude patterns and language selection as
full builds, plus a fixed set of always-ignored directories.

Known Limitations:
- Editors that save through a temporary file and rename produce a delete
  and an add for the same path; the latest event wins, which reports an add
- Symlinks are followed by watchdog; no check that targets stay under the root
"""

import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .builder import read_source
from .config import Config
from .errors import ExtractionError
from .file_discovery import is_candidate, to_relative_posix
from .models import ChangeType, FileChange

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)


class ChangeWatcher:
    """Collects file system events under a project root as pending changes.

    Thread Safety:
        Events arrive on the watchdog thread; the pending map is guarded by
        a lock so drain_changes() can be called from any thread.

    Usage:
        watcher = ChangeWatcher("/path/to/project", config)
        watcher.start()
        ...
        changes = watcher.drain_changes()
        if changes:
            updater.update(project_id, changes)
        watcher.stop()
    """

    # Directories never watched regardless of patterns
    ALWAYS_IGNORED = {
        ".git",
        "__pycache__",
        ".venv",
        "venv",
        "node_modules",
        ".tox",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".cpg_engine_logs",
    }

    def __init__(self, project_root: str, config: Optional[Config] = None):
        """Initialize ChangeWatcher.

        Args:
            project_root: Root directory to watch; pending paths are relative to it.
            config: Supplies include/exclude patterns, languages and the file size limit.
        """
        self.project_root = Path(project_root).resolve()
        self.config = config or Config.from_dict({})

        self._lock = threading.Lock()
        self._pending: "OrderedDict[str, str]" = OrderedDict()

        self._observer: Optional[BaseObserver] = None
        self._event_handler = _ChangeEventHandler(self)

        logger.info(f"ChangeWatcher initialized for {self.project_root}")

    def relative_path(self, file_path: str) -> Optional[str]:
        """Root-relative POSIX path, or None if the path lies outside the root."""
        try:
            rel = Path(file_path).resolve().relative_to(self.project_root)
        except ValueError:
            return None
        return to_relative_posix(rel.as_posix(), self.project_root)

    def should_track(self, rel_path: str) -> bool:
        """Whether events on a root-relative path become pending changes."""
        if any(part in self.ALWAYS_IGNORED for part in rel_path.split("/")):
            return False
        return is_candidate(
            rel_path,
            self.config.include_patterns,
            self.config.exclude_patterns,
            self.config.languages or None,
        )

    def record_event(self, file_path: str, change_type: str) -> None:
        """Record an event for a file; filtered paths are ignored.

        Args:
            file_path: Absolute (or root-relative) path reported by the event.
            change_type: One of added, modified, deleted.
        """
        path = Path(file_path)
        if not path.is_absolute():
            path = self.project_root / path
        rel_path = self.relative_path(str(path))
        if rel_path is None or not self.should_track(rel_path):
            return

        with self._lock:
            previous = self._pending.pop(rel_path, None)
            if previous == ChangeType.ADDED and change_type == ChangeType.MODIFIED:
                change_type = ChangeType.ADDED
            self._pending[rel_path] = change_type
        logger.debug(f"Pending {change_type}: {rel_path}")

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain_changes(self) -> List[FileChange]:
        """Convert pending events into FileChanges and clear them.

        Content is read at drain time. A file that no longer exists is
        reported as deleted; a file that cannot be read is skipped with a
        warning.

        Returns:
            FileChanges sorted by path.
        """
        with self._lock:
            pending = dict(self._pending)
            self._pending.clear()

        changes: List[FileChange] = []
        for rel_path in sorted(pending):
            change_type = pending[rel_path]
            full_path = self.project_root / rel_path
            if change_type == ChangeType.DELETED or not full_path.is_file():
                changes.append(FileChange(rel_path, ChangeType.DELETED))
                continue
            try:
                content = read_source(full_path, self.config.max_file_size_bytes)
            except ExtractionError as e:
                logger.warning(f"Skipping pending change for {rel_path}: {e.reason}")
                continue
            changes.append(FileChange(rel_path, change_type, new_content=content))

        if changes:
            logger.info(f"Drained {len(changes)} pending changes from {self.project_root}")
        return changes

    def start(self) -> None:
        """Start watching the project root.

        Raises:
            RuntimeError: If the watcher is already running
        """
        if self._observer is not None and self._observer.is_alive():
            raise RuntimeError("ChangeWatcher is already running")

        self._observer = Observer()
        self._observer.schedule(  # type: ignore  # watchdog types vary by version
            self._event_handler, str(self.project_root), recursive=True
        )
        self._observer.start()  # type: ignore  # watchdog types vary by version

        logger.info(f"ChangeWatcher started, monitoring {self.project_root}")

    def stop(self) -> None:
        """Stop watching. Blocks until the observer thread terminates (with timeout)."""
        if self._observer is not None and self._observer.is_alive():
            self._observer.stop()  # type: ignore  # watchdog types vary by version
            self._observer.join(timeout=5.0)
            logger.info("ChangeWatcher stopped")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class _ChangeEventHandler(FileSystemEventHandler):
    """Internal event handler for watchdog; delegates to ChangeWatcher."""

    def __init__(self, watcher: ChangeWatcher):
        super().__init__()
        self.watcher = watcher

    def _handle(self, event: FileSystemEvent, change_type: str) -> None:
        if event.is_directory:
            return
        self.watcher.record_event(str(event.src_path), change_type)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event, ChangeType.ADDED)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event, ChangeType.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event, ChangeType.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Treated as delete (old path) + add (new path)."""
        if event.is_directory or not isinstance(event, FileMovedEvent):
            return
        self.watcher.record_event(str(event.src_path), ChangeType.DELETED)
        self.watcher.record_event(str(event.dest_path), ChangeType.ADDED)
