# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""CodeGraphService - coordinator for one project root.

Owns the components that keep a project's graph built and current:
- GraphStore: persistence of versions, nodes and edges
- VersionAllocator: per-project locks shared by every writer
- GraphBuilder: full builds
- IncrementalUpdater: file-level updates
- GraphQueryEngine: read-only analysis over committed versions
- ChangeWatcher: pending file system changes, applied on demand

With enable_file_logging set, the service also writes the engine's logs as
JSON lines under log_dir until shutdown.

The service is storage-agnostic: any GraphStore implementation can be
injected, with InMemoryGraphStore as the default.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .builder import GraphBuilder
from .change_watcher import ChangeWatcher
from .config import CONFIG_FILE_NAME, Config
from .extraction.base import PurposeAnnotator
from .extraction.registry import ExtractorRegistry, default_registry
from .logging_setup import setup_logging, teardown_logging
from .models import BuildContext, FileChange, GraphStatistics, GraphUpdateResult, GraphVersion
from .query_engine import GraphQueryEngine
from .storage import GraphStore, InMemoryGraphStore
from .updater import IncrementalUpdater
from .versioning import VersionAllocator

logger = logging.getLogger(__name__)


class CodeGraphService:
    """Builds, updates and queries the graph of one project root.

    Usage:
        service = CodeGraphService("/path/to/project")
        service.build_project()
        service.start_watching()
        ...
        service.sync_pending_changes()
        callers = service.query.find_callers(node_id)
        service.shutdown()
    """

    def __init__(
        self,
        project_root: str,
        project_id: Optional[str] = None,
        config: Optional[Config] = None,
        store: Optional[GraphStore] = None,
        registry: Optional[ExtractorRegistry] = None,
        annotator: Optional[PurposeAnnotator] = None,
        watcher: Optional[ChangeWatcher] = None,
    ):
        """Initialize the service with its dependencies.

        Args:
            project_root: Directory holding the project's sources.
            project_id: Project identifier (default: the root directory name).
            config: Configuration (default: .cpg_engine.yml under project_root).
            store: Persistence backend (default: InMemoryGraphStore).
            registry: Extraction adapters (default: bundled Python extractor).
            annotator: Optional purpose annotator for builds and updates.
            watcher: ChangeWatcher instance (default: watches project_root).
        """
        self.project_root = Path(project_root).resolve()
        self.project_id = project_id or self.project_root.name
        self.config = config or Config(self.project_root / CONFIG_FILE_NAME)

        self.store = store if store is not None else InMemoryGraphStore()
        self.registry = registry or default_registry()
        self.allocator = VersionAllocator(
            self.store, max_retries=self.config.version_commit_retries
        )
        self.builder = GraphBuilder(
            self.store, self.registry, self.allocator, self.config, annotator
        )
        self.updater = IncrementalUpdater(
            self.store, self.registry, self.allocator, self.config, annotator
        )
        self.query = GraphQueryEngine(self.store, self.config)
        self._watcher = watcher or ChangeWatcher(str(self.project_root), self.config)
        self.log_file: Optional[Path] = self._setup_logging()

        logger.info(f"CodeGraphService initialized for {self.project_id} at {self.project_root}")

    def _setup_logging(self) -> Optional[Path]:
        """Install the JSON log file when the configuration enables it."""
        if not self.config.enable_file_logging:
            return None
        log_dir = Path(self.config.log_dir)
        if not log_dir.is_absolute():
            log_dir = self.project_root / log_dir
        return setup_logging(log_dir, self.config.log_level, console_output=False)

    def _context(self, languages: Optional[List[str]] = None) -> BuildContext:
        return BuildContext(
            project_id=self.project_id,
            root_path=str(self.project_root),
            languages=languages,
        )

    def build_project(self, languages: Optional[List[str]] = None) -> GraphUpdateResult:
        """Run a full build of the project root as a new version."""
        return self.builder.build(self._context(languages))

    def apply_changes(self, changes: Sequence[FileChange]) -> GraphUpdateResult:
        """Apply explicit file changes as a new version.

        Paths may be absolute (under the project root) or root-relative.
        """
        return self.updater.update(self.project_id, changes, self._context())

    def start_watching(self) -> None:
        """Start collecting file system changes under the project root."""
        if not self._watcher.is_running():
            self._watcher.start()

    def stop_watching(self) -> None:
        if self._watcher.is_running():
            self._watcher.stop()

    def is_watching(self) -> bool:
        return self._watcher.is_running()

    def sync_pending_changes(self) -> Optional[GraphUpdateResult]:
        """Apply changes collected by the watcher since the last sync.

        Returns:
            The update result, or None when nothing changed.
        """
        changes = self._watcher.drain_changes()
        if not changes:
            return None
        return self.apply_changes(changes)

    def current_version(self) -> Optional[GraphVersion]:
        return self.store.get_current_version(self.project_id)

    def list_versions(self) -> List[GraphVersion]:
        return self.store.list_versions(self.project_id)

    def get_statistics(self) -> GraphStatistics:
        return self.query.get_statistics(self.project_id)

    def shutdown(self) -> None:
        """Stop the watcher, drop cached snapshots and close the log file."""
        logger.info("CodeGraphService shutting down...")
        self.stop_watching()
        self.query.clear_cache()
        logger.info("CodeGraphService shutdown complete")
        if self.log_file is not None:
            teardown_logging()
            self.log_file = None
