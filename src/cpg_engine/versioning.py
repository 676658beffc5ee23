# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Per-project version allocation.

Only one build or update may be committing a version for a given project at
a time. VersionAllocator owns one lock per project; writers hold it from
reading the base version until commit, which keeps version numbers gapless.
A project has at most one pending version at a time, and it is always
numbered one past the current committed version. Different projects never
share a lock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from .errors import BackendError, VersionConflictError
from .models import GraphVersion
from .storage import GraphStore

logger = logging.getLogger(__name__)


class VersionAllocator:
    """Serialises version creation per project.

    Usage:
        with allocator.project_lock(project_id):
            base = store.get_current_version(project_id)
            version = allocator.allocate(project_id, parent_version_id=base.id)
            ... write nodes and edges ...
            store.commit_version(version.id, checksum, operations_count)
    """

    def __init__(self, store: GraphStore, max_retries: int = 3):
        self.store = store
        self.max_retries = max_retries
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, project_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[project_id] = lock
            return lock

    @contextmanager
    def project_lock(self, project_id: str) -> Iterator[None]:
        """Hold the project's serialisation lock. Re-entrant per thread."""
        lock = self._lock_for(project_id)
        with lock:
            yield

    def pending_version(self, project_id: str) -> Optional[GraphVersion]:
        """The project's uncommitted version, if a writer has one open."""
        for version in self.store.list_versions(project_id, include_pending=True):
            if not version.committed:
                return version
        return None

    def allocate(
        self,
        project_id: str,
        parent_version_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GraphVersion:
        """Create the next pending version for a project.

        The number is one past the current committed version. A project has
        at most one pending version: while one is open (for example
        pre-allocated for a build) no other writer can allocate until it is
        committed or discarded. A conflicting number (written by a writer that
        bypassed the lock) is retried with a fresh read up to max_retries times.

        Raises:
            BackendError: If a pending version is open or every attempt conflicted.
        """
        with self.project_lock(project_id):
            last_conflict: Optional[VersionConflictError] = None
            for attempt in range(1, self.max_retries + 1):
                open_version = self.pending_version(project_id)
                if open_version is not None:
                    raise BackendError(
                        f"Version {open_version.version_number} of {project_id} is pending",
                        {"project_id": project_id, "pending_version_id": open_version.id},
                    )
                current = self.store.get_current_version(project_id)
                number = current.version_number + 1 if current is not None else 1
                try:
                    version = self.store.create_version(
                        project_id,
                        number,
                        parent_version_id=parent_version_id,
                        metadata=metadata,
                    )
                except VersionConflictError as e:
                    last_conflict = e
                    logger.warning(
                        f"Version {number} of {project_id} already taken "
                        f"(attempt {attempt}/{self.max_retries}), retrying"
                    )
                    continue
                return version

            raise BackendError(
                f"Could not allocate a version for {project_id} after "
                f"{self.max_retries} attempts",
                {"project_id": project_id, "cause": str(last_conflict)},
            )
