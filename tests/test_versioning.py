# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for per-project version allocation."""

import threading
from unittest.mock import patch

import pytest

from cpg_engine.errors import BackendError
from cpg_engine.versioning import VersionAllocator


@pytest.fixture
def allocator(store):
    return VersionAllocator(store)


def test_allocates_sequential_numbers(store, allocator):
    first = allocator.allocate("p1")
    store.commit_version(first.id, "", 0)
    second = allocator.allocate("p1", parent_version_id=first.id, metadata={"kind": "update"})

    assert first.version_number == 1
    assert second.version_number == 2
    assert second.parent_version_id == first.id
    assert second.metadata == {"kind": "update"}
    assert not second.committed


def test_pending_version_blocks_allocation(store, allocator):
    """Test a second writer is refused while the project has a pending version."""
    pending = allocator.allocate("p1")

    with pytest.raises(BackendError) as exc_info:
        allocator.allocate("p1")

    assert exc_info.value.details["pending_version_id"] == pending.id
    assert allocator.pending_version("p1") == pending

    store.discard_version(pending.id)
    assert allocator.allocate("p1").version_number == 1


def test_numbers_follow_current_version(store, allocator):
    """Test a discarded pending version leaves no gap."""
    first = allocator.allocate("p1")
    store.commit_version(first.id, "", 0)
    store.discard_version(allocator.allocate("p1").id)

    assert allocator.allocate("p1").version_number == 2


def test_projects_are_independent(allocator):
    allocator.allocate("p1")

    assert allocator.allocate("p2").version_number == 1
    assert allocator.pending_version("p3") is None


def test_conflict_is_retried(store, allocator):
    """Test a number taken behind the allocator's back is retried with a fresh read."""
    first = store.commit_version(store.create_version("p1", 1).id, "", 0)

    with patch.object(store, "get_current_version", side_effect=[None, first]):
        version = allocator.allocate("p1")

    assert version.version_number == 2


def test_exhausted_retries_raise_backend_error(store):
    store.commit_version(store.create_version("p1", 1).id, "", 0)
    allocator = VersionAllocator(store, max_retries=2)

    with patch.object(store, "get_current_version", return_value=None) as current:
        with pytest.raises(BackendError) as exc_info:
            allocator.allocate("p1")

    assert current.call_count == 2
    assert exc_info.value.details["project_id"] == "p1"


def test_project_lock_is_reentrant(allocator):
    with allocator.project_lock("p1"):
        with allocator.project_lock("p1"):
            version = allocator.allocate("p1")

    assert version.version_number == 1


def test_concurrent_writers_are_gapless(store, allocator):
    numbers = []
    guard = threading.Lock()

    def write() -> None:
        with allocator.project_lock("p1"):
            version = allocator.allocate("p1")
            store.commit_version(version.id, "", 0)
        with guard:
            numbers.append(version.version_number)

    threads = [threading.Thread(target=write) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(numbers) == list(range(1, 11))
    assert store.get_current_version("p1").version_number == 10
