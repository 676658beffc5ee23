# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for incremental graph updates.

Tests cover:
- Version numbering of updates (including concurrent writers)
- Carry-forward of unchanged entities
- Added, modified, deleted and renamed files
- Failed extraction preserving previous state
- Re-anchoring of carried edges on moved targets
- Re-resolving references of unchanged files
- Idempotence of a change list against one base
- Validation and backend failures
"""

import threading
from unittest.mock import patch

import pytest

from cpg_engine.builder import GraphBuilder
from cpg_engine.errors import BackendError, GraphValidationError, NodeNotFoundError
from cpg_engine.extraction import DocstringAnnotator
from cpg_engine.models import (
    BuildContext,
    ChangeType,
    EdgeQuery,
    EdgeType,
    FileChange,
    NodeQuery,
    OperationType,
)
from cpg_engine.query_engine import GraphQueryEngine
from cpg_engine.storage import InMemoryGraphStore
from cpg_engine.updater import IncrementalUpdater
from cpg_engine.versioning import VersionAllocator


@pytest.fixture
def allocator(store):
    return VersionAllocator(store)


@pytest.fixture
def built(sample_project, store, config, allocator):
    """Project p1 built once from the sample project."""
    result = GraphBuilder(store, allocator=allocator, config=config).build(
        BuildContext("p1", str(sample_project))
    )
    assert result.success
    return result


@pytest.fixture
def updater(store, config, allocator):
    return IncrementalUpdater(store, allocator=allocator, config=config)


def _keys(store, version_id=None):
    return {n.node_key for n in store.query_nodes(NodeQuery("p1", version_id=version_id)).data}


def _edges(store, version_id=None):
    nodes = {n.id: n for n in store.query_nodes(NodeQuery("p1", version_id=version_id)).data}
    return {
        (nodes[e.source_node_id].node_key, nodes[e.target_node_id].node_key, e.edge_type)
        for e in store.query_edges(EdgeQuery("p1", version_id=version_id)).data
    }


class TestAddedFiles:
    """Tests for added files."""

    def test_incremental_add(self, built, store, updater):
        """Test a new file with one class adds nodes as the next version."""
        result = updater.update(
            "p1",
            [FileChange("billing.py", ChangeType.ADDED, new_content="class Invoice:\n    pass\n")],
        )

        assert result.success
        assert result.nodes_affected >= 1
        assert result.version_number == built.version_number + 1
        assert "billing.py:1:Invoice" in _keys(store)
        assert store.get_current_version("p1").parent_version_id == built.version_id

    def test_added_file_resolves_existing_names(self, built, store, updater):
        source = "from models import User\n\n\ndef build():\n    return User('x')\n"

        updater.update("p1", [FileChange("factory.py", ChangeType.ADDED, new_content=source)])

        edges = _edges(store)
        assert ("factory.py:4:build", "models.py:1:User", EdgeType.CALLS) in edges
        assert ("factory.py:0:factory", "models.py:1:User", EdgeType.IMPORTS) in edges

    def test_update_without_prior_build(self, store, updater):
        result = updater.update(
            "fresh", [FileChange("a.py", ChangeType.ADDED, new_content="A = 1\n")]
        )

        assert result.success
        assert result.version_number == 1


class TestModifiedFiles:
    """Tests for modified files."""

    def test_identical_content_affects_nothing(self, built, sample_project, store, updater):
        """Test unchanged entities are carried forward without operations."""
        content = (sample_project / "service.py").read_text()

        result = updater.update(
            "p1", [FileChange("service.py", ChangeType.MODIFIED, new_content=content)]
        )

        assert result.success
        assert result.version_number == 2
        assert result.nodes_affected == 0
        assert result.edges_affected == 0
        assert result.operations_applied == 0
        assert _keys(store) == _keys(store, built.version_id)
        assert _edges(store) == _edges(store, built.version_id)

    def test_changed_body_updates_nodes(self, built, store, updater):
        content = (
            "from models import make_user\n\n\n"
            "def register(name):\n    return make_user(name.strip())\n"
        )

        result = updater.update(
            "p1", [FileChange("service.py", ChangeType.MODIFIED, new_content=content)]
        )

        operations = store.get_operations(result.version_id)
        updated = {
            op.node_key
            for op in operations
            if op.operation_type == OperationType.UPDATE_NODE
        }
        assert updated == {"service.py:0:service", "service.py:4:register"}
        assert all(op.version_id == result.version_id for op in operations)
        assert all(op.change_reason == ChangeType.MODIFIED for op in operations)
        assert result.nodes_affected == 2

    def test_removed_call_removes_edge(self, built, store, updater):
        content = "from models import make_user\n\n\ndef register(name):\n    return name\n"

        result = updater.update(
            "p1", [FileChange("service.py", ChangeType.MODIFIED, new_content=content)]
        )

        removed = ("service.py:4:register", "models.py:6:make_user", EdgeType.CALLS)
        assert removed not in _edges(store)
        deleted = [
            op
            for op in store.get_operations(result.version_id)
            if op.operation_type == OperationType.DELETE_EDGE
        ]
        assert len(deleted) == 1
        assert result.edges_affected == 1

    def test_carried_edges_follow_moved_target(self, built, sample_project, store, updater):
        """Test edges from unchanged files re-anchor when their target moves."""
        content = "\n\n" + (sample_project / "models.py").read_text()

        updater.update("p1", [FileChange("models.py", ChangeType.MODIFIED, new_content=content)])

        edges = _edges(store)
        assert "models.py:8:make_user" in _keys(store)
        assert "models.py:6:make_user" not in _keys(store)
        assert ("service.py:4:register", "models.py:8:make_user", EdgeType.CALLS) in edges

    def test_unchanged_nodes_keep_purpose(self, sample_project, store, config, allocator):
        annotator = DocstringAnnotator()
        (sample_project / "models.py").write_text(
            'def make_user(name):\n    """Create a user."""\n'
        )
        GraphBuilder(store, allocator=allocator, config=config, annotator=annotator).build(
            BuildContext("p1", str(sample_project))
        )
        updater = IncrementalUpdater(store, allocator=allocator, config=config, annotator=annotator)

        updater.update("p1", [FileChange("extra.py", ChangeType.ADDED, new_content="X = 1\n")])

        node = store.get_node_by_key(store.get_current_version("p1").id, "models.py:1:make_user")
        assert node.purpose == "Create a user."


class TestDeletedFiles:
    """Tests for deleted and renamed files."""

    def test_delete_completeness(self, built, store, updater):
        """Test nothing of a deleted file survives and old ids are not found."""
        engine = GraphQueryEngine(store)
        old_ids = [
            n.id for n in store.query_nodes(NodeQuery("p1", file_path="models.py")).data
        ]

        result = updater.update("p1", [FileChange("models.py", ChangeType.DELETED)])

        assert result.success
        assert store.query_nodes(NodeQuery("p1", file_path="models.py")).data == []
        assert all("models.py" not in key for edge in _edges(store) for key in edge[:2])
        for node_id in old_ids:
            with pytest.raises(NodeNotFoundError):
                engine.get_node(node_id)
        # The old version is untouched
        assert engine.get_node(old_ids[0], version_id=built.version_id).id == old_ids[0]

    def test_rename_moves_nodes(self, built, sample_project, store, updater):
        content = (sample_project / "models.py").read_text()

        result = updater.update(
            "p1",
            [
                FileChange(
                    "lib/models.py",
                    ChangeType.RENAMED,
                    new_content=content,
                    old_path="models.py",
                )
            ],
        )

        keys = _keys(store)
        assert result.success
        assert "lib/models.py:6:make_user" in keys
        assert not any(k.startswith("models.py:") for k in keys)

    def test_last_change_per_path_wins(self, built, store, updater):
        changes = [
            FileChange("tmp.py", ChangeType.ADDED, new_content="T = 1\n"),
            FileChange("tmp.py", ChangeType.DELETED),
        ]

        result = updater.update("p1", changes)

        assert result.success
        assert not any(k.startswith("tmp.py:") for k in _keys(store))


class TestIdempotence:
    """Tests for applying one change list more than once."""

    CHANGES = [
        FileChange(
            "service.py",
            ChangeType.MODIFIED,
            new_content="from models import User\n\n\ndef register(name):\n    return User(name)\n",
        ),
        FileChange("billing.py", ChangeType.ADDED, new_content="class Invoice:\n    pass\n"),
        FileChange("models.py", ChangeType.DELETED),
    ]

    @staticmethod
    def _hashes(store):
        return {n.node_key: n.content_hash for n in store.query_nodes(NodeQuery("p1")).data}

    def test_same_base_gives_same_graph(self, sample_project, config):
        """Test one change list applied to two copies of a base yields identical graphs."""
        stores = []
        for _ in range(2):
            store = InMemoryGraphStore()
            GraphBuilder(store, config=config).build(BuildContext("p1", str(sample_project)))
            result = IncrementalUpdater(store, config=config).update("p1", self.CHANGES)
            assert result.success
            stores.append(store)

        assert self._hashes(stores[0]) == self._hashes(stores[1])
        assert _edges(stores[0]) == _edges(stores[1])
        assert "billing.py:1:Invoice" in self._hashes(stores[0])

    def test_reapplying_changes_is_a_no_op(self, built, store, updater):
        first = updater.update("p1", self.CHANGES)
        hashes, edges = self._hashes(store), _edges(store)

        second = updater.update("p1", self.CHANGES)

        assert second.version_number == first.version_number + 1
        assert second.operations_applied == 0
        assert self._hashes(store) == hashes
        assert _edges(store) == edges


class TestReferenceResolution:
    """Tests for resolving references of unchanged files against new nodes."""

    CYCLE = {
        "a.py": "from b import fb\n\n\ndef fa():\n    return fb()\n",
        "b.py": "from c import fc\n\n\ndef fb():\n    return fc()\n",
        "c.py": "from a import fa\n\n\ndef fc():\n    return fa()\n",
    }

    def test_readded_file_matches_full_build(self, tmp_path, store, config, write_files):
        """Test callers of a deleted file find it again once it is re-added."""
        write_files(tmp_path, self.CYCLE)
        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))
        updater = IncrementalUpdater(store, config=config)

        updater.update("p1", [FileChange("a.py", ChangeType.DELETED)])
        assert not any(edge[1].startswith("a.py:") for edge in _edges(store))
        result = updater.update(
            "p1", [FileChange("a.py", ChangeType.ADDED, new_content=self.CYCLE["a.py"])]
        )

        fresh = InMemoryGraphStore()
        GraphBuilder(fresh, config=config).build(BuildContext("p1", str(tmp_path)))
        assert result.success
        assert ("c.py:4:fc", "a.py:4:fa", EdgeType.CALLS) in _edges(store)
        assert _edges(store) == _edges(fresh)
        dependency_ops = [
            op
            for op in store.get_operations(result.version_id)
            if op.operation_type == OperationType.ADD_EDGE and op.file_path == "c.py"
        ]
        assert {op.change_reason for op in dependency_ops} == {"dependency"}

    def test_references_are_kept_per_version(self, built, store, updater):
        result = updater.update(
            "p1", [FileChange("extra.py", ChangeType.ADDED, new_content="X = 1\n")]
        )

        references = store.get_references(result.version_id)
        assert set(references) == {"extra.py", "models.py", "service.py"}
        sources = {ref.source_local_key for ref in references["service.py"]}
        assert "service.py:4:register" in sources

    def test_base_without_references_carries_edges(
        self, store, updater, graph_factory, node_factory
    ):
        graph_factory(
            "p1",
            [node_factory("caller", "x.py"), node_factory("callee", "y.py")],
            [("caller", "callee")],
        )

        result = updater.update("p1", [FileChange("z.py", ChangeType.ADDED, new_content="Z = 1\n")])

        assert result.success
        assert ("x.py:1:caller", "y.py:1:callee", EdgeType.CALLS) in _edges(store)


class TestFailures:
    """Tests for failures during updates."""

    def test_failed_extraction_keeps_previous_state(self, built, store, updater):
        before_keys = _keys(store)
        before_edges = _edges(store)

        result = updater.update(
            "p1", [FileChange("service.py", ChangeType.MODIFIED, new_content="def broken(:\n")]
        )

        assert result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("service.py:")
        assert result.version_number == 2
        assert _keys(store) == before_keys
        assert _edges(store) == before_edges

    def test_backend_failure_keeps_current_version(self, built, store, updater):
        with patch.object(store, "commit_version", side_effect=BackendError("write failed")):
            result = updater.update(
                "p1", [FileChange("new.py", ChangeType.ADDED, new_content="N = 1\n")]
            )

        assert not result.success
        assert any("write failed" in e for e in result.errors)
        assert store.get_current_version("p1").id == built.version_id
        assert store.list_versions("p1", include_pending=True)[-1].id == built.version_id


class TestValidation:
    """Tests for malformed update requests."""

    def test_empty_changes(self, built, updater):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [])

    def test_unknown_change_type(self, built, updater):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [FileChange("a.py", "touched", new_content="")])

    def test_modified_requires_content(self, built, updater):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [FileChange("a.py", ChangeType.MODIFIED)])

    def test_renamed_requires_old_path(self, built, updater):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [FileChange("a.py", ChangeType.RENAMED, new_content="")])

    @pytest.mark.parametrize("path", ["../outside.py", "/abs/file.py"])
    def test_paths_must_stay_in_root(self, built, updater, path):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [FileChange(path, ChangeType.ADDED, new_content="")])

    def test_nothing_written_on_validation_error(self, built, store, updater):
        with pytest.raises(GraphValidationError):
            updater.update("p1", [FileChange("", ChangeType.DELETED)])

        assert store.get_latest_version_number("p1") == 1


class TestConcurrency:
    """Tests for concurrent writers of one project."""

    def test_concurrent_updates_are_gapless(self, built, store, updater):
        """Test parallel updates get distinct consecutive numbers and all land."""
        results = []
        lock = threading.Lock()

        def add_file(i: int) -> None:
            result = updater.update(
                "p1", [FileChange(f"mod{i}.py", ChangeType.ADDED, new_content=f"V{i} = {i}\n")]
            )
            with lock:
                results.append(result)

        threads = [threading.Thread(target=add_file, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(r.success for r in results)
        assert sorted(r.version_number for r in results) == list(range(2, 10))
        assert [v.version_number for v in store.list_versions("p1")] == list(range(1, 10))
        keys = _keys(store)
        assert all(f"mod{i}.py:1:V{i}" in keys for i in range(8))
