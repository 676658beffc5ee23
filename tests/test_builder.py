# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for full-project graph builds."""

from unittest.mock import patch

import pytest

from cpg_engine.builder import GraphBuilder
from cpg_engine.config import Config
from cpg_engine.errors import BackendError, GraphValidationError
from cpg_engine.extraction import DocstringAnnotator
from cpg_engine.models import (
    BuildContext,
    ChangeType,
    EdgeQuery,
    EdgeType,
    FileChange,
    NodeQuery,
    NodeType,
)
from cpg_engine.updater import IncrementalUpdater
from cpg_engine.versioning import VersionAllocator


def _nodes(store, project_id, version_id=None):
    return store.query_nodes(NodeQuery(project_id, version_id=version_id)).data


def _edge_keys(store, project_id, version_id=None):
    nodes = {n.id: n for n in _nodes(store, project_id, version_id)}
    edges = store.query_edges(EdgeQuery(project_id, version_id=version_id)).data
    return {
        (nodes[e.source_node_id].node_key, nodes[e.target_node_id].node_key, e.edge_type)
        for e in edges
    }


class TestBuildScenario:
    """Tests for building a single-file project."""

    def test_auth_service_build(self, tmp_path, store, config, write_files, auth_service_source):
        """Test class, methods and the login -> validateCredentials call."""
        write_files(tmp_path, {"auth.py": auth_service_source})
        builder = GraphBuilder(store, config=config)

        result = builder.build(BuildContext(project_id="p1", root_path=str(tmp_path)))

        assert result.success
        assert result.version_number == 1
        assert result.errors == []
        nodes = _nodes(store, "p1")
        by_type = {}
        for node in nodes:
            by_type.setdefault(node.node_type, []).append(node.name)
        assert len(nodes) >= 3
        assert by_type[NodeType.CLASS] == ["AuthService"]
        assert len(by_type[NodeType.FUNCTION]) >= 2

        assert (
            "auth.py:7:login",
            "auth.py:13:validateCredentials",
            EdgeType.CALLS,
        ) in _edge_keys(store, "p1")

    def test_containment_edges(self, tmp_path, store, config, write_files, auth_service_source):
        write_files(tmp_path, {"auth.py": auth_service_source})

        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        edges = _edge_keys(store, "p1")
        assert ("auth.py:0:auth", "auth.py:4:AuthService", EdgeType.CONTAINS) in edges
        assert ("auth.py:4:AuthService", "auth.py:7:login", EdgeType.CONTAINS) in edges
        assert ("auth.py:0:auth", "auth.py:17:helper", EdgeType.CONTAINS) in edges

    def test_result_counts(self, tmp_path, store, config, write_files, auth_service_source):
        write_files(tmp_path, {"auth.py": auth_service_source})

        result = GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        stats = store.get_statistics("p1")
        assert result.operations_applied == 1
        assert result.nodes_affected == stats.total_nodes
        assert result.edges_affected == stats.total_edges
        assert store.get_current_version("p1").operations_count == 1


class TestCrossFileResolution:
    """Tests for phase-2 resolution across files."""

    def test_import_and_call_resolve_to_other_file(self, sample_project, store, config):
        GraphBuilder(store, config=config).build(BuildContext("p1", str(sample_project)))

        edges = _edge_keys(store, "p1")
        assert ("service.py:0:service", "models.py:6:make_user", EdgeType.IMPORTS) in edges
        assert ("service.py:4:register", "models.py:6:make_user", EdgeType.CALLS) in edges
        assert ("models.py:6:make_user", "models.py:1:User", EdgeType.CALLS) in edges

    def test_unresolved_references_are_dropped(self, tmp_path, store, config, write_files):
        write_files(tmp_path, {"a.py": "def a():\n    print(missing())\n"})

        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        assert {e[2] for e in _edge_keys(store, "p1")} == {EdgeType.CONTAINS}

    def test_repeated_calls_collapse_into_weighted_edge(self, tmp_path, store, config, write_files):
        source = "def a():\n    pass\n\n\ndef b():\n    a()\n    a()\n    a()\n"
        write_files(tmp_path, {"r.py": source})

        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        calls = store.query_edges(EdgeQuery("p1", edge_type=EdgeType.CALLS)).data
        assert len(calls) == 1
        assert calls[0].weight == 3.0

    def test_same_file_candidate_preferred(self, tmp_path, store, config, write_files):
        """Test a name defined both locally and elsewhere resolves locally."""
        write_files(
            tmp_path,
            {
                "a.py": "def run():\n    pass\n",
                "b.py": "def run():\n    pass\n\n\ndef main():\n    run()\n",
            },
        )

        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        calls = {e for e in _edge_keys(store, "p1") if e[2] == EdgeType.CALLS}
        assert calls == {("b.py:5:main", "b.py:1:run", EdgeType.CALLS)}


class TestDeterminism:
    """Tests that builds do not depend on processing order."""

    def test_same_files_same_keys_and_checksum(self, sample_project, store):
        serial = GraphBuilder(store, config=Config.from_dict({"max_workers": 1}))
        parallel = GraphBuilder(store, config=Config.from_dict({"max_workers": 8}))

        first = serial.build(BuildContext("p1", str(sample_project)))
        second = parallel.build(BuildContext("p1", str(sample_project)))

        assert first.version_number == 1
        assert second.version_number == 2
        assert {n.node_key for n in _nodes(store, "p1", first.version_id)} == {
            n.node_key for n in _nodes(store, "p1", second.version_id)
        }
        assert _edge_keys(store, "p1", first.version_id) == _edge_keys(
            store, "p1", second.version_id
        )
        assert (
            store.get_version(first.version_id).checksum
            == store.get_version(second.version_id).checksum
        )


class TestFiltering:
    """Tests for include/exclude patterns and languages."""

    def test_excluded_directories_and_test_files(self, tmp_path, store, config, write_files):
        write_files(
            tmp_path,
            {
                "app.py": "def app():\n    pass\n",
                "tests/helpers.py": "def h():\n    pass\n",
                "test_app.py": "def test_app():\n    pass\n",
                "node_modules/lib/x.py": "def x():\n    pass\n",
            },
        )

        GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        assert {n.file_path for n in _nodes(store, "p1")} == {"app.py"}

    def test_context_patterns_override_config(self, tmp_path, store, config, write_files):
        write_files(
            tmp_path,
            {"src/a.py": "A = 1\n", "scripts/b.py": "B = 2\n"},
        )

        GraphBuilder(store, config=config).build(
            BuildContext("p1", str(tmp_path), include_patterns=["src/**"], exclude_patterns=[])
        )

        assert {n.file_path for n in _nodes(store, "p1")} == {"src/a.py"}

    def test_files_without_extractor_are_reported(self, tmp_path, store, config, write_files):
        write_files(tmp_path, {"a.py": "A = 1\n", "web/app.ts": "export const a = 1;\n"})

        result = GraphBuilder(store, config=config).build(
            BuildContext("p1", str(tmp_path), languages=["python", "typescript"])
        )

        assert result.success
        assert len(result.errors) == 1
        assert "web/app.ts" in result.errors[0]


class TestFailures:
    """Tests for per-file and whole-build failures."""

    def test_syntax_error_is_recorded_not_fatal(self, tmp_path, store, config, write_files):
        write_files(tmp_path, {"good.py": "def ok():\n    pass\n", "bad.py": "def bad(:\n"})

        result = GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        assert result.success
        assert result.operations_applied == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("bad.py:")
        assert {n.file_path for n in _nodes(store, "p1")} == {"good.py"}

    def test_oversized_file_is_skipped(self, tmp_path, store, write_files):
        write_files(tmp_path, {"small.py": "A = 1\n", "big.py": "B = 1\n" * 50})
        builder = GraphBuilder(store, config=Config.from_dict({"max_file_size_bytes": 20}))

        result = builder.build(BuildContext("p1", str(tmp_path)))

        assert result.success
        assert any("big.py" in e for e in result.errors)

    def test_missing_root_fails(self, tmp_path, store, config):
        result = GraphBuilder(store, config=config).build(
            BuildContext("p1", str(tmp_path / "missing"))
        )

        assert not result.success
        assert result.errors
        assert store.get_current_version("p1") is None

    def test_empty_root_fails(self, tmp_path, store, config):
        result = GraphBuilder(store, config=config).build(BuildContext("p1", str(tmp_path)))

        assert not result.success
        assert store.get_latest_version_number("p1") == 0

    def test_backend_failure_discards_version(self, sample_project, store, config):
        builder = GraphBuilder(store, config=config)

        with patch.object(store, "add_edges", side_effect=BackendError("disk full")):
            result = builder.build(BuildContext("p1", str(sample_project)))

        assert not result.success
        assert any("disk full" in e for e in result.errors)
        assert store.get_latest_version_number("p1") == 0
        assert store.list_versions("p1", include_pending=True) == []

    def test_extractor_crash_is_scoped_to_file(self, sample_project, store, config):
        builder = GraphBuilder(store, config=config)
        extractor = builder.registry.get("python")
        original = extractor.extract

        def flaky(file_path, content):
            if file_path == "models.py":
                raise RuntimeError("adapter bug")
            return original(file_path, content)

        with patch.object(extractor, "extract", side_effect=flaky):
            result = builder.build(BuildContext("p1", str(sample_project)))

        assert result.success
        assert len(result.errors) == 1
        assert "adapter bug" in result.errors[0]


class TestValidation:
    """Tests for request validation before any write."""

    @pytest.mark.parametrize("project_id", ["", "   "])
    def test_blank_project_id(self, tmp_path, store, config, project_id):
        with pytest.raises(GraphValidationError):
            GraphBuilder(store, config=config).build(BuildContext(project_id, str(tmp_path)))

    @pytest.mark.parametrize("pattern", ["", "/abs/*.py", "src/[ab.py"])
    def test_invalid_patterns(self, tmp_path, store, config, pattern):
        with pytest.raises(GraphValidationError):
            GraphBuilder(store, config=config).build(
                BuildContext("p1", str(tmp_path), include_patterns=[pattern])
            )
        assert store.get_latest_version_number("p1") == 0

    def test_committed_version_rejected(self, sample_project, store, config):
        builder = GraphBuilder(store, config=config)
        first = builder.build(BuildContext("p1", str(sample_project)))

        with pytest.raises(GraphValidationError):
            builder.build(BuildContext("p1", str(sample_project), version_id=first.version_id))


class TestVersions:
    """Tests for version handling of builds."""

    def test_preallocated_version_is_committed(self, sample_project, store, config):
        allocator = VersionAllocator(store)
        version = allocator.allocate("p1")
        builder = GraphBuilder(store, allocator=allocator, config=config)

        result = builder.build(BuildContext("p1", str(sample_project), version_id=version.id))

        assert result.success
        assert result.version_id == version.id
        assert store.get_version(version.id).committed

    def test_preallocated_version_blocks_other_writers(self, sample_project, store, config):
        """Test an update waits out a pre-allocated build instead of skipping its number."""
        allocator = VersionAllocator(store)
        builder = GraphBuilder(store, allocator=allocator, config=config)
        updater = IncrementalUpdater(store, allocator=allocator, config=config)
        builder.build(BuildContext("p1", str(sample_project)))
        reserved = allocator.allocate("p1")
        added = [FileChange("new.py", ChangeType.ADDED, new_content="NEW = 1\n")]

        blocked = updater.update("p1", added)
        built = builder.build(BuildContext("p1", str(sample_project), version_id=reserved.id))
        retried = updater.update("p1", added)

        assert not blocked.success
        assert "pending" in blocked.errors[0]
        assert built.success
        assert built.version_number == 2
        assert retried.version_number == 3
        assert store.get_version(retried.version_id).parent_version_id == reserved.id
        assert [v.version_number for v in store.list_versions("p1")] == [1, 2, 3]

    def test_version_committed_elsewhere_is_not_discarded(self, sample_project, store, config):
        allocator = VersionAllocator(store)
        version = allocator.allocate("p1")
        builder = GraphBuilder(store, allocator=allocator, config=config)
        extract_all = builder._extract_all

        def commit_then_extract(files, errors):
            store.commit_version(version.id, "", 0)
            return extract_all(files, errors)

        with patch.object(builder, "_extract_all", side_effect=commit_then_extract):
            with patch.object(store, "discard_version") as discard:
                result = builder.build(
                    BuildContext("p1", str(sample_project), version_id=version.id)
                )

        assert not result.success
        assert result.errors == [f"Version {version.id} is no longer pending"]
        discard.assert_not_called()
        assert store.get_version(version.id).committed

    def test_rebuild_creates_next_version(self, sample_project, store, config):
        builder = GraphBuilder(store, config=config)

        builder.build(BuildContext("p1", str(sample_project)))
        result = builder.build(BuildContext("p1", str(sample_project)))

        assert result.version_number == 2
        assert [v.version_number for v in store.list_versions("p1")] == [1, 2]

    def test_annotator_sets_purpose(
        self, tmp_path, store, config, write_files, auth_service_source
    ):
        write_files(tmp_path, {"auth.py": auth_service_source})
        builder = GraphBuilder(store, config=config, annotator=DocstringAnnotator())

        builder.build(BuildContext("p1", str(tmp_path)))

        login = store.get_node_by_key(store.get_current_version("p1").id, "auth.py:7:login")
        assert login.purpose == "Log a user in."
