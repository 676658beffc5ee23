# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures for graph engine tests."""

from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from cpg_engine.config import Config
from cpg_engine.hashing import content_hash, make_node_key
from cpg_engine.models import CodeLocation, EdgeType, GraphEdge, GraphNode, GraphVersion, NodeType
from cpg_engine.storage import InMemoryGraphStore

AUTH_SERVICE_SOURCE = '''"""Authentication helpers."""


class AuthService:
    """Authenticates users."""

    def login(self, user, password=None):
        """Log a user in."""
        if not user:
            return False
        return self.validateCredentials(user, password)

    def validateCredentials(self, user, password):
        return user == password


def helper():
    return AuthService()
'''

MODELS_SOURCE = """class User:
    def __init__(self, name):
        self.name = name


def make_user(name):
    return User(name)
"""

SERVICE_SOURCE = """from models import make_user


def register(name):
    return make_user(name)
"""


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def auth_service_source() -> str:
    return AUTH_SERVICE_SOURCE


@pytest.fixture
def config() -> Config:
    return Config.from_dict({"max_workers": 2})


@pytest.fixture
def write_files() -> Callable[[Path, Dict[str, str]], Path]:
    """Write {relative path: content} under a root directory and return the root."""

    def _write(root: Path, files: Dict[str, str]) -> Path:
        for rel_path, content in files.items():
            path = root / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return root

    return _write


@pytest.fixture
def sample_project(tmp_path: Path, write_files) -> Path:
    """Two-module project: service.py imports and calls models.make_user."""
    root = tmp_path / "sample_project"
    root.mkdir()
    return write_files(root, {"models.py": MODELS_SOURCE, "service.py": SERVICE_SOURCE})


def make_node(
    name: str,
    file_path: Optional[str] = None,
    line: int = 1,
    node_type: str = NodeType.FUNCTION,
    complexity: Optional[int] = None,
    purpose: Optional[str] = None,
) -> GraphNode:
    file_path = file_path or f"{name.lower()}.py"
    return GraphNode(
        node_key=make_node_key(file_path, line, name),
        node_type=node_type,
        location=CodeLocation(file_path, line, line + 1),
        language="python",
        content_hash=content_hash(f"{file_path}:{name}"),
        name=name,
        complexity=complexity,
        purpose=purpose,
    )


@pytest.fixture
def graph_factory(store: InMemoryGraphStore):
    """Commit a hand-made version and return (version, stored nodes by name).

    Edges are (source name, target name) or (source name, target name, type)
    or (source name, target name, type, weight); the default type is CALLS.
    """

    def _commit(
        project_id: str,
        nodes: Sequence[GraphNode],
        edges: Sequence[Tuple] = (),
    ) -> Tuple[GraphVersion, Dict[str, GraphNode]]:
        current = store.get_current_version(project_id)
        version = store.create_version(
            project_id,
            store.get_latest_version_number(project_id) + 1,
            parent_version_id=current.id if current else None,
        )
        stored = store.add_nodes([n.carry_forward(version.id) for n in nodes])
        by_name = {n.name: n for n in stored}
        rows: List[GraphEdge] = []
        for spec in edges:
            source, target = spec[0], spec[1]
            edge_type = spec[2] if len(spec) > 2 else EdgeType.CALLS
            weight = spec[3] if len(spec) > 3 else 1.0
            rows.append(
                GraphEdge(
                    source_node_id=by_name[source].id,
                    target_node_id=by_name[target].id,
                    edge_type=edge_type,
                    weight=weight,
                    version_id=version.id,
                )
            )
        store.add_edges(rows)
        return store.commit_version(version.id, "test-checksum", len(rows)), by_name

    return _commit


@pytest.fixture
def node_factory():
    return make_node
