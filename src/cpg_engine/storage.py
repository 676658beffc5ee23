# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Persistence abstraction for versioned graph storage.

Components:
- GraphStore: Abstract capability interface consumed by the builder, the
  incremental updater and the query engine
- InMemoryGraphStore: Thread-safe implementation using in-memory indexes

Versions move through two states. A pending version accepts node, edge and
operation writes; committing it freezes its membership and makes it the
project's current version. Versions are committed strictly in number order.
Readers that do not pin a version only ever see committed versions.
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import BackendError, ProjectNotFoundError, VersionConflictError
from .models import (
    EdgeQuery,
    EdgeType,
    ExtractedReference,
    GraphEdge,
    GraphNode,
    GraphStatistics,
    GraphVersion,
    NodeQuery,
    NodeType,
    QueryResult,
    UpdateOperation,
)

logger = logging.getLogger(__name__)


class GraphStore(ABC):
    """Abstract storage interface for versioned graphs.

    Backends raise BackendError for failed writes and VersionConflictError
    when a (project, version_number) pair is already taken. Lookups of
    unknown ids return None rather than raising; translating that into a
    NotFound outcome is the caller's job.
    """

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    @abstractmethod
    def create_version(
        self,
        project_id: str,
        version_number: int,
        parent_version_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GraphVersion:
        """Create a pending version.

        Raises:
            VersionConflictError: If the project already has this version number.
        """
        pass

    @abstractmethod
    def get_version(self, version_id: str) -> Optional[GraphVersion]:
        """Get a version (pending or committed) by id."""
        pass

    @abstractmethod
    def commit_version(self, version_id: str, checksum: str, operations_count: int) -> GraphVersion:
        """Freeze a pending version and publish it to readers.

        Only the number directly after the current version can be committed.

        Raises:
            BackendError: If the version is unknown, already committed, or not
                numbered current + 1.
        """
        pass

    @abstractmethod
    def discard_version(self, version_id: str) -> None:
        """Drop a pending version with everything written under it.

        Raises:
            BackendError: If the version is committed.
        """
        pass

    @abstractmethod
    def list_versions(self, project_id: str, include_pending: bool = False) -> List[GraphVersion]:
        """Versions of a project ordered by version number."""
        pass

    @abstractmethod
    def get_current_version(self, project_id: str) -> Optional[GraphVersion]:
        """Highest-numbered committed version, or None if the project has none."""
        pass

    @abstractmethod
    def get_latest_version_number(self, project_id: str) -> int:
        """Highest allocated version number including pending ones (0 if none)."""
        pass

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @abstractmethod
    def add_node(self, node: GraphNode) -> GraphNode:
        """Insert a node into a pending version and assign its storage id.

        Returns:
            The stored node.

        Raises:
            BackendError: If the version is not pending or node_key is taken.
        """
        pass

    @abstractmethod
    def add_nodes(self, nodes: Sequence[GraphNode]) -> List[GraphNode]:
        """Bulk insert; all-or-nothing."""
        pass

    @abstractmethod
    def get_node(self, node_id: str) -> Optional[GraphNode]:
        pass

    @abstractmethod
    def get_node_by_key(self, version_id: str, node_key: str) -> Optional[GraphNode]:
        pass

    @abstractmethod
    def update_node(self, node: GraphNode) -> GraphNode:
        """Replace a node of a pending version, keeping its id and node_key."""
        pass

    @abstractmethod
    def delete_node(self, node_id: str) -> bool:
        """Delete a node of a pending version together with its edges."""
        pass

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @abstractmethod
    def add_edge(self, edge: GraphEdge) -> GraphEdge:
        """Insert an edge whose endpoints belong to the same pending version.

        Raises:
            BackendError: If an endpoint is missing or lives in another version.
        """
        pass

    @abstractmethod
    def add_edges(self, edges: Sequence[GraphEdge]) -> List[GraphEdge]:
        """Bulk insert; all-or-nothing."""
        pass

    @abstractmethod
    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        pass

    @abstractmethod
    def delete_edge(self, edge_id: str) -> bool:
        pass

    # ------------------------------------------------------------------
    # Scans, audit and statistics
    # ------------------------------------------------------------------

    @abstractmethod
    def query_nodes(self, query: NodeQuery) -> QueryResult:
        """Filtered, paginated node scan ordered by node_key."""
        pass

    @abstractmethod
    def query_edges(self, query: EdgeQuery) -> QueryResult:
        """Filtered, paginated edge scan in insertion order."""
        pass

    @abstractmethod
    def record_operations(self, version_id: str, operations: Sequence[UpdateOperation]) -> None:
        """Attach change-derived operations to a pending version."""
        pass

    @abstractmethod
    def get_operations(self, version_id: str) -> List[UpdateOperation]:
        pass

    @abstractmethod
    def record_references(
        self, version_id: str, references: Mapping[str, Sequence[ExtractedReference]]
    ) -> None:
        """Keep each file's unresolved references with a pending version.

        Reference sources are node_keys rather than extractor local keys, so a
        later version can resolve them again against a different node set.
        Files already recorded for the version are replaced.
        """
        pass

    @abstractmethod
    def get_references(self, version_id: str) -> Dict[str, List[ExtractedReference]]:
        """File path -> references kept with a version (empty if none were kept)."""
        pass

    @abstractmethod
    def get_statistics(self, project_id: str) -> GraphStatistics:
        """Aggregate statistics of the project's current version.

        Raises:
            ProjectNotFoundError: If the project has no committed version.
        """
        pass


class InMemoryGraphStore(GraphStore):
    """In-memory storage implementation.

    Features:
    - O(1) lookups by id and by (version, node_key)
    - Stored rows are copies; returned rows must be treated as read-only
    - Thread-safe: every method runs under one re-entrant lock

    Limitations:
    - No persistence across sessions
    - Superseded committed versions are never garbage collected
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._versions: Dict[str, GraphVersion] = {}
        # project_id -> version_number -> version_id
        self._project_versions: Dict[str, Dict[int, str]] = {}
        self._nodes: Dict[str, GraphNode] = {}
        # version_id -> node_key -> node_id
        self._version_nodes: Dict[str, Dict[str, str]] = {}
        self._edges: Dict[str, GraphEdge] = {}
        # version_id -> edge ids in insertion order
        self._version_edges: Dict[str, Dict[str, None]] = {}
        self._operations: Dict[str, List[UpdateOperation]] = {}
        # version_id -> file path -> references keyed by source node_key
        self._references: Dict[str, Dict[str, List[ExtractedReference]]] = {}

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _pending_version(self, version_id: str) -> GraphVersion:
        version = self._versions.get(version_id)
        if version is None:
            raise BackendError(f"Unknown version: {version_id}", {"version_id": version_id})
        if version.committed:
            raise BackendError(
                f"Version {version_id} is committed and cannot be modified",
                {"version_id": version_id},
            )
        return version

    def _resolve_version_id(self, project_id: str, version_id: Optional[str]) -> Optional[str]:
        if version_id is not None:
            return version_id
        current = self.get_current_version(project_id)
        return current.id if current else None

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def create_version(
        self,
        project_id: str,
        version_number: int,
        parent_version_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GraphVersion:
        if version_number < 1:
            raise BackendError(f"Version numbers start at 1, got {version_number}")
        with self._lock:
            numbers = self._project_versions.setdefault(project_id, {})
            if version_number in numbers:
                raise VersionConflictError(project_id, version_number)
            version = GraphVersion(
                id=self._new_id(),
                project_id=project_id,
                version_number=version_number,
                parent_version_id=parent_version_id,
                metadata=dict(metadata or {}),
            )
            self._versions[version.id] = version
            numbers[version_number] = version.id
            self._version_nodes[version.id] = {}
            self._version_edges[version.id] = {}
            self._operations[version.id] = []
            self._references[version.id] = {}
            logger.debug(f"Created version {version_number} ({version.id}) for {project_id}")
            return version

    def get_version(self, version_id: str) -> Optional[GraphVersion]:
        with self._lock:
            return self._versions.get(version_id)

    def commit_version(self, version_id: str, checksum: str, operations_count: int) -> GraphVersion:
        with self._lock:
            version = self._pending_version(version_id)
            current = self.get_current_version(version.project_id)
            expected = current.version_number + 1 if current is not None else 1
            if version.version_number != expected:
                raise BackendError(
                    f"Version {version.version_number} of {version.project_id} cannot be "
                    f"committed; the next version to commit is {expected}",
                    {"project_id": version.project_id, "version_number": version.version_number},
                )
            committed = replace(
                version, checksum=checksum, operations_count=operations_count, committed=True
            )
            self._versions[version_id] = committed
            logger.debug(
                f"Committed version {committed.version_number} for {committed.project_id} "
                f"({len(self._version_nodes[version_id])} nodes, "
                f"{len(self._version_edges[version_id])} edges)"
            )
            return committed

    def discard_version(self, version_id: str) -> None:
        with self._lock:
            version = self._pending_version(version_id)
            for node_id in self._version_nodes.pop(version_id, {}).values():
                self._nodes.pop(node_id, None)
            for edge_id in self._version_edges.pop(version_id, {}):
                self._edges.pop(edge_id, None)
            self._operations.pop(version_id, None)
            self._references.pop(version_id, None)
            del self._versions[version_id]
            del self._project_versions[version.project_id][version.version_number]
            logger.debug(f"Discarded pending version {version.version_number} ({version_id})")

    def list_versions(self, project_id: str, include_pending: bool = False) -> List[GraphVersion]:
        with self._lock:
            numbers = self._project_versions.get(project_id, {})
            versions = [self._versions[numbers[n]] for n in sorted(numbers)]
            if not include_pending:
                versions = [v for v in versions if v.committed]
            return versions

    def get_current_version(self, project_id: str) -> Optional[GraphVersion]:
        with self._lock:
            numbers = self._project_versions.get(project_id, {})
            for number in sorted(numbers, reverse=True):
                version = self._versions[numbers[number]]
                if version.committed:
                    return version
            return None

    def get_latest_version_number(self, project_id: str) -> int:
        with self._lock:
            numbers = self._project_versions.get(project_id)
            return max(numbers) if numbers else 0

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _validate_node(self, node: GraphNode, pending_keys: Optional[set] = None) -> GraphVersion:
        version = self._pending_version(node.version_id)
        if node.project_id and node.project_id != version.project_id:
            raise BackendError(
                f"Node {node.node_key} belongs to project {node.project_id}, "
                f"version belongs to {version.project_id}"
            )
        if node.node_type not in NodeType.ALL:
            raise BackendError(f"Invalid node type: {node.node_type}")
        if not node.node_key:
            raise BackendError("Node key must be non-empty")
        taken = node.node_key in self._version_nodes[node.version_id]
        if taken or (pending_keys is not None and node.node_key in pending_keys):
            raise BackendError(
                f"Duplicate node key in version {node.version_id}: {node.node_key}",
                {"node_key": node.node_key},
            )
        return version

    def _store_node(self, node: GraphNode, version: GraphVersion) -> GraphNode:
        stored = replace(node, id=self._new_id(), project_id=version.project_id)
        self._nodes[stored.id] = stored
        self._version_nodes[stored.version_id][stored.node_key] = stored.id
        return stored

    def add_node(self, node: GraphNode) -> GraphNode:
        with self._lock:
            version = self._validate_node(node)
            return self._store_node(node, version)

    def add_nodes(self, nodes: Sequence[GraphNode]) -> List[GraphNode]:
        with self._lock:
            # Validate everything first so a failure leaves no partial insert
            seen: Dict[str, set] = {}
            versions = []
            for node in nodes:
                keys = seen.setdefault(node.version_id, set())
                versions.append(self._validate_node(node, keys))
                keys.add(node.node_key)
            return [self._store_node(node, v) for node, v in zip(nodes, versions)]

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        with self._lock:
            return self._nodes.get(node_id)

    def get_node_by_key(self, version_id: str, node_key: str) -> Optional[GraphNode]:
        with self._lock:
            node_id = self._version_nodes.get(version_id, {}).get(node_key)
            return self._nodes.get(node_id) if node_id else None

    def update_node(self, node: GraphNode) -> GraphNode:
        with self._lock:
            existing = self._nodes.get(node.id)
            if existing is None:
                raise BackendError(f"Unknown node: {node.id}", {"node_id": node.id})
            self._pending_version(existing.version_id)
            if node.node_key != existing.node_key or node.version_id != existing.version_id:
                raise BackendError(
                    f"Node {node.id} cannot change its node_key or version",
                    {"node_id": node.id},
                )
            stored = replace(node, project_id=existing.project_id)
            self._nodes[node.id] = stored
            return stored

    def delete_node(self, node_id: str) -> bool:
        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is None:
                return False
            self._pending_version(existing.version_id)
            edge_ids = self._version_edges[existing.version_id]
            for edge_id in [
                eid
                for eid in edge_ids
                if node_id
                in (self._edges[eid].source_node_id, self._edges[eid].target_node_id)
            ]:
                del edge_ids[edge_id]
                del self._edges[edge_id]
            del self._version_nodes[existing.version_id][existing.node_key]
            del self._nodes[node_id]
            return True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def _validate_edge(self, edge: GraphEdge) -> GraphVersion:
        version = self._pending_version(edge.version_id)
        if edge.edge_type not in EdgeType.ALL:
            raise BackendError(f"Invalid edge type: {edge.edge_type}")
        if edge.weight < 0:
            raise BackendError(f"Edge weight must be non-negative, got {edge.weight}")
        for endpoint in (edge.source_node_id, edge.target_node_id):
            node = self._nodes.get(endpoint)
            if node is None or node.version_id != edge.version_id:
                raise BackendError(
                    f"Edge endpoint {endpoint} is not a node of version {edge.version_id}",
                    {"node_id": endpoint, "version_id": edge.version_id},
                )
        return version

    def _store_edge(self, edge: GraphEdge, version: GraphVersion) -> GraphEdge:
        stored = replace(edge, id=self._new_id(), project_id=version.project_id)
        self._edges[stored.id] = stored
        self._version_edges[stored.version_id][stored.id] = None
        return stored

    def add_edge(self, edge: GraphEdge) -> GraphEdge:
        with self._lock:
            version = self._validate_edge(edge)
            return self._store_edge(edge, version)

    def add_edges(self, edges: Sequence[GraphEdge]) -> List[GraphEdge]:
        with self._lock:
            versions = [self._validate_edge(edge) for edge in edges]
            return [self._store_edge(edge, v) for edge, v in zip(edges, versions)]

    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        with self._lock:
            return self._edges.get(edge_id)

    def delete_edge(self, edge_id: str) -> bool:
        with self._lock:
            existing = self._edges.get(edge_id)
            if existing is None:
                return False
            self._pending_version(existing.version_id)
            del self._version_edges[existing.version_id][edge_id]
            del self._edges[edge_id]
            return True

    # ------------------------------------------------------------------
    # Scans, audit and statistics
    # ------------------------------------------------------------------

    @staticmethod
    def _page(rows: List[Any], limit: Optional[int], offset: int, started: float) -> QueryResult:
        total = len(rows)
        end = total if limit is None else offset + limit
        page = rows[offset:end]
        return QueryResult(
            data=page,
            total_count=total,
            has_more=end < total,
            execution_time_ms=(time.time() - started) * 1000,
        )

    def query_nodes(self, query: NodeQuery) -> QueryResult:
        started = time.time()
        with self._lock:
            version_id = self._resolve_version_id(query.project_id, query.version_id)
            if version_id is None:
                return self._page([], query.limit, query.offset, started)
            node_ids = self._version_nodes.get(version_id, {})
            rows = []
            for key in sorted(node_ids):
                node = self._nodes[node_ids[key]]
                if node.project_id != query.project_id:
                    continue
                if query.node_type is not None and node.node_type != query.node_type:
                    continue
                if query.name is not None and node.name != query.name:
                    continue
                if query.file_path is not None and node.file_path != query.file_path:
                    continue
                rows.append(node)
            return self._page(rows, query.limit, query.offset, started)

    def query_edges(self, query: EdgeQuery) -> QueryResult:
        started = time.time()
        with self._lock:
            version_id = self._resolve_version_id(query.project_id, query.version_id)
            if version_id is None:
                return self._page([], query.limit, query.offset, started)
            rows = []
            for edge_id in self._version_edges.get(version_id, {}):
                edge = self._edges[edge_id]
                if edge.project_id != query.project_id:
                    continue
                if query.edge_type is not None and edge.edge_type != query.edge_type:
                    continue
                if query.source_node_id is not None and edge.source_node_id != query.source_node_id:
                    continue
                if query.target_node_id is not None and edge.target_node_id != query.target_node_id:
                    continue
                rows.append(edge)
            return self._page(rows, query.limit, query.offset, started)

    def record_operations(self, version_id: str, operations: Sequence[UpdateOperation]) -> None:
        with self._lock:
            version = self._pending_version(version_id)
            self._operations[version_id].extend(
                replace(op, project_id=version.project_id, version_id=version_id)
                for op in operations
            )

    def get_operations(self, version_id: str) -> List[UpdateOperation]:
        with self._lock:
            return list(self._operations.get(version_id, []))

    def record_references(
        self, version_id: str, references: Mapping[str, Sequence[ExtractedReference]]
    ) -> None:
        with self._lock:
            self._pending_version(version_id)
            kept = self._references[version_id]
            for file_path, refs in references.items():
                kept[file_path] = [replace(ref) for ref in refs]

    def get_references(self, version_id: str) -> Dict[str, List[ExtractedReference]]:
        with self._lock:
            kept = self._references.get(version_id, {})
            return {path: list(refs) for path, refs in kept.items()}

    def get_statistics(self, project_id: str) -> GraphStatistics:
        with self._lock:
            version = self.get_current_version(project_id)
            if version is None:
                raise ProjectNotFoundError(project_id)
            nodes = [self._nodes[nid] for nid in self._version_nodes[version.id].values()]
            edges = [self._edges[eid] for eid in self._version_edges[version.id]]

            node_type_counts: Dict[str, int] = {}
            for node in nodes:
                node_type_counts[node.node_type] = node_type_counts.get(node.node_type, 0) + 1
            edge_type_counts: Dict[str, int] = {}
            for edge in edges:
                edge_type_counts[edge.edge_type] = edge_type_counts.get(edge.edge_type, 0) + 1

            complexities = [n.complexity for n in nodes if n.complexity is not None]
            average = round(sum(complexities) / len(complexities), 2) if complexities else 0.0

            return GraphStatistics(
                project_id=project_id,
                version_number=version.version_number,
                version_created=version.created_at,
                total_nodes=len(nodes),
                total_edges=len(edges),
                total_files=len({n.file_path for n in nodes}),
                average_complexity=average,
                node_type_counts=node_type_counts,
                edge_type_counts=edge_type_counts,
            )

    def clear(self) -> None:
        """Remove everything from storage."""
        with self._lock:
            self._versions.clear()
            self._project_versions.clear()
            self._nodes.clear()
            self._version_nodes.clear()
            self._edges.clear()
            self._version_edges.clear()
            self._operations.clear()
            self._references.clear()
            logger.debug("Cleared graph store")


__all__ = ["GraphStore", "InMemoryGraphStore"]
