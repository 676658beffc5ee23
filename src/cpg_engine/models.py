# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Core data models for the versioned Code Property Graph.

This module defines the data structures shared by every component:
- NodeType / EdgeType / ChangeType / CallType / RiskLevel / Severity: string constants
- CodeLocation, Parameter: value objects embedded in nodes
- GraphNode, GraphEdge, GraphVersion: persisted graph entities
- UpdateOperation: audit record of one change-derived operation
- BuildContext, FileChange: inputs of the builder and the incremental updater
- GraphUpdateResult: structured result of a build or update
- Extraction contract: ExtractedEntity, ExtractedReference, FileExtraction
- Query results: NodeSearchResult, PathSearchResult, CircularDependency,
  ImpactAnalysis, Bottleneck, GraphStatistics, QueryResult
- NodeQuery / EdgeQuery: filters accepted by the persistence interface

All models serialize to JSON-compatible dicts with snake_case keys.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class NodeType:
    """Types of graph nodes.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    FUNCTION = "FUNCTION"  # functions and methods
    CLASS = "CLASS"
    VARIABLE = "VARIABLE"  # module-level assignments
    MODULE = "MODULE"  # one per source file

    ALL = (FUNCTION, CLASS, VARIABLE, MODULE)


class EdgeType:
    """Types of directed relationships between nodes."""

    CALLS = "CALLS"
    IMPORTS = "IMPORTS"
    USES = "USES"
    CONTAINS = "CONTAINS"  # module -> class -> method

    ALL = (CALLS, IMPORTS, USES, CONTAINS)
    # Edge types followed by dependency traversal, impact analysis and cycle detection
    DEPENDENCY = (CALLS, IMPORTS, USES)


class CallType:
    """How a CALLS edge was observed at the call site."""

    DIRECT = "direct"  # foo()
    METHOD = "method"  # obj.foo()
    DYNAMIC = "dynamic"  # getattr(obj, name)()


class ChangeType:
    """File change kinds accepted by the incremental updater."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"

    ALL = (ADDED, MODIFIED, DELETED, RENAMED)


class OperationType:
    """Kinds of change-derived operations recorded per version."""

    ADD_NODE = "ADD_NODE"
    UPDATE_NODE = "UPDATE_NODE"
    DELETE_NODE = "DELETE_NODE"
    ADD_EDGE = "ADD_EDGE"
    DELETE_EDGE = "DELETE_EDGE"


class RiskLevel:
    """Risk buckets reported by impact analysis."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity:
    """Severity buckets for circular dependencies."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    ORDER = (LOW, MEDIUM, HIGH)


@dataclass(frozen=True)
class CodeLocation:
    """Source span of an entity. Lines are 1-based, columns 0-based."""

    file_path: str
    start_line: int
    end_line: int
    start_column: int = 0
    end_column: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "start_column": self.start_column,
            "end_column": self.end_column,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeLocation":
        """Deserialize from JSON-compatible dict."""
        return cls(
            file_path=data["file_path"],
            start_line=data["start_line"],
            end_line=data["end_line"],
            start_column=data.get("start_column", 0),
            end_column=data.get("end_column", 0),
        )


@dataclass(frozen=True)
class Parameter:
    """A function parameter as reported by the extraction adapter."""

    name: str
    type: Optional[str] = None
    is_optional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {"name": self.name, "is_optional": self.is_optional}
        if self.type is not None:
            result["type"] = self.type
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Parameter":
        """Deserialize from JSON-compatible dict."""
        return cls(
            name=data["name"],
            type=data.get("type"),
            is_optional=data.get("is_optional", False),
        )


@dataclass
class GraphNode:
    """One syntactic entity of a version.

    ``node_key`` is the durable identity of the entity across versions;
    ``id`` is the storage handle of this particular row and changes whenever
    the entity is carried forward into a new version.
    """

    node_key: str
    node_type: str
    location: CodeLocation
    language: str
    content_hash: str

    # Assigned by persistence
    id: str = ""
    project_id: str = ""
    version_id: str = ""

    name: Optional[str] = None
    signature: Optional[str] = None
    complexity: Optional[int] = None
    purpose: Optional[str] = None
    parameters: Optional[List[Parameter]] = None
    return_type: Optional[str] = None
    docstring: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def file_path(self) -> str:
        return self.location.file_path

    def carry_forward(self, version_id: str) -> "GraphNode":
        """Return an unsaved copy of this node scoped to another version."""
        return replace(self, id="", version_id=version_id, created_at=utc_now())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict, omitting unset optional fields."""
        result: Dict[str, Any] = {
            "id": self.id,
            "project_id": self.project_id,
            "version_id": self.version_id,
            "node_key": self.node_key,
            "node_type": self.node_type,
            "location": self.location.to_dict(),
            "language": self.language,
            "content_hash": self.content_hash,
            "created_at": self.created_at.isoformat(),
        }
        if self.name is not None:
            result["name"] = self.name
        if self.signature is not None:
            result["signature"] = self.signature
        if self.complexity is not None:
            result["complexity"] = self.complexity
        if self.purpose is not None:
            result["purpose"] = self.purpose
        if self.parameters is not None:
            result["parameters"] = [p.to_dict() for p in self.parameters]
        if self.return_type is not None:
            result["return_type"] = self.return_type
        if self.docstring is not None:
            result["docstring"] = self.docstring
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        """Deserialize from JSON-compatible dict.

        Raises:
            KeyError: If required fields are missing from data dict.
        """
        parameters = data.get("parameters")
        created_at = data.get("created_at")
        return cls(
            id=data.get("id", ""),
            project_id=data.get("project_id", ""),
            version_id=data.get("version_id", ""),
            node_key=data["node_key"],
            node_type=data["node_type"],
            location=CodeLocation.from_dict(data["location"]),
            language=data["language"],
            content_hash=data["content_hash"],
            name=data.get("name"),
            signature=data.get("signature"),
            complexity=data.get("complexity"),
            purpose=data.get("purpose"),
            parameters=[Parameter.from_dict(p) for p in parameters] if parameters else None,
            return_type=data.get("return_type"),
            docstring=data.get("docstring"),
            created_at=datetime.fromisoformat(created_at) if created_at else utc_now(),
        )


@dataclass
class GraphEdge:
    """A directed relationship between two nodes of the same version."""

    source_node_id: str
    target_node_id: str
    edge_type: str
    weight: float = 1.0
    call_type: Optional[str] = None

    id: str = ""
    project_id: str = ""
    version_id: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "id": self.id,
            "project_id": self.project_id,
            "version_id": self.version_id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "edge_type": self.edge_type,
            "weight": self.weight,
            "created_at": self.created_at.isoformat(),
        }
        if self.call_type is not None:
            result["call_type"] = self.call_type
        return result


@dataclass
class GraphVersion:
    """Snapshot marker for one project.

    A version is written while ``committed`` is False and becomes visible to
    readers once committed; its node/edge membership never changes afterwards.
    """

    id: str
    project_id: str
    version_number: int
    parent_version_id: Optional[str] = None
    checksum: str = ""
    operations_count: int = 0
    committed: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "parent_version_id": self.parent_version_id,
            "checksum": self.checksum,
            "operations_count": self.operations_count,
            "committed": self.committed,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class UpdateOperation:
    """Audit record for one change-derived operation of a version."""

    operation_type: str
    node_key: str
    file_path: str
    change_reason: str
    project_id: str = ""
    version_id: str = ""
    # For edge operations: "<source key> -[TYPE]-> <target key>"
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: Dict[str, Any] = {
            "operation_type": self.operation_type,
            "node_key": self.node_key,
            "file_path": self.file_path,
            "change_reason": self.change_reason,
            "project_id": self.project_id,
            "version_id": self.version_id,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        return result


@dataclass
class BuildContext:
    """Inputs of a full-project build.

    ``include_patterns``/``exclude_patterns``/``languages`` left as None are
    filled from configuration by the builder.
    """

    project_id: str
    root_path: str
    version_id: Optional[str] = None
    include_patterns: Optional[List[str]] = None
    exclude_patterns: Optional[List[str]] = None
    languages: Optional[List[str]] = None


@dataclass
class FileChange:
    """One file-level change submitted to the incremental updater."""

    file_path: str
    change_type: str
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    old_path: Optional[str] = None  # renamed only

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict (contents omitted)."""
        result: Dict[str, Any] = {"file_path": self.file_path, "change_type": self.change_type}
        if self.old_path is not None:
            result["old_path"] = self.old_path
        return result


@dataclass
class GraphUpdateResult:
    """Structured outcome of a build or an incremental update."""

    success: bool
    version_id: Optional[str]
    operations_applied: int = 0
    nodes_affected: int = 0
    edges_affected: int = 0
    execution_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)
    version_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "success": self.success,
            "version_id": self.version_id,
            "version_number": self.version_number,
            "operations_applied": self.operations_applied,
            "nodes_affected": self.nodes_affected,
            "edges_affected": self.edges_affected,
            "execution_time_ms": self.execution_time_ms,
            "errors": list(self.errors),
        }


# =============================================================================
# Extraction contract
# =============================================================================


@dataclass
class ExtractedEntity:
    """Candidate node produced by an extraction adapter for one file.

    ``local_key`` ("<start_line>:<name>", or the adapter-supplied node_key)
    identifies the entity inside its file; references and parent links point
    at entities through it.
    """

    name: str
    node_type: str
    start_line: int
    end_line: int
    source_text: str
    start_column: int = 0
    end_column: int = 0
    signature: Optional[str] = None
    complexity: Optional[int] = None
    parameters: Optional[List[Parameter]] = None
    return_type: Optional[str] = None
    docstring: Optional[str] = None
    parent_local_key: Optional[str] = None
    node_key: Optional[str] = None  # adapter-supplied identity, overrides the default

    @property
    def local_key(self) -> str:
        if self.node_key:
            return self.node_key
        return f"{self.start_line}:{self.name}"


@dataclass
class ExtractedReference:
    """Unresolved reference from an entity to a name elsewhere in the project."""

    source_local_key: str
    target_name: str
    edge_type: str
    line: int
    qualifier: Optional[str] = None  # receiver text for obj.method() calls
    target_module: Optional[str] = None  # dotted module for imports
    call_type: Optional[str] = None


@dataclass
class FileExtraction:
    """Everything an extraction adapter reports for one file."""

    file_path: str
    language: str
    entities: List[ExtractedEntity] = field(default_factory=list)
    references: List[ExtractedReference] = field(default_factory=list)
    is_valid: bool = True
    error_message: Optional[str] = None


# =============================================================================
# Query results
# =============================================================================


@dataclass
class NodeSearchResult:
    """A node matched by name or purpose search."""

    node: GraphNode
    similarity: float
    match_reason: str

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "node": self.node.to_dict(),
            "similarity": self.similarity,
            "match_reason": self.match_reason,
        }


@dataclass
class PathSearchResult:
    """Shortest path between two nodes."""

    path: List[GraphNode]
    edges: List[GraphEdge]
    length: int
    total_weight: float

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "path": [n.to_dict() for n in self.path],
            "edges": [e.to_dict() for e in self.edges],
            "length": self.length,
            "total_weight": self.total_weight,
        }


@dataclass
class CircularDependency:
    """One dependency cycle, rotated to start at its smallest node key."""

    nodes: List[GraphNode]
    edges: List[GraphEdge]
    cycle_length: int
    edge_types: List[str]
    severity: str

    @property
    def node_keys(self) -> List[str]:
        return [n.node_key for n in self.nodes]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "node_keys": self.node_keys,
            "edges": [e.to_dict() for e in self.edges],
            "cycle_length": self.cycle_length,
            "edge_types": list(self.edge_types),
            "severity": self.severity,
        }


@dataclass
class ImpactAnalysis:
    """Entities affected by changing a target node."""

    target_node: GraphNode
    directly_affected: List[GraphNode]
    indirectly_affected: List[GraphNode]
    affected_files: List[str]
    risk_level: str
    estimated_change_complexity: int

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "target_node": self.target_node.to_dict(),
            "directly_affected": [n.to_dict() for n in self.directly_affected],
            "indirectly_affected": [n.to_dict() for n in self.indirectly_affected],
            "affected_files": list(self.affected_files),
            "risk_level": self.risk_level,
            "estimated_change_complexity": self.estimated_change_complexity,
        }


@dataclass
class Bottleneck:
    """Centrality ranking entry."""

    node: GraphNode
    centrality: float
    incoming_connections: int
    outgoing_connections: int

    @property
    def total_connections(self) -> int:
        return self.incoming_connections + self.outgoing_connections

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "node": self.node.to_dict(),
            "centrality": self.centrality,
            "incoming_connections": self.incoming_connections,
            "outgoing_connections": self.outgoing_connections,
            "total_connections": self.total_connections,
        }


@dataclass
class GraphStatistics:
    """Aggregate statistics for a project's current version."""

    project_id: str
    version_number: int
    version_created: datetime
    total_nodes: int
    total_edges: int
    total_files: int
    average_complexity: float
    node_type_counts: Dict[str, int] = field(default_factory=dict)
    edge_type_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "project_id": self.project_id,
            "version_number": self.version_number,
            "version_created": self.version_created.isoformat(),
            "total_nodes": self.total_nodes,
            "total_edges": self.total_edges,
            "total_files": self.total_files,
            "average_complexity": self.average_complexity,
            "node_type_counts": dict(self.node_type_counts),
            "edge_type_counts": dict(self.edge_type_counts),
        }


@dataclass
class QueryResult:
    """A page of rows returned by a filtered scan."""

    data: List[Any]
    total_count: int
    has_more: bool
    execution_time_ms: float


@dataclass
class NodeQuery:
    """Filter for GraphStore.query_nodes(). ``version_id`` None means current."""

    project_id: str
    version_id: Optional[str] = None
    node_type: Optional[str] = None
    name: Optional[str] = None
    file_path: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class EdgeQuery:
    """Filter for GraphStore.query_edges(). ``version_id`` None means current."""

    project_id: str
    version_id: Optional[str] = None
    source_node_id: Optional[str] = None
    target_node_id: Optional[str] = None
    edge_type: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
