# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Read-only analysis over committed graph versions.

Every operation runs against one committed version of one project: the
current version unless a version_id is pinned. The version's nodes and
edges are materialised once into an immutable GraphSnapshot, which is
cached per version id. Committed versions never change, so cached snapshots
never go stale; a new commit simply makes a different version current.

Operations never take project locks. Pending versions are invisible.

Heuristic constants:
- Fuzzy matching keeps scores >= 0.3 by default (configurable)
- Impact risk buckets: score < 5 low, < 15 medium, < 30 high, else critical,
  where score = affected node count + target complexity // 5
- Cycle severity: length <= 3 low, <= 6 medium, else high; raised one level
  when a member's complexity >= 20
- Bottleneck centrality: weighted dependency degree * (1 + ln(complexity))
"""

import logging
import math
import threading
from collections import OrderedDict, deque
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import Config
from .errors import (
    GraphValidationError,
    NodeNotFoundError,
    ProjectNotFoundError,
    VersionNotFoundError,
)
from .models import (
    Bottleneck,
    CircularDependency,
    EdgeQuery,
    EdgeType,
    GraphEdge,
    GraphNode,
    GraphStatistics,
    GraphVersion,
    ImpactAnalysis,
    NodeQuery,
    NodeSearchResult,
    NodeType,
    PathSearchResult,
    RiskLevel,
    Severity,
)
from .similarity import name_similarity, text_similarity
from .storage import GraphStore

logger = logging.getLogger(__name__)

NAME_MATCH = "name match"
SEMANTIC_MATCH = "semantic similarity"

# Impact score cut points: below each bound maps to the bucket
RISK_THRESHOLDS = ((5, RiskLevel.LOW), (15, RiskLevel.MEDIUM), (30, RiskLevel.HIGH))
RISK_COMPLEXITY_DIVISOR = 5

CYCLE_LOW_MAX_LENGTH = 3
CYCLE_MEDIUM_MAX_LENGTH = 6
CYCLE_COMPLEXITY_ESCALATION = 20

DIRECTION_DEPENDENTS = "dependents"
DIRECTION_DEPENDENCIES = "dependencies"


class GraphSnapshot:
    """Immutable in-memory materialisation of one committed version.

    Adjacency lists are ordered by (neighbour node_key, edge type) so every
    traversal visits neighbours in the same order on every run.
    """

    def __init__(
        self, version: GraphVersion, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]
    ):
        self.version = version
        self.nodes: Tuple[GraphNode, ...] = tuple(sorted(nodes, key=lambda n: n.node_key))
        self.by_id: Dict[str, GraphNode] = {n.id: n for n in self.nodes}
        self.by_key: Dict[str, GraphNode] = {n.node_key: n for n in self.nodes}

        outgoing: Dict[str, List[GraphEdge]] = {}
        incoming: Dict[str, List[GraphEdge]] = {}
        kept: List[GraphEdge] = []
        for edge in edges:
            if edge.source_node_id not in self.by_id or edge.target_node_id not in self.by_id:
                logger.warning(f"Ignoring dangling edge {edge.id} in version {version.id}")
                continue
            kept.append(edge)
            outgoing.setdefault(edge.source_node_id, []).append(edge)
            incoming.setdefault(edge.target_node_id, []).append(edge)

        def key_of(node_id: str) -> str:
            return self.by_id[node_id].node_key

        for edge_list in outgoing.values():
            edge_list.sort(key=lambda e: (key_of(e.target_node_id), e.edge_type))
        for edge_list in incoming.values():
            edge_list.sort(key=lambda e: (key_of(e.source_node_id), e.edge_type))

        self.edges: Tuple[GraphEdge, ...] = tuple(
            sorted(
                kept,
                key=lambda e: (key_of(e.source_node_id), key_of(e.target_node_id), e.edge_type),
            )
        )
        self._outgoing = outgoing
        self._incoming = incoming

    @property
    def project_id(self) -> str:
        return self.version.project_id

    def outgoing(self, node_id: str, edge_types: Optional[Sequence[str]] = None) -> List[GraphEdge]:
        edges = self._outgoing.get(node_id, [])
        if edge_types is None:
            return list(edges)
        return [e for e in edges if e.edge_type in edge_types]

    def incoming(self, node_id: str, edge_types: Optional[Sequence[str]] = None) -> List[GraphEdge]:
        edges = self._incoming.get(node_id, [])
        if edge_types is None:
            return list(edges)
        return [e for e in edges if e.edge_type in edge_types]

    def require(self, node_id: str) -> GraphNode:
        node = self.by_id.get(node_id)
        if node is None:
            raise NodeNotFoundError(node_id, self.version.id)
        return node


class SnapshotCache:
    """LRU cache of snapshots keyed by version id.

    Thread Safety:
        All public methods are thread-safe using a reentrant lock.
    """

    def __init__(self, max_entries: int = 8):
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._cache: "OrderedDict[str, GraphSnapshot]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def get(self, version_id: str) -> Optional[GraphSnapshot]:
        with self._lock:
            snapshot = self._cache.get(version_id)
            if snapshot is None:
                self._misses += 1
                return None
            self._cache.move_to_end(version_id)
            self._hits += 1
            return snapshot

    def put(self, snapshot: GraphSnapshot) -> None:
        with self._lock:
            self._cache[snapshot.version.id] = snapshot
            self._cache.move_to_end(snapshot.version.id)
            while len(self._cache) > self._max_entries:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"Evicted snapshot of version {evicted}")

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._cache),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
            }


def _check_depth(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise GraphValidationError(f"{field} must be a non-negative integer", {"field": field})
    return value


def _check_limit(value: Optional[int], field: str = "limit") -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise GraphValidationError(f"{field} must be a positive integer", {"field": field})
    return value


def _check_threshold(value: float, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        raise GraphValidationError(f"{field} must be between 0 and 1", {"field": field})
    return float(value)


def risk_level_for(score: int) -> str:
    for bound, level in RISK_THRESHOLDS:
        if score < bound:
            return level
    return RiskLevel.CRITICAL


def cycle_severity(length: int, max_complexity: int) -> str:
    if length <= CYCLE_LOW_MAX_LENGTH:
        rank = 0
    elif length <= CYCLE_MEDIUM_MAX_LENGTH:
        rank = 1
    else:
        rank = 2
    if max_complexity >= CYCLE_COMPLEXITY_ESCALATION:
        rank = min(rank + 1, 2)
    return Severity.ORDER[rank]


def canonical_cycle(keys: Sequence[str]) -> Tuple[str, ...]:
    """Rotate a cycle so it starts at its smallest node_key."""
    start = min(range(len(keys)), key=lambda i: keys[i])
    return tuple(keys[start:]) + tuple(keys[:start])


class GraphQueryEngine:
    """Structural queries over a project's committed graph versions.

    Usage:
        engine = GraphQueryEngine(store)
        hits = engine.find_nodes_by_name("p1", "login", fuzzy=True)
        deps = engine.find_dependencies(hits[0].node.id, max_depth=3)
    """

    def __init__(self, store: GraphStore, config: Optional[Config] = None):
        self.store = store
        self.config = config or Config.from_dict({})
        self._snapshots = SnapshotCache(self.config.snapshot_cache_max_entries)

    # ------------------------------------------------------------------
    # Snapshot resolution
    # ------------------------------------------------------------------

    def snapshot(self, project_id: str, version_id: Optional[str] = None) -> GraphSnapshot:
        """Materialise (or reuse) a committed version of a project.

        Raises:
            ProjectNotFoundError: No version pinned and the project has no
                committed version.
            VersionNotFoundError: The pinned version is unknown, belongs to
                another project, or is not committed.
        """
        if version_id is None:
            version = self.store.get_current_version(project_id)
            if version is None:
                raise ProjectNotFoundError(project_id)
        else:
            found = self.store.get_version(version_id)
            if found is None or found.project_id != project_id or not found.committed:
                raise VersionNotFoundError(version_id, project_id)
            version = found

        cached = self._snapshots.get(version.id)
        if cached is not None:
            return cached

        nodes = self.store.query_nodes(NodeQuery(project_id, version_id=version.id)).data
        edges = self.store.query_edges(EdgeQuery(project_id, version_id=version.id)).data
        snapshot = GraphSnapshot(version, nodes, edges)
        self._snapshots.put(snapshot)
        logger.debug(
            f"Materialised version {version.version_number} of {project_id}: "
            f"{len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges"
        )
        return snapshot

    def _snapshot_for_node(
        self, node_id: str, version_id: Optional[str] = None
    ) -> Tuple[GraphSnapshot, GraphNode]:
        """Snapshot containing a node; the node must belong to the scoped version."""
        stored = self.store.get_node(node_id)
        if stored is None:
            raise NodeNotFoundError(node_id, version_id)
        snapshot = self.snapshot(stored.project_id, version_id)
        return snapshot, snapshot.require(node_id)

    def clear_cache(self) -> None:
        self._snapshots.clear()

    def get_cache_statistics(self) -> Dict[str, int]:
        return self._snapshots.get_statistics()

    # ------------------------------------------------------------------
    # Lookup and search
    # ------------------------------------------------------------------

    def get_node(self, node_id: str, version_id: Optional[str] = None) -> GraphNode:
        """Node by storage id, scoped to the current (or pinned) version.

        Raises:
            NodeNotFoundError: If the id is unknown or the node is not a
                member of the scoped version (e.g. it was deleted since).
        """
        _, node = self._snapshot_for_node(node_id, version_id)
        return node

    def get_node_by_key(
        self, project_id: str, node_key: str, version_id: Optional[str] = None
    ) -> GraphNode:
        snapshot = self.snapshot(project_id, version_id)
        node = snapshot.by_key.get(node_key)
        if node is None:
            raise NodeNotFoundError(node_key, snapshot.version.id)
        return node

    def find_nodes_by_name(
        self,
        project_id: str,
        name: str,
        fuzzy: bool = False,
        threshold: Optional[float] = None,
        version_id: Optional[str] = None,
    ) -> List[NodeSearchResult]:
        """Nodes whose name matches exactly, or fuzzily above a threshold.

        Returns:
            Results sorted by similarity descending, then node_key ascending.
        """
        if not isinstance(name, str) or not name:
            raise GraphValidationError("name must be a non-empty string", {"field": "name"})
        threshold = _check_threshold(
            self.config.fuzzy_threshold if threshold is None else threshold, "threshold"
        )
        snapshot = self.snapshot(project_id, version_id)

        results: List[NodeSearchResult] = []
        for node in snapshot.nodes:
            if not node.name:
                continue
            if not fuzzy:
                if node.name == name:
                    results.append(NodeSearchResult(node, 1.0, NAME_MATCH))
                continue
            score = name_similarity(name, node.name)
            if score >= threshold:
                results.append(NodeSearchResult(node, score, NAME_MATCH))

        results.sort(key=lambda r: (-r.similarity, r.node.node_key))
        return results

    def search_nodes(
        self,
        project_id: str,
        query: str,
        node_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        fuzzy_threshold: Optional[float] = None,
        version_id: Optional[str] = None,
    ) -> List[NodeSearchResult]:
        """Fuzzy name matches united with purpose-text matches.

        A node matched both ways is reported once with its best score; on a
        tie the name match wins.
        """
        if not isinstance(query, str) or not query.strip():
            raise GraphValidationError("query must be a non-empty string", {"field": "query"})
        if node_types is not None:
            unknown = [t for t in node_types if t not in NodeType.ALL]
            if unknown:
                raise GraphValidationError(
                    f"Unknown node types: {unknown}", {"field": "node_types"}
                )
        limit = _check_limit(self.config.search_limit if limit is None else limit)
        threshold = _check_threshold(
            self.config.fuzzy_threshold if fuzzy_threshold is None else fuzzy_threshold,
            "fuzzy_threshold",
        )
        snapshot = self.snapshot(project_id, version_id)

        results: List[NodeSearchResult] = []
        for node in snapshot.nodes:
            if node_types is not None and node.node_type not in node_types:
                continue
            best: Optional[NodeSearchResult] = None
            if node.name:
                score = name_similarity(query, node.name)
                if score >= threshold:
                    best = NodeSearchResult(node, score, NAME_MATCH)
            if node.purpose:
                score = text_similarity(query, node.purpose)
                if score >= threshold and (best is None or score > best.similarity):
                    best = NodeSearchResult(node, score, SEMANTIC_MATCH)
            if best is not None:
                results.append(best)

        results.sort(key=lambda r: (-r.similarity, r.node.node_key))
        return results[:limit]

    def find_nodes_in_file(
        self, project_id: str, file_path: str, version_id: Optional[str] = None
    ) -> List[GraphNode]:
        """Nodes of one file ordered by position."""
        snapshot = self.snapshot(project_id, version_id)
        nodes = [n for n in snapshot.nodes if n.file_path == file_path]
        nodes.sort(key=lambda n: (n.location.start_line, n.node_key))
        return nodes

    def find_nodes_by_type(
        self, project_id: str, node_type: str, version_id: Optional[str] = None
    ) -> List[GraphNode]:
        if node_type not in NodeType.ALL:
            raise GraphValidationError(f"Unknown node type: {node_type}", {"field": "node_type"})
        snapshot = self.snapshot(project_id, version_id)
        return [n for n in snapshot.nodes if n.node_type == node_type]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def find_callers(self, node_id: str, version_id: Optional[str] = None) -> List[GraphNode]:
        """Nodes with a CALLS edge into node_id, ordered by node_key."""
        snapshot, node = self._snapshot_for_node(node_id, version_id)
        callers = {
            e.source_node_id: snapshot.by_id[e.source_node_id]
            for e in snapshot.incoming(node.id, (EdgeType.CALLS,))
        }
        return sorted(callers.values(), key=lambda n: n.node_key)

    def find_callees(self, node_id: str, version_id: Optional[str] = None) -> List[GraphNode]:
        """Nodes node_id has a CALLS edge to, ordered by node_key."""
        snapshot, node = self._snapshot_for_node(node_id, version_id)
        callees = {
            e.target_node_id: snapshot.by_id[e.target_node_id]
            for e in snapshot.outgoing(node.id, (EdgeType.CALLS,))
        }
        return sorted(callees.values(), key=lambda n: n.node_key)

    @staticmethod
    def _bfs(
        snapshot: GraphSnapshot,
        start_id: str,
        max_depth: int,
        outward: bool,
        edge_types: Sequence[str] = EdgeType.DEPENDENCY,
    ) -> List[Tuple[GraphNode, int]]:
        """Bounded BFS returning (node, depth) in discovery order, start excluded."""
        visited: Set[str] = {start_id}
        queue: Deque[Tuple[str, int]] = deque([(start_id, 0)])
        found: List[Tuple[GraphNode, int]] = []
        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            if outward:
                neighbours = [e.target_node_id for e in snapshot.outgoing(current, edge_types)]
            else:
                neighbours = [e.source_node_id for e in snapshot.incoming(current, edge_types)]
            for neighbour in neighbours:
                if neighbour in visited:
                    continue
                visited.add(neighbour)
                found.append((snapshot.by_id[neighbour], depth + 1))
                queue.append((neighbour, depth + 1))
        return found

    def find_dependencies(
        self, node_id: str, max_depth: Optional[int] = None, version_id: Optional[str] = None
    ) -> List[GraphNode]:
        """Nodes reachable over CALLS/IMPORTS/USES within max_depth hops."""
        depth = _check_depth(
            self.config.dependency_max_depth if max_depth is None else max_depth, "max_depth"
        )
        snapshot, node = self._snapshot_for_node(node_id, version_id)
        return [n for n, _ in self._bfs(snapshot, node.id, depth, outward=True)]

    def find_dependents(
        self, node_id: str, max_depth: Optional[int] = None, version_id: Optional[str] = None
    ) -> List[GraphNode]:
        """Nodes that reach node_id over CALLS/IMPORTS/USES within max_depth hops."""
        depth = _check_depth(
            self.config.dependency_max_depth if max_depth is None else max_depth, "max_depth"
        )
        snapshot, node = self._snapshot_for_node(node_id, version_id)
        return [n for n, _ in self._bfs(snapshot, node.id, depth, outward=False)]

    def _paths_from(
        self, snapshot: GraphSnapshot, source_id: str, targets: Set[str], max_depth: int
    ) -> Dict[str, Optional[PathSearchResult]]:
        """Shortest paths (by edge count) over all edge types from one source."""
        parent: Dict[str, Optional[GraphEdge]] = {source_id: None}
        queue: Deque[Tuple[str, int]] = deque([(source_id, 0)])
        remaining = set(targets) - {source_id}
        while queue and remaining:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for edge in snapshot.outgoing(current):
                nxt = edge.target_node_id
                if nxt in parent:
                    continue
                parent[nxt] = edge
                remaining.discard(nxt)
                queue.append((nxt, depth + 1))

        results: Dict[str, Optional[PathSearchResult]] = {}
        for target in targets:
            if target not in parent:
                results[target] = None
                continue
            edges: List[GraphEdge] = []
            cursor = target
            while parent[cursor] is not None:
                edge = parent[cursor]
                assert edge is not None
                edges.append(edge)
                cursor = edge.source_node_id
            edges.reverse()
            path = [snapshot.by_id[source_id]] + [snapshot.by_id[e.target_node_id] for e in edges]
            results[target] = PathSearchResult(
                path=path,
                edges=edges,
                length=len(edges),
                total_weight=sum(e.weight for e in edges),
            )
        return results

    def find_path(
        self,
        source_id: str,
        target_id: str,
        max_depth: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> Optional[PathSearchResult]:
        """Shortest path from source to target within max_depth edges.

        Returns:
            The path, or None when no path exists within the bound.
        """
        depth = _check_depth(
            self.config.path_max_depth if max_depth is None else max_depth, "max_depth"
        )
        snapshot, source = self._snapshot_for_node(source_id, version_id)
        target = snapshot.require(target_id)
        return self._paths_from(snapshot, source.id, {target.id}, depth)[target.id]

    def find_shortest_paths(
        self,
        source_id: str,
        target_ids: Sequence[str],
        max_depth: Optional[int] = None,
        version_id: Optional[str] = None,
    ) -> Dict[str, Optional[PathSearchResult]]:
        """Shortest paths from one source to several targets in a single BFS."""
        depth = _check_depth(
            self.config.path_max_depth if max_depth is None else max_depth, "max_depth"
        )
        snapshot, source = self._snapshot_for_node(source_id, version_id)
        targets = {snapshot.require(t).id for t in target_ids}
        return self._paths_from(snapshot, source.id, targets, depth)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_impact(
        self,
        node_id: str,
        max_depth: Optional[int] = None,
        direction: str = DIRECTION_DEPENDENTS,
        version_id: Optional[str] = None,
    ) -> ImpactAnalysis:
        """Estimate what a change to node_id affects.

        Args:
            node_id: Target node.
            max_depth: Hop bound for the indirect set (default 3).
            direction: "dependents" (who relies on the target) or
                "dependencies" (what the target relies on).
        """
        if direction not in (DIRECTION_DEPENDENTS, DIRECTION_DEPENDENCIES):
            raise GraphValidationError(
                f"direction must be '{DIRECTION_DEPENDENTS}' or '{DIRECTION_DEPENDENCIES}'",
                {"field": "direction"},
            )
        depth = _check_depth(
            self.config.impact_max_depth if max_depth is None else max_depth, "max_depth"
        )
        snapshot, target = self._snapshot_for_node(node_id, version_id)
        reached = self._bfs(
            snapshot, target.id, depth, outward=direction == DIRECTION_DEPENDENCIES
        )
        direct = sorted((n for n, d in reached if d == 1), key=lambda n: n.node_key)
        indirect = sorted((n for n, d in reached if d > 1), key=lambda n: n.node_key)

        files = {target.file_path}
        files.update(n.file_path for n in direct)
        files.update(n.file_path for n in indirect)

        complexity = target.complexity or 0
        score = len(direct) + len(indirect) + complexity // RISK_COMPLEXITY_DIVISOR
        estimate = round(max(complexity, 1) + 0.8 * len(direct) + 0.3 * len(indirect))

        return ImpactAnalysis(
            target_node=target,
            directly_affected=direct,
            indirectly_affected=indirect,
            affected_files=sorted(files),
            risk_level=risk_level_for(score),
            estimated_change_complexity=estimate,
        )

    def find_bottlenecks(
        self, project_id: str, limit: Optional[int] = None, version_id: Optional[str] = None
    ) -> List[Bottleneck]:
        """Rank every node by weighted dependency degree scaled by complexity.

        Returns:
            Entries sorted by centrality descending, then node_key ascending.
        """
        limit = _check_limit(limit)
        snapshot = self.snapshot(project_id, version_id)

        ranking: List[Bottleneck] = []
        for node in snapshot.nodes:
            incoming = snapshot.incoming(node.id, EdgeType.DEPENDENCY)
            outgoing = snapshot.outgoing(node.id, EdgeType.DEPENDENCY)
            weighted = sum(e.weight for e in incoming) + sum(e.weight for e in outgoing)
            scale = 1.0 + math.log(max(node.complexity or 1, 1))
            ranking.append(
                Bottleneck(
                    node=node,
                    centrality=round(weighted * scale, 6),
                    incoming_connections=len(incoming),
                    outgoing_connections=len(outgoing),
                )
            )

        ranking.sort(key=lambda b: (-b.centrality, b.node.node_key))
        return ranking if limit is None else ranking[:limit]

    def find_circular_dependencies(
        self, project_id: str, version_id: Optional[str] = None
    ) -> List[CircularDependency]:
        """Cycles over CALLS/IMPORTS/USES edges, one entry per distinct cycle.

        Self-loops (direct recursion) are not reported.
        """
        snapshot = self.snapshot(project_id, version_id)

        successors: Dict[str, List[str]] = {}
        for node in snapshot.nodes:
            targets: List[str] = []
            for edge in snapshot.outgoing(node.id, EdgeType.DEPENDENCY):
                if edge.target_node_id != node.id and edge.target_node_id not in targets:
                    targets.append(edge.target_node_id)
            successors[node.id] = targets

        white, gray, black = 0, 1, 2
        color: Dict[str, int] = {n.id: white for n in snapshot.nodes}
        found: Dict[Tuple[str, ...], List[str]] = {}

        for root in snapshot.nodes:
            if color[root.id] != white:
                continue
            color[root.id] = gray
            path: List[str] = [root.id]
            stack: List[Tuple[str, int]] = [(root.id, 0)]
            while stack:
                current, next_index = stack[-1]
                children = successors[current]
                if next_index >= len(children):
                    stack.pop()
                    path.pop()
                    color[current] = black
                    continue
                stack[-1] = (current, next_index + 1)
                child = children[next_index]
                if color[child] == white:
                    color[child] = gray
                    path.append(child)
                    stack.append((child, 0))
                elif color[child] == gray:
                    members = path[path.index(child) :]
                    keys = [snapshot.by_id[m].node_key for m in members]
                    canonical = canonical_cycle(keys)
                    found.setdefault(canonical, members)

        cycles = [self._describe_cycle(snapshot, canonical) for canonical in found]
        cycles.sort(key=lambda c: (c.cycle_length, c.node_keys))
        if cycles:
            logger.debug(f"Found {len(cycles)} circular dependencies in {project_id}")
        return cycles

    @staticmethod
    def _describe_cycle(snapshot: GraphSnapshot, keys: Tuple[str, ...]) -> CircularDependency:
        nodes = [snapshot.by_key[k] for k in keys]
        edges: List[GraphEdge] = []
        for i, node in enumerate(nodes):
            nxt = nodes[(i + 1) % len(nodes)]
            candidates = [
                e
                for e in snapshot.outgoing(node.id, EdgeType.DEPENDENCY)
                if e.target_node_id == nxt.id
            ]
            edges.append(candidates[0])
        max_complexity = max((n.complexity or 0) for n in nodes)
        return CircularDependency(
            nodes=nodes,
            edges=edges,
            cycle_length=len(nodes),
            edge_types=sorted({e.edge_type for e in edges}),
            severity=cycle_severity(len(nodes), max_complexity),
        )

    def get_statistics(self, project_id: str) -> GraphStatistics:
        """Aggregate statistics of the project's current version."""
        return self.store.get_statistics(project_id)
