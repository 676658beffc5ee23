# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Incremental graph updater for file-level changes.

Each update produces one new version whose number is the current version's
number plus one:
- added/modified: re-extract the file; nodes whose node_key and content hash
  match the base version are carried forward untouched, the rest are new or
  updated, and base nodes missing from the extraction are removed. The
  file's outgoing edges are recomputed.
- deleted: nothing keyed to the file survives into the new version
- renamed: a delete of the old path plus an add of the new one

Files outside the change list are carried forward without re-extraction.
Each version keeps every file's unresolved references, and the references
of unchanged files are resolved again against the new node set, so their
edges match what a full build of the same sources resolves. A file whose
extraction fails keeps its base nodes, references and outgoing edges, so a
broken save never erases graph content.

Design:
- Copy-forward: the base version is never mutated
- Serialised per project through VersionAllocator.project_lock
"""

import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .builder import (
    apply_purposes,
    discard_quietly,
    extract_source,
    keyed_references,
    resolve_file_edges,
    stage_nodes,
    write_version,
)
from .config import Config
from .errors import BackendError, ExtractionError, GraphValidationError
from .extraction.base import PurposeAnnotator
from .extraction.registry import ExtractorRegistry, default_registry
from .file_discovery import language_for_path, to_relative_posix
from .logging_setup import summary_fields
from .hashing import edge_key
from .models import (
    BuildContext,
    ChangeType,
    EdgeQuery,
    EdgeType,
    ExtractedReference,
    FileChange,
    FileExtraction,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    NodeQuery,
    OperationType,
    UpdateOperation,
)
from .node_index import NodeIndex, ResolvedEdge
from .storage import GraphStore
from .versioning import VersionAllocator

logger = logging.getLogger(__name__)

_CONTENT_CHANGES = (ChangeType.ADDED, ChangeType.MODIFIED)


class IncrementalUpdater:
    """Applies file changes to a project's graph as a new version.

    Usage:
        updater = IncrementalUpdater(store, allocator=allocator)
        result = updater.update("p1", [FileChange("src/a.py", "modified", new_content=text)])
    """

    def __init__(
        self,
        store: GraphStore,
        registry: Optional[ExtractorRegistry] = None,
        allocator: Optional[VersionAllocator] = None,
        config: Optional[Config] = None,
        annotator: Optional[PurposeAnnotator] = None,
    ):
        """Initialize incremental updater.

        Args:
            store: Persistence backend holding the base and new versions.
            registry: Extraction adapters by language (default: bundled Python).
            allocator: Version allocator; share it with the builder so both
                writers serialise on the same project locks.
            config: Engine configuration (default: built-in defaults).
            annotator: Optional purpose annotator for new and updated nodes.
        """
        self.store = store
        self.config = config or Config.from_dict({})
        self.registry = registry or default_registry()
        self.allocator = allocator or VersionAllocator(
            store, max_retries=self.config.version_commit_retries
        )
        self.annotator = annotator

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _normalise_path(self, file_path: str, root: Optional[Path]) -> str:
        if root is not None:
            rel = to_relative_posix(file_path, root)
        else:
            if Path(file_path).is_absolute():
                raise GraphValidationError(
                    f"Absolute path {file_path} requires a context with root_path",
                    {"file_path": file_path},
                )
            rel = to_relative_posix(file_path, Path("."))
        if not rel or rel == "." or rel.startswith("../") or "/../" in rel:
            raise GraphValidationError(
                f"Path must stay inside the project root: {file_path}", {"file_path": file_path}
            )
        return rel

    def _validate(
        self, project_id: str, changes: Sequence[FileChange], context: Optional[BuildContext]
    ) -> "OrderedDict[str, FileChange]":
        """Validate changes and collapse them to one effective change per path.

        Renames expand into a delete of old_path and an add of file_path.
        When several changes touch one path, the last one wins.
        """
        if not isinstance(project_id, str) or not project_id.strip():
            raise GraphValidationError("project_id is required", {"field": "project_id"})
        if not changes:
            raise GraphValidationError("changes must not be empty", {"field": "changes"})

        root = Path(context.root_path) if context is not None and context.root_path else None
        effective: "OrderedDict[str, FileChange]" = OrderedDict()
        for i, change in enumerate(changes):
            if not isinstance(change, FileChange):
                raise GraphValidationError(f"changes[{i}] is not a FileChange", {"index": i})
            if change.change_type not in ChangeType.ALL:
                raise GraphValidationError(
                    f"changes[{i}] has unknown change type '{change.change_type}'",
                    {"index": i, "change_type": change.change_type},
                )
            if not isinstance(change.file_path, str) or not change.file_path.strip():
                raise GraphValidationError(f"changes[{i}] has an empty file_path", {"index": i})
            if change.change_type != ChangeType.DELETED and not isinstance(
                change.new_content, str
            ):
                raise GraphValidationError(
                    f"changes[{i}] ({change.change_type}) requires new_content", {"index": i}
                )
            if change.change_type == ChangeType.RENAMED and not change.old_path:
                raise GraphValidationError(
                    f"changes[{i}] (renamed) requires old_path", {"index": i}
                )

            rel_path = self._normalise_path(change.file_path, root)
            if change.change_type == ChangeType.RENAMED:
                assert change.old_path is not None
                old_rel = self._normalise_path(change.old_path, root)
                effective.pop(old_rel, None)
                effective[old_rel] = FileChange(old_rel, ChangeType.DELETED)
                effective.pop(rel_path, None)
                effective[rel_path] = FileChange(
                    rel_path, ChangeType.ADDED, new_content=change.new_content
                )
                continue

            effective.pop(rel_path, None)
            effective[rel_path] = FileChange(
                rel_path,
                change.change_type,
                old_content=change.old_content,
                new_content=change.new_content,
            )
        return effective

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _extract(
        self, change: FileChange, languages: Optional[Sequence[str]]
    ) -> FileExtraction:
        language = language_for_path(change.file_path)
        if language is None:
            raise ExtractionError(change.file_path, "unsupported file extension")
        if languages and language not in languages:
            raise ExtractionError(change.file_path, f"language '{language}' is not enabled")
        assert change.new_content is not None
        if len(change.new_content.encode("utf-8")) > self.config.max_file_size_bytes:
            raise ExtractionError(
                change.file_path, f"content exceeds limit ({self.config.max_file_size_bytes})"
            )
        return extract_source(self.registry, change.file_path, language, change.new_content)

    def update(
        self,
        project_id: str,
        changes: Sequence[FileChange],
        context: Optional[BuildContext] = None,
    ) -> GraphUpdateResult:
        """Apply changes and commit them as the project's next version.

        Args:
            project_id: Project to update.
            changes: Ordered file changes.
            context: Optional build context; its root_path normalises absolute
                change paths and its languages restrict extraction.

        Raises:
            GraphValidationError: If the request is malformed. Nothing is written.
        """
        start_time = time.time()
        effective = self._validate(project_id, changes, context)
        languages = (context.languages if context is not None else None) or self.config.languages
        errors: List[str] = []

        with self.allocator.project_lock(project_id):
            base = self.store.get_current_version(project_id)
            base_nodes: List[GraphNode] = []
            base_edges: List[GraphEdge] = []
            base_refs: Dict[str, List[ExtractedReference]] = {}
            if base is not None:
                base_nodes = self.store.query_nodes(NodeQuery(project_id, version_id=base.id)).data
                base_edges = self.store.query_edges(EdgeQuery(project_id, version_id=base.id)).data
                base_refs = self.store.get_references(base.id)

            base_by_key = {n.node_key: n for n in base_nodes}
            base_by_id = {n.id: n for n in base_nodes}
            base_by_file: Dict[str, List[GraphNode]] = {}
            for node in base_nodes:
                base_by_file.setdefault(node.file_path, []).append(node)

            # Extract changed files
            extractions: Dict[str, FileExtraction] = {}
            for rel_path, change in effective.items():
                if change.change_type not in _CONTENT_CHANGES:
                    continue
                try:
                    extractions[rel_path] = self._extract(change, languages)
                except ExtractionError as e:
                    message = f"{rel_path}: {e.reason}"
                    logger.warning(f"Keeping previous state of {message}")
                    errors.append(message)

            # Files whose base content is replaced (re-extracted) or dropped
            replaced: Set[str] = set(extractions)
            dropped: Set[str] = {
                p for p, c in effective.items() if c.change_type == ChangeType.DELETED
            }

            new_nodes, operations, local_nodes = self._merge_nodes(
                project_id, effective, extractions, base_by_key, base_by_file, dropped
            )

            # Unchanged files keep their references and resolve them again
            carried_refs = {
                path: refs
                for path, refs in base_refs.items()
                if path not in replaced and path not in dropped
            }
            references: Dict[str, List[ExtractedReference]] = dict(carried_refs)
            for file_path in extractions:
                references[file_path] = keyed_references(
                    extractions[file_path], local_nodes[file_path]
                )

            index = NodeIndex(new_nodes)
            new_edges = self._merge_edges(
                index,
                extractions,
                local_nodes,
                carried_refs,
                base_edges,
                base_by_id,
                replaced | dropped,
            )

            changed_keys = {
                op.node_key
                for op in operations
                if op.operation_type in (OperationType.ADD_NODE, OperationType.UPDATE_NODE)
            }
            apply_purposes(
                self.annotator, [n for n in index.by_key.values() if n.node_key in changed_keys]
            )

            base_edge_map = self._edge_keys(base_edges, base_by_id)
            new_edge_map = {e.key: e for e in new_edges}
            for key in sorted(new_edge_map.keys() - base_edge_map.keys()):
                edge = new_edge_map[key]
                operations.append(
                    UpdateOperation(
                        OperationType.ADD_EDGE,
                        edge.source.node_key,
                        edge.source.file_path,
                        self._reason(effective, edge.source.file_path),
                        detail=key,
                    )
                )
            for key in sorted(base_edge_map.keys() - new_edge_map.keys()):
                source_key, source_file = base_edge_map[key]
                operations.append(
                    UpdateOperation(
                        OperationType.DELETE_EDGE,
                        source_key,
                        source_file,
                        self._reason(effective, source_file),
                        detail=key,
                    )
                )
            edges_affected = len(new_edge_map.keys() ^ base_edge_map.keys())
            nodes_affected = sum(
                1
                for op in operations
                if op.operation_type
                in (OperationType.ADD_NODE, OperationType.UPDATE_NODE, OperationType.DELETE_NODE)
            )

            metadata = {"kind": "update", "changes": [c.to_dict() for c in effective.values()]}
            try:
                version = self.allocator.allocate(
                    project_id,
                    parent_version_id=base.id if base is not None else None,
                    metadata=metadata,
                )
            except BackendError as e:
                errors.append(f"Cannot allocate version: {e.message}")
                return self._failure(project_id, None, errors, start_time)

            try:
                _, _, checksum = write_version(
                    self.store, version, new_nodes, new_edges, references
                )
                self.store.record_operations(version.id, operations)
                version = self.store.commit_version(version.id, checksum, len(operations))
            except BackendError as e:
                discard_quietly(self.store, version.id)
                errors.append(f"Backend failure: {e.message}")
                return self._failure(project_id, version.id, errors, start_time)

        elapsed_ms = (time.time() - start_time) * 1000
        result = GraphUpdateResult(
            success=True,
            version_id=version.id,
            version_number=version.version_number,
            operations_applied=len(operations),
            nodes_affected=nodes_affected,
            edges_affected=edges_affected,
            execution_time_ms=elapsed_ms,
            errors=errors,
        )
        logger.info(
            f"Updated {project_id} to version {version.version_number}: "
            f"{len(effective)} changes, {nodes_affected} nodes and {edges_affected} edges "
            f"affected, {len(errors)} errors in {elapsed_ms:.1f}ms",
            extra=summary_fields(project_id, result, kind="update", changes=len(effective)),
        )
        return result

    # ------------------------------------------------------------------
    # Node and edge merging
    # ------------------------------------------------------------------

    @staticmethod
    def _reason(effective: Dict[str, FileChange], file_path: str) -> str:
        change = effective.get(file_path)
        return change.change_type if change is not None else "dependency"

    def _merge_nodes(
        self,
        project_id: str,
        effective: Dict[str, FileChange],
        extractions: Dict[str, FileExtraction],
        base_by_key: Dict[str, GraphNode],
        base_by_file: Dict[str, List[GraphNode]],
        dropped: Set[str],
    ) -> Tuple[List[GraphNode], List[UpdateOperation], Dict[str, Dict[str, GraphNode]]]:
        """Node set of the new version plus node operations.

        Returns:
            (nodes, node operations, per-file local key -> node for re-extracted files)
        """
        nodes: List[GraphNode] = []
        operations: List[UpdateOperation] = []
        local_nodes: Dict[str, Dict[str, GraphNode]] = {}

        # Unchanged files and files whose extraction failed
        for file_path, file_nodes in base_by_file.items():
            if file_path in extractions or file_path in dropped:
                continue
            nodes.extend(file_nodes)

        for file_path in sorted(dropped):
            for node in base_by_file.get(file_path, []):
                operations.append(
                    UpdateOperation(
                        OperationType.DELETE_NODE, node.node_key, file_path, ChangeType.DELETED
                    )
                )

        for file_path in sorted(extractions):
            reason = effective[file_path].change_type
            staged, by_local = stage_nodes(extractions[file_path], project_id, file_path)
            chosen: Dict[str, GraphNode] = {}
            for node in staged:
                previous = base_by_key.get(node.node_key)
                if previous is not None:
                    if previous.content_hash == node.content_hash:
                        # Unchanged entity: keep the base row (and its purpose)
                        chosen[node.node_key] = previous
                        continue
                    op_type = OperationType.UPDATE_NODE
                else:
                    op_type = OperationType.ADD_NODE
                chosen[node.node_key] = node
                operations.append(UpdateOperation(op_type, node.node_key, file_path, reason))

            for node in base_by_file.get(file_path, []):
                if node.node_key not in chosen:
                    operations.append(
                        UpdateOperation(
                            OperationType.DELETE_NODE, node.node_key, file_path, reason
                        )
                    )

            nodes.extend(chosen[k] for k in sorted(chosen))
            local_nodes[file_path] = {
                local: chosen[node.node_key] for local, node in by_local.items()
            }

        return nodes, operations, local_nodes

    def _merge_edges(
        self,
        index: NodeIndex,
        extractions: Dict[str, FileExtraction],
        local_nodes: Dict[str, Dict[str, GraphNode]],
        carried_refs: Dict[str, List[ExtractedReference]],
        base_edges: Iterable[GraphEdge],
        base_by_id: Dict[str, GraphNode],
        recomputed_files: Set[str],
    ) -> List[ResolvedEdge]:
        """Edge set of the new version.

        Outgoing edges of re-extracted files are resolved from the new
        extraction. Unchanged files resolve their kept references against the
        new index, so names that disappear or come back are picked up exactly
        as a full build would; their CONTAINS edges are carried. Base edges of
        files without kept references are re-anchored on the new nodes by
        node_key, falling back to the unique node with the same file, name
        and type.
        """
        edges: Dict[str, ResolvedEdge] = {}

        for file_path in sorted(extractions):
            for edge in resolve_file_edges(
                index, file_path, extractions[file_path], local_nodes[file_path]
            ):
                edges.setdefault(edge.key, edge)

        for file_path in sorted(carried_refs):
            file_nodes = {n.node_key: n for n in index.nodes_in_file(file_path)}
            for edge in index.resolve_file_references(
                file_path, carried_refs[file_path], file_nodes
            ):
                edges.setdefault(edge.key, edge)

        remapped = 0
        for base_edge in base_edges:
            source = base_by_id.get(base_edge.source_node_id)
            target = base_by_id.get(base_edge.target_node_id)
            if source is None or target is None or source.file_path in recomputed_files:
                continue
            if source.file_path in carried_refs and base_edge.edge_type != EdgeType.CONTAINS:
                continue
            new_source = index.get(source.node_key)
            new_target = index.get(target.node_key) or self._relocate(index, target)
            if new_source is None or new_target is None:
                continue
            if new_target.node_key != target.node_key:
                remapped += 1
            resolved = ResolvedEdge(
                new_source,
                new_target,
                base_edge.edge_type,
                base_edge.weight,
                base_edge.call_type,
            )
            edges.setdefault(resolved.key, resolved)

        if remapped:
            logger.debug(f"Re-anchored {remapped} carried edges on moved targets")
        return [edges[k] for k in sorted(edges)]

    @staticmethod
    def _relocate(index: NodeIndex, target: GraphNode) -> Optional[GraphNode]:
        matches = [
            n
            for n in index.nodes_in_file(target.file_path)
            if n.name == target.name and n.node_type == target.node_type
        ]
        return matches[0] if len(matches) == 1 else None

    @staticmethod
    def _edge_keys(
        edges: Iterable[GraphEdge], nodes_by_id: Dict[str, GraphNode]
    ) -> Dict[str, Tuple[str, str]]:
        """Edge key -> (source node_key, source file) for stored edges."""
        keys: Dict[str, Tuple[str, str]] = {}
        for edge in edges:
            source = nodes_by_id.get(edge.source_node_id)
            target = nodes_by_id.get(edge.target_node_id)
            if source is None or target is None:
                continue
            keys[edge_key(source.node_key, target.node_key, edge.edge_type)] = (
                source.node_key,
                source.file_path,
            )
        return keys

    @staticmethod
    def _failure(
        project_id: str, version_id: Optional[str], errors: List[str], start_time: float
    ) -> GraphUpdateResult:
        result = GraphUpdateResult(
            success=False,
            version_id=version_id,
            execution_time_ms=(time.time() - start_time) * 1000,
            errors=errors,
        )
        logger.error(
            f"Update of {project_id} failed: {errors[-1]}",
            extra=summary_fields(project_id, result, kind="update"),
        )
        return result
