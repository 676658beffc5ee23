# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Full-project graph builder.

Pipeline for one build:
1. Enumerate files under the root by include/exclude patterns (sorted)
2. Extract every file in a thread pool; wait for all of them (barrier)
3. Phase 1: turn every entity into a node keyed by node_key
4. Phase 2: resolve references against the complete NodeIndex, add
   CONTAINS edges from parent links
5. Optionally attach purposes, then persist nodes, edges and each file's
   references in bulk under a new version and commit it while holding the
   project lock

Per-file failures are collected into the result's ``errors`` list and never
abort the build. The helpers at module level are shared with the
incremental updater so both writers produce identical nodes and edges.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config import Config
from .errors import BackendError, ExtractionError, GraphValidationError
from .extraction.base import PurposeAnnotator
from .extraction.registry import ExtractorRegistry, default_registry
from .file_discovery import DiscoveredFile, discover_files, validate_patterns
from .hashing import content_hash, make_node_key, version_checksum
from .logging_setup import summary_fields
from .models import (
    BuildContext,
    CodeLocation,
    EdgeType,
    ExtractedReference,
    FileExtraction,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    GraphVersion,
)
from .node_index import NodeIndex, ResolvedEdge
from .storage import GraphStore
from .versioning import VersionAllocator

logger = logging.getLogger(__name__)


# =============================================================================
# Shared helpers (builder and incremental updater)
# =============================================================================


def read_source(path: Path, max_size_bytes: int) -> str:
    """Read a source file as UTF-8, falling back to latin-1.

    Raises:
        ExtractionError: If the file is too large or cannot be read.
    """
    try:
        size = path.stat().st_size
        if size > max_size_bytes:
            raise ExtractionError(
                str(path), f"{size} bytes exceeds limit ({max_size_bytes})"
            )
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            logger.warning(f"File {path} is not UTF-8, using latin-1 fallback encoding")
            return path.read_text(encoding="latin-1")
    except OSError as e:
        raise ExtractionError(str(path), f"cannot read file: {e}") from e


def extract_source(
    registry: ExtractorRegistry, rel_path: str, language: str, content: str
) -> FileExtraction:
    """Run the extractor registered for a language on one file.

    Raises:
        ExtractionError: If no extractor is registered, the adapter fails,
            or it reports the file as invalid.
    """
    extractor = registry.get(language)
    if extractor is None:
        raise ExtractionError(rel_path, f"no extractor registered for language '{language}'")
    try:
        extraction = extractor.extract(rel_path, content)
    except ExtractionError:
        raise
    except Exception as e:
        # Adapters are pluggable; any failure stays scoped to this file
        raise ExtractionError(rel_path, f"{extractor.name()} failed: {e}") from e
    if not extraction.is_valid:
        reason = extraction.error_message or "extractor reported invalid file"
        raise ExtractionError(rel_path, reason)
    return extraction


def stage_nodes(
    extraction: FileExtraction, project_id: str, rel_path: str
) -> Tuple[List[GraphNode], Dict[str, GraphNode]]:
    """Phase 1 for one file: turn extracted entities into unsaved nodes.

    Returns:
        (nodes sorted by node_key, nodes keyed by extractor local key)
    """
    by_local: Dict[str, GraphNode] = {}
    by_key: Dict[str, GraphNode] = {}
    for entity in extraction.entities:
        node_key = entity.node_key or make_node_key(rel_path, entity.start_line, entity.name)
        if node_key in by_key:
            logger.warning(f"Duplicate node key {node_key} in {rel_path}, keeping the first")
            by_local.setdefault(entity.local_key, by_key[node_key])
            continue
        node = GraphNode(
            node_key=node_key,
            node_type=entity.node_type,
            name=entity.name,
            location=CodeLocation(
                file_path=rel_path,
                start_line=entity.start_line,
                end_line=entity.end_line,
                start_column=entity.start_column,
                end_column=entity.end_column,
            ),
            language=extraction.language,
            content_hash=content_hash(entity.source_text),
            project_id=project_id,
            signature=entity.signature,
            complexity=entity.complexity,
            parameters=list(entity.parameters) if entity.parameters is not None else None,
            return_type=entity.return_type,
            docstring=entity.docstring,
        )
        by_key[node_key] = node
        by_local[entity.local_key] = node
    return [by_key[k] for k in sorted(by_key)], by_local


def contains_edges(
    extraction: FileExtraction, local_nodes: Dict[str, GraphNode]
) -> List[ResolvedEdge]:
    """CONTAINS edges from the extractor's parent links."""
    edges: Dict[Tuple[str, str], ResolvedEdge] = {}
    for entity in extraction.entities:
        if not entity.parent_local_key:
            continue
        parent = local_nodes.get(entity.parent_local_key)
        child = local_nodes.get(entity.local_key)
        if parent is None or child is None or parent is child:
            continue
        edges.setdefault(
            (parent.node_key, child.node_key), ResolvedEdge(parent, child, EdgeType.CONTAINS)
        )
    return [edges[k] for k in sorted(edges)]


def resolve_file_edges(
    index: NodeIndex,
    rel_path: str,
    extraction: FileExtraction,
    local_nodes: Dict[str, GraphNode],
) -> List[ResolvedEdge]:
    """Phase 2 for one file: resolved references plus containment."""
    return index.resolve_file_references(
        rel_path, extraction.references, local_nodes
    ) + contains_edges(extraction, local_nodes)


def keyed_references(
    extraction: FileExtraction, local_nodes: Dict[str, GraphNode]
) -> List[ExtractedReference]:
    """A file's references with sources re-keyed from local keys to node_keys."""
    keyed: List[ExtractedReference] = []
    for ref in extraction.references:
        source = local_nodes.get(ref.source_local_key)
        if source is not None:
            keyed.append(replace(ref, source_local_key=source.node_key))
    return keyed


def apply_purposes(annotator: Optional[PurposeAnnotator], nodes: Sequence[GraphNode]) -> None:
    """Attach annotator purposes in place; annotator failures are only logged."""
    if annotator is None or not nodes:
        return
    try:
        purposes = annotator.annotate(nodes)
    except Exception as e:
        logger.warning(f"Purpose annotator {type(annotator).__name__} failed: {e}")
        return
    for node in nodes:
        purpose = purposes.get(node.node_key)
        if purpose:
            node.purpose = purpose


def write_version(
    store: GraphStore,
    version: GraphVersion,
    nodes: Sequence[GraphNode],
    edges: Sequence[ResolvedEdge],
    references: Optional[Mapping[str, Sequence[ExtractedReference]]] = None,
) -> Tuple[List[GraphNode], List[GraphEdge], str]:
    """Persist nodes, edges and per-file references under a pending version.

    Nodes are inserted in node_key order and edges in key order, so two
    writes of the same content store rows in the same order.

    Returns:
        (stored nodes, stored edges, version checksum)

    Raises:
        BackendError: If the store rejects any row.
    """
    staged = [
        n.carry_forward(version.id) for n in sorted(nodes, key=lambda n: n.node_key)
    ]
    stored_nodes = store.add_nodes(staged)
    id_by_key = {n.node_key: n.id for n in stored_nodes}

    ordered = sorted(edges, key=lambda e: e.key)
    missing = [
        e.key
        for e in ordered
        if e.source.node_key not in id_by_key or e.target.node_key not in id_by_key
    ]
    if missing:
        raise BackendError(
            f"{len(missing)} edges reference nodes outside version {version.id}",
            {"edges": missing[:10]},
        )
    stored_edges = store.add_edges(
        [
            GraphEdge(
                source_node_id=id_by_key[e.source.node_key],
                target_node_id=id_by_key[e.target.node_key],
                edge_type=e.edge_type,
                weight=e.weight,
                call_type=e.call_type,
                version_id=version.id,
            )
            for e in ordered
        ]
    )
    if references:
        store.record_references(version.id, references)
    checksum = version_checksum(
        [(n.node_key, n.content_hash) for n in stored_nodes], [e.key for e in ordered]
    )
    return stored_nodes, stored_edges, checksum


def discard_quietly(store: GraphStore, version_id: str) -> None:
    """Drop a pending version after a failed write, logging secondary failures."""
    try:
        store.discard_version(version_id)
    except BackendError as e:
        logger.error(f"Failed to discard pending version {version_id}: {e}")


# =============================================================================
# Builder
# =============================================================================


class GraphBuilder:
    """Builds a complete version of a project's graph from its source tree.

    Usage:
        builder = GraphBuilder(store, allocator=allocator)
        result = builder.build(BuildContext(project_id="p1", root_path="/src/p1"))
    """

    def __init__(
        self,
        store: GraphStore,
        registry: Optional[ExtractorRegistry] = None,
        allocator: Optional[VersionAllocator] = None,
        config: Optional[Config] = None,
        annotator: Optional[PurposeAnnotator] = None,
    ):
        """Initialize graph builder.

        Args:
            store: Persistence backend receiving the version.
            registry: Extraction adapters by language (default: bundled Python).
            allocator: Version allocator shared with other writers of the store.
            config: Engine configuration (default: built-in defaults).
            annotator: Optional purpose annotator run before persistence.
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

    def _validate(self, context: BuildContext) -> Tuple[List[str], List[str], List[str]]:
        if not isinstance(context.project_id, str) or not context.project_id.strip():
            raise GraphValidationError("project_id is required", {"field": "project_id"})
        if not isinstance(context.root_path, (str, Path)) or not str(context.root_path).strip():
            raise GraphValidationError("root_path is required", {"field": "root_path"})

        include = validate_patterns(
            context.include_patterns
            if context.include_patterns is not None
            else self.config.include_patterns,
            "include_patterns",
        )
        exclude = validate_patterns(
            context.exclude_patterns
            if context.exclude_patterns is not None
            else self.config.exclude_patterns,
            "exclude_patterns",
        )
        languages = list(context.languages or self.config.languages or self.registry.languages())
        for language in languages:
            if not isinstance(language, str) or not language.strip():
                raise GraphValidationError(
                    "languages contains an empty entry", {"field": "languages"}
                )

        if context.version_id is not None:
            version = self.store.get_version(context.version_id)
            if version is None or version.project_id != context.project_id:
                raise GraphValidationError(
                    f"Version {context.version_id} does not belong to project {context.project_id}",
                    {"field": "version_id", "version_id": context.version_id},
                )
            if version.committed:
                raise GraphValidationError(
                    f"Version {context.version_id} is already committed",
                    {"field": "version_id", "version_id": context.version_id},
                )
        return include, exclude, languages

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _extract_file(self, file: DiscoveredFile) -> Tuple[Optional[FileExtraction], Optional[str]]:
        try:
            content = read_source(file.path, self.config.max_file_size_bytes)
            return extract_source(self.registry, file.rel_path, file.language, content), None
        except ExtractionError as e:
            return None, f"{file.rel_path}: {e.reason}"

    def _extract_all(
        self, files: Sequence[DiscoveredFile], errors: List[str]
    ) -> Dict[str, FileExtraction]:
        """Extract files in parallel and return once every file is done."""
        extractions: Dict[str, FileExtraction] = {}
        if not files:
            return extractions
        workers = max(1, min(self.config.max_workers, len(files)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cpg-extract") as pool:
            results = list(pool.map(self._extract_file, files))
        # Leaving the pool is the barrier between extraction and resolution
        for file, (extraction, error) in zip(files, results):
            if error is not None:
                logger.warning(f"Skipping {error}")
                errors.append(error)
            elif extraction is not None:
                extractions[file.rel_path] = extraction
        return extractions

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(self, context: BuildContext) -> GraphUpdateResult:
        """Build and commit a full version of the project's graph.

        Raises:
            GraphValidationError: If the request is malformed. Nothing is written.
        """
        start_time = time.time()
        include, exclude, languages = self._validate(context)
        project_id = context.project_id
        errors: List[str] = []

        def failed(message: str, discard: bool = True) -> GraphUpdateResult:
            errors.append(message)
            if discard and context.version_id is not None:
                discard_quietly(self.store, context.version_id)
            result = GraphUpdateResult(
                success=False,
                version_id=context.version_id,
                operations_applied=0,
                execution_time_ms=(time.time() - start_time) * 1000,
                errors=errors,
            )
            logger.error(
                f"Build of {project_id} failed: {message}",
                extra=summary_fields(project_id, result, kind="build"),
            )
            return result

        root = Path(context.root_path)
        try:
            files = discover_files(root, include, exclude, languages)
        except OSError as e:
            return failed(f"Cannot read root path {root}: {e}")

        extractions = self._extract_all(files, errors)

        # Phase 1: every node of the version
        all_nodes: List[GraphNode] = []
        local_nodes: Dict[str, Dict[str, GraphNode]] = {}
        for rel_path in sorted(extractions):
            nodes, by_local = stage_nodes(extractions[rel_path], project_id, rel_path)
            all_nodes.extend(nodes)
            local_nodes[rel_path] = by_local

        if not all_nodes:
            return failed(f"No nodes produced from {len(files)} files under {root}")

        # Phase 2: edges against the complete index
        index = NodeIndex(all_nodes)
        resolved: List[ResolvedEdge] = []
        for rel_path in sorted(extractions):
            resolved.extend(
                resolve_file_edges(index, rel_path, extractions[rel_path], local_nodes[rel_path])
            )

        references = {
            rel_path: keyed_references(extractions[rel_path], local_nodes[rel_path])
            for rel_path in extractions
        }
        apply_purposes(self.annotator, sorted(all_nodes, key=lambda n: n.node_key))

        with self.allocator.project_lock(project_id):
            if context.version_id is not None:
                version = self.store.get_version(context.version_id)
                if version is None or version.committed:
                    return failed(
                        f"Version {context.version_id} is no longer pending", discard=False
                    )
            else:
                try:
                    version = self.allocator.allocate(project_id, metadata={"kind": "build"})
                except BackendError as e:
                    return failed(f"Cannot allocate version: {e.message}")

            try:
                stored_nodes, stored_edges, checksum = write_version(
                    self.store, version, all_nodes, resolved, references
                )
                version = self.store.commit_version(version.id, checksum, len(extractions))
            except BackendError as e:
                discard_quietly(self.store, version.id)
                errors.append(f"Backend failure: {e.message}")
                result = GraphUpdateResult(
                    success=False,
                    version_id=version.id,
                    operations_applied=len(extractions),
                    execution_time_ms=(time.time() - start_time) * 1000,
                    errors=errors,
                )
                logger.error(
                    f"Build of {project_id} failed while writing: {e.message}",
                    extra=summary_fields(project_id, result, kind="build"),
                )
                return result

        elapsed_ms = (time.time() - start_time) * 1000
        result = GraphUpdateResult(
            success=True,
            version_id=version.id,
            version_number=version.version_number,
            operations_applied=len(extractions),
            nodes_affected=len(stored_nodes),
            edges_affected=len(stored_edges),
            execution_time_ms=elapsed_ms,
            errors=errors,
        )
        logger.info(
            f"Built version {version.version_number} of {project_id}: "
            f"{len(extractions)}/{len(files)} files, {len(stored_nodes)} nodes, "
            f"{len(stored_edges)} edges, {len(errors)} errors in {elapsed_ms:.1f}ms",
            extra=summary_fields(project_id, result, kind="build", files=len(files)),
        )
        return result
