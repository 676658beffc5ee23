# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Per-version node index and reference resolution.

This is phase 2 of the two-phase edge construction:
Phase 1: every file's entities become nodes of the version
Phase 2: references are resolved against the complete index built here

Resolution is deterministic. For a referenced name the candidates are
narrowed in order to: the referencing file, files the referencing file
imports, then the whole version. Remaining ties break on the smallest
node_key. References that match nothing are dropped.
"""

import logging
import posixpath
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .file_discovery import EXTENSION_LANGUAGES
from .hashing import edge_key
from .models import EdgeType, ExtractedReference, GraphNode, NodeType

logger = logging.getLogger(__name__)

# Node types a reference of each edge type may point at
_TARGET_TYPES = {
    EdgeType.CALLS: (NodeType.FUNCTION, NodeType.CLASS),
    EdgeType.USES: (NodeType.CLASS, NodeType.FUNCTION, NodeType.VARIABLE),
    EdgeType.IMPORTS: NodeType.ALL,
}

_STRIPPED_SUFFIXES = (".__init__", ".index")


def module_name_for_path(file_path: str) -> str:
    """Dotted module name of a root-relative file path.

    "pkg/sub/mod.py" -> "pkg.sub.mod", "pkg/__init__.py" -> "pkg",
    "src/utils/index.ts" -> "src.utils".
    """
    stem, _ = posixpath.splitext(file_path)
    dotted = stem.replace("/", ".")
    for suffix in _STRIPPED_SUFFIXES:
        if dotted.endswith(suffix):
            return dotted[: -len(suffix)]
    return dotted


@dataclass
class ResolvedEdge:
    """An edge whose endpoints are known by node_key but not yet stored."""

    source: GraphNode
    target: GraphNode
    edge_type: str
    weight: float = 1.0
    call_type: Optional[str] = None

    @property
    def key(self) -> str:
        return edge_key(self.source.node_key, self.target.node_key, self.edge_type)


class NodeIndex:
    """Lookup tables over all nodes of one version.

    Nodes are indexed by node_key, by name, by file and by module name.
    Building the index is the synchronisation point between node creation
    and edge resolution, so it is only constructed once every file of the
    version has produced its nodes.
    """

    def __init__(self, nodes: Iterable[GraphNode]):
        self.by_key: Dict[str, GraphNode] = {}
        self.by_name: Dict[str, List[GraphNode]] = {}
        self.by_file: Dict[str, List[GraphNode]] = {}
        self._modules: Dict[str, str] = {}

        for node in sorted(nodes, key=lambda n: n.node_key):
            self.by_key[node.node_key] = node
            self.by_file.setdefault(node.file_path, []).append(node)
            if node.name:
                self.by_name.setdefault(node.name, []).append(node)

        for file_path in self.by_file:
            self._modules.setdefault(module_name_for_path(file_path), file_path)

    def __len__(self) -> int:
        return len(self.by_key)

    def __contains__(self, node_key: str) -> bool:
        return node_key in self.by_key

    def get(self, node_key: str) -> Optional[GraphNode]:
        return self.by_key.get(node_key)

    def nodes_in_file(self, file_path: str) -> List[GraphNode]:
        return list(self.by_file.get(file_path, []))

    def module_node(self, file_path: str) -> Optional[GraphNode]:
        for node in self.by_file.get(file_path, []):
            if node.node_type == NodeType.MODULE:
                return node
        return None

    # ------------------------------------------------------------------
    # Module resolution
    # ------------------------------------------------------------------

    def resolve_module(self, module: str, source_file: str) -> Optional[str]:
        """Map an import specifier to a file of this version.

        Handles dotted names ("pkg.mod"), Python relative imports ("..mod")
        and path specifiers ("./mod", "../lib/mod"). Dotted names that do
        not match exactly fall back to the shortest file whose module name
        ends with the specifier, ties broken by path.
        """
        if not module:
            return None

        if module.startswith("./") or module.startswith("../") or module.startswith("/"):
            joined = posixpath.normpath(
                posixpath.join(posixpath.dirname(source_file), module.lstrip("/"))
            )
            if posixpath.splitext(joined)[1] in EXTENSION_LANGUAGES:
                return self._modules.get(module_name_for_path(joined))
            return self._modules.get(module_name_for_path(joined + ".x"))

        if module.startswith("."):
            level = len(module) - len(module.lstrip("."))
            remainder = module[level:]
            package = module_name_for_path(source_file).split(".")
            # A package's __init__ is the package itself, not a member of it
            if not posixpath.basename(source_file).startswith("__init__."):
                package = package[:-1]
            if level > 1:
                package = package[: -(level - 1)] if level - 1 <= len(package) else []
            dotted = ".".join(p for p in package + ([remainder] if remainder else []) if p)
            return self._modules.get(dotted)

        if module in self._modules:
            return self._modules[module]
        suffix_matches = sorted(
            (len(name), path)
            for name, path in self._modules.items()
            if name.endswith("." + module)
        )
        return suffix_matches[0][1] if suffix_matches else None

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def _pick(
        self,
        candidates: Sequence[GraphNode],
        source_file: str,
        imported_files: Set[str],
        preferred_file: Optional[str],
    ) -> Optional[GraphNode]:
        if not candidates:
            return None
        if preferred_file is not None:
            narrowed = [c for c in candidates if c.file_path == preferred_file]
            if narrowed:
                return narrowed[0]
        same_file = [c for c in candidates if c.file_path == source_file]
        if same_file:
            return same_file[0]
        imported = [c for c in candidates if c.file_path in imported_files]
        if imported:
            return imported[0]
        # Candidates are kept sorted by node_key
        return candidates[0]

    def _import_target(self, ref: ExtractedReference, source_file: str) -> Optional[GraphNode]:
        target_file = self.resolve_module(ref.target_module or ref.target_name, source_file)
        if target_file == source_file:
            target_file = None
        from_import = bool(ref.target_name and ref.target_module)

        if target_file is not None and from_import:
            named = [
                n
                for n in self.by_name.get(ref.target_name, [])
                if n.file_path == target_file and n.node_type != NodeType.MODULE
            ]
            if named:
                return named[0]

        if from_import:
            # "from pkg import mod" where mod is a submodule
            assert ref.target_module is not None
            separator = "" if ref.target_module.endswith(".") else "."
            submodule = self.resolve_module(
                ref.target_module + separator + ref.target_name, source_file
            )
            if submodule is not None and submodule != source_file:
                return self.module_node(submodule)

        if target_file is None:
            return None
        return self.module_node(target_file)

    def resolve_file_references(
        self,
        source_file: str,
        references: Sequence[ExtractedReference],
        local_nodes: Dict[str, GraphNode],
    ) -> List[ResolvedEdge]:
        """Resolve one file's references into edges.

        Args:
            source_file: Root-relative path of the referencing file.
            references: References reported by the extractor for the file.
            local_nodes: The file's nodes keyed by extractor local key.

        Returns:
            Edges ordered by (source key, target key, type). Repeated
            references between the same endpoints collapse into one edge
            whose weight counts the occurrences.
        """
        imports = [r for r in references if r.edge_type == EdgeType.IMPORTS]
        others = [r for r in references if r.edge_type != EdgeType.IMPORTS]

        resolved: Dict[Tuple[str, str, str], ResolvedEdge] = {}
        imported_files: Set[str] = set()
        # Imported name (or alias) -> file it comes from
        imported_names: Dict[str, str] = {}

        def add(source: GraphNode, target: GraphNode, edge_type: str, call_type: Optional[str]):
            key = (source.node_key, target.node_key, edge_type)
            existing = resolved.get(key)
            if existing is None:
                resolved[key] = ResolvedEdge(source, target, edge_type, 1.0, call_type)
            else:
                existing.weight += 1.0

        dropped = 0
        for ref in imports:
            source = local_nodes.get(ref.source_local_key)
            target = self._import_target(ref, source_file) if source else None
            if source is None or target is None:
                dropped += 1
                continue
            imported_files.add(target.file_path)
            bound_name = ref.qualifier or ref.target_name
            if bound_name:
                imported_names[bound_name] = target.file_path
            add(source, target, EdgeType.IMPORTS, None)

        for ref in others:
            source = local_nodes.get(ref.source_local_key)
            if source is None:
                dropped += 1
                continue
            allowed = _TARGET_TYPES.get(ref.edge_type, ())
            candidates = [
                n for n in self.by_name.get(ref.target_name, []) if n.node_type in allowed
            ]
            preferred = imported_names.get(ref.target_name)
            if preferred is None and ref.qualifier:
                preferred = imported_names.get(ref.qualifier)
            target = self._pick(candidates, source_file, imported_files, preferred)
            if target is None:
                dropped += 1
                continue
            add(source, target, ref.edge_type, ref.call_type)

        if dropped:
            logger.debug(f"Dropped {dropped} unresolved references in {source_file}")
        return [resolved[k] for k in sorted(resolved)]
