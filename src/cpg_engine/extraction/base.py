# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Interfaces for extraction adapters and purpose annotators.

An extraction adapter turns one file's text into candidate entities and
unresolved references (see FileExtraction). Adapters never see other files;
cross-file resolution happens afterwards against the version's NodeIndex.

A purpose annotator optionally attaches a human-readable purpose string to
nodes before they are persisted. It is advisory and never needed for
correctness.
"""

from abc import ABC, abstractmethod
from typing import Dict, Sequence

from cpg_engine.models import FileExtraction, GraphNode


class Extractor(ABC):
    """Abstract base class for per-language extraction adapters.

    Design:
    - Adapters are stateless; one instance serves many threads
    - Each adapter handles exactly one language identifier
    - Parse failures raise ExtractionError or return is_valid=False
    """

    @abstractmethod
    def language(self) -> str:
        """Return the language identifier handled (e.g., "python")."""
        pass

    @abstractmethod
    def extract(self, file_path: str, content: str) -> FileExtraction:
        """Extract entities and references from one file.

        Args:
            file_path: Root-relative POSIX path of the file.
            content: Full file text.

        Returns:
            FileExtraction with entities in source order.

        Raises:
            ExtractionError: If the file cannot be parsed.
        """
        pass

    def name(self) -> str:
        """Return extractor name for logging and debugging."""
        return type(self).__name__


class PurposeAnnotator(ABC):
    """Attaches purpose strings to nodes before they are persisted."""

    @abstractmethod
    def annotate(self, nodes: Sequence[GraphNode]) -> Dict[str, str]:
        """Describe what nodes do.

        Args:
            nodes: Nodes of the version being written, sorted by node_key.

        Returns:
            Mapping of node_key to purpose text. Nodes missing from the
            mapping keep whatever purpose they already carry.
        """
        pass


class DocstringAnnotator(PurposeAnnotator):
    """Uses the first line of each node's docstring as its purpose."""

    def annotate(self, nodes: Sequence[GraphNode]) -> Dict[str, str]:
        purposes: Dict[str, str] = {}
        for node in nodes:
            if node.docstring:
                purposes[node.node_key] = node.docstring
        return purposes
