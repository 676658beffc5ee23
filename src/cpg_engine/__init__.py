# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Versioned Code Property Graph engine."""

from .builder import GraphBuilder
from .change_watcher import ChangeWatcher
from .config import Config
from .errors import (
    BackendError,
    ExtractionError,
    GraphError,
    GraphValidationError,
    NodeNotFoundError,
    NotFoundError,
    ProjectNotFoundError,
    VersionConflictError,
    VersionNotFoundError,
)
from .logging_setup import setup_logging
from .models import (
    BuildContext,
    ChangeType,
    EdgeType,
    FileChange,
    GraphEdge,
    GraphNode,
    GraphUpdateResult,
    GraphVersion,
    NodeType,
)
from .query_engine import GraphQueryEngine
from .service import CodeGraphService
from .storage import GraphStore, InMemoryGraphStore
from .updater import IncrementalUpdater
from .versioning import VersionAllocator

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "BuildContext",
    "ChangeType",
    "ChangeWatcher",
    "CodeGraphService",
    "Config",
    "EdgeType",
    "ExtractionError",
    "FileChange",
    "GraphBuilder",
    "GraphEdge",
    "GraphError",
    "GraphNode",
    "GraphQueryEngine",
    "GraphStore",
    "GraphUpdateResult",
    "GraphValidationError",
    "GraphVersion",
    "IncrementalUpdater",
    "InMemoryGraphStore",
    "NodeNotFoundError",
    "NodeType",
    "NotFoundError",
    "ProjectNotFoundError",
    "VersionAllocator",
    "VersionConflictError",
    "VersionNotFoundError",
    "setup_logging",
]
