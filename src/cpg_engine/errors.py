# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Exception hierarchy for the Code Property Graph engine.

Every error carries a machine-readable ``code`` and a ``details`` dict so
callers can tell "not found" apart from "invalid request" without parsing
messages. Queries never raise for zero matches; only missing projects,
versions and nodes raise NotFoundError subclasses.
"""

from typing import Any, Dict, Optional


class GraphError(Exception):
    """Base class for all graph engine errors."""

    code = "GRAPH_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class NotFoundError(GraphError):
    """A project, version or node does not exist in the requested scope."""

    code = "NOT_FOUND"


class ProjectNotFoundError(NotFoundError):
    """The project has no committed version."""

    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}", {"project_id": project_id})
        self.project_id = project_id


class VersionNotFoundError(NotFoundError):
    """The version id is unknown, belongs to another project, or is uncommitted."""

    code = "VERSION_NOT_FOUND"

    def __init__(self, version_id: str, project_id: Optional[str] = None):
        details: Dict[str, Any] = {"version_id": version_id}
        if project_id is not None:
            details["project_id"] = project_id
        super().__init__(f"Version not found: {version_id}", details)
        self.version_id = version_id


class NodeNotFoundError(NotFoundError):
    """The node id is not a member of the scoped version."""

    code = "NODE_NOT_FOUND"

    def __init__(self, node_id: str, version_id: Optional[str] = None):
        details: Dict[str, Any] = {"node_id": node_id}
        if version_id is not None:
            details["version_id"] = version_id
        super().__init__(f"Node not found: {node_id}", details)
        self.node_id = node_id


class ExtractionError(GraphError):
    """A single file could not be parsed. Recorded, never fatal."""

    code = "EXTRACTION_FAILED"

    def __init__(self, file_path: str, reason: str):
        super().__init__(f"Failed to extract {file_path}: {reason}", {"file_path": file_path})
        self.file_path = file_path
        self.reason = reason


class GraphValidationError(GraphError):
    """Malformed request. Raised before anything is written."""

    code = "VALIDATION_FAILED"


class VersionConflictError(GraphError):
    """Another writer already holds the requested version number."""

    code = "VERSION_CONFLICT"

    def __init__(self, project_id: str, version_number: int):
        super().__init__(
            f"Version {version_number} already exists for project {project_id}",
            {"project_id": project_id, "version_number": version_number},
        )
        self.project_id = project_id
        self.version_number = version_number


class BackendError(GraphError):
    """The persistence backend rejected or failed an operation."""

    code = "BACKEND_ERROR"
