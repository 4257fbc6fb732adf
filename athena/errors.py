"""Typed errors raised by the graph store and query engine.

Each error carries a stable machine-readable ``code`` and the HTTP status
the service facade maps it to.
"""

from typing import Any, Dict, Optional


class GraphError(Exception):
    """Base exception for graph store failures."""

    code = "GRAPH_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the external error body."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GraphError):
    """Raised on malformed input: empty label, bad property value, bad pattern."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(GraphError):
    """Raised when a referenced node or edge does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class ConflictError(GraphError):
    """Raised on a stale version or a delete blocked by incident edges."""

    code = "CONFLICT"
    status_code = 409


class InternalError(GraphError):
    """Raised on an unexpected store fault."""

    code = "INTERNAL_ERROR"
    status_code = 500
