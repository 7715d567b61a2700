"""Custom exception hierarchy for graphmem.

All application-specific exceptions inherit from GraphMemError,
which carries a stable error code for logs and trace output.
"""

from __future__ import annotations


class GraphMemError(Exception):
    """Base exception for all graphmem errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class StoreError(GraphMemError):
    """Errors in the graph store layer."""

    def __init__(self, message: str, *, code: str = "STORE_ERROR") -> None:
        super().__init__(message, code=code)


class NodeNotFoundError(StoreError):
    """Referenced node id does not exist. Recoverable."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node not found: {node_id}", code="NOT_FOUND")
        self.node_id = node_id


class AlreadySupersededError(StoreError):
    """Target node already has a successor. Recoverable."""

    def __init__(self, node_id: str, superseded_by: str | None = None) -> None:
        super().__init__(
            f"Node {node_id} already superseded by {superseded_by}",
            code="ALREADY_SUPERSEDED",
        )
        self.node_id = node_id
        self.superseded_by = superseded_by


class SupersessionCycleError(StoreError):
    """Setting the successor would create a cycle in the supersession chain."""

    def __init__(self, old_id: str, new_id: str) -> None:
        super().__init__(
            f"Superseding {old_id} with {new_id} would create a cycle",
            code="SUPERSESSION_CYCLE",
        )


class StoreUnavailableError(StoreError):
    """Disk or IO failure. Fatal to the calling stage; always propagated."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_UNAVAILABLE")


class LLMError(GraphMemError):
    """Errors from completion API calls (timeouts, rate limits, failures)."""

    def __init__(self, message: str, *, code: str = "LLM_ERROR") -> None:
        super().__init__(message, code=code)


class EmbeddingError(GraphMemError):
    """Errors from the embedding endpoint."""

    def __init__(self, message: str, *, code: str = "EMBEDDING_ERROR") -> None:
        super().__init__(message, code=code)


class ToolError(GraphMemError):
    """Errors during tool execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)
