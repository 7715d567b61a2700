from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from graphmem.graph.types import Node, NodeRef, ScoredRef
    from graphmem.tools.context import ToolContext


@dataclass
class ToolOutcome:
    """Result of one tool call.

    ``text`` is what the model sees. ``refs`` and ``stored`` are the structured
    record of what the call surfaced or wrote; downstream stages read these and
    never parse ``text``.
    """

    text: str
    refs: list[ScoredRef] = field(default_factory=list)
    stored: list[NodeRef] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failure(cls, message: str) -> ToolOutcome:
        return cls(text=f"Error: {message}", error=message)


def format_node(node: Node, score: float | None = None) -> str:
    """Render a node for the model, with id and score inline."""
    kind = f"{node.type}/{node.subtype}" if node.subtype else node.type
    line = f"[{kind}] {node.content} (id: {node.id}, salience: {node.salience:g})"
    if node.valid_from:
        line += f" [date: {node.valid_from}]"
    if score is not None:
        line += f" [score: {score:.3f}]"
    return line


class BaseTool(ABC):
    """Abstract base class for memory tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Description shown to the model."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        ...

    @property
    def terminal(self) -> bool:
        """True for the tool that ends a loop (done)."""
        return False

    @abstractmethod
    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> ToolOutcome:
        """Execute the tool with given arguments and optional runtime context."""
        ...
