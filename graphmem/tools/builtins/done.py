from __future__ import annotations

from typing import TYPE_CHECKING

from graphmem.tools.base import BaseTool, ToolOutcome

if TYPE_CHECKING:
    from graphmem.tools.context import ToolContext


class DoneTool(BaseTool):
    """Ends a tool loop. Never touches the graph."""

    def __init__(self, description: str) -> None:
        self._description = description

    @property
    def name(self) -> str:
        return "done"

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    @property
    def terminal(self) -> bool:
        return True

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        return ToolOutcome(text="")
