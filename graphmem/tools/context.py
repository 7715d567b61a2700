from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into tool execution by the tool loop.

    session_id: current conversation session (for logging).
    source: provenance written onto stored nodes ("user" | "agent").
    """

    session_id: str = "main"
    source: str = "user"
