"""Memory-side shared contract types.

Stage results are ``Ok[T] | Degraded[T]``: a degraded result still carries a
usable fallback value plus the reason it degraded, so callers never need
try/except to get "empty" and the reason is never silently dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from graphmem.graph.types import NodeRef
    from graphmem.memory.schemas import SearchPlan
    from graphmem.memory.tool_loop import ToolTurn

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def degraded(self) -> bool:
        return False

    @property
    def reason(self) -> None:
        return None


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """Fallback value produced after an upstream failure."""

    value: T
    reason: str

    @property
    def degraded(self) -> bool:
        return True


StageResult = Ok[T] | Degraded[T]


@dataclass(frozen=True)
class Contradiction:
    """A new instruction that conflicts with an existing one without replacing it.

    Surfaced to the user as a clarifying question; never resolved automatically.
    """

    new_content: str
    old_content: str
    old_id: str
    question: str

    def to_dict(self) -> dict[str, str]:
        return {
            "new_content": self.new_content,
            "old_content": self.old_content,
            "old_id": self.old_id,
            "question": self.question,
        }


@dataclass
class StoreOutcome:
    """Result of one storage pipeline run."""

    stored: list[NodeRef] = field(default_factory=list)
    forced: list[NodeRef] = field(default_factory=list)
    turns: list[ToolTurn] = field(default_factory=list)
    skip_reason: str = ""
    degraded: list[str] = field(default_factory=list)
    timing: dict[str, float] = field(default_factory=dict)

    @property
    def all_stored(self) -> list[NodeRef]:
        return [*self.stored, *self.forced]


@dataclass
class StoreResult:
    """Return value of MemoryEngine.store()."""

    stored: list[NodeRef] = field(default_factory=list)
    contradictions: list[Contradiction] = field(default_factory=list)


@dataclass
class RetrievalResult:
    """Return value of MemoryEngine.retrieve()."""

    context: str = ""
    path: str = "none"  # "full" | "follow_up" | "none"
    search_plan: SearchPlan | None = None
    contradictions: list[Contradiction] = field(default_factory=list)
    stored: list[NodeRef] = field(default_factory=list)
    timing: dict[str, float] = field(default_factory=dict)
    entities: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.context,
            "path": self.path,
            "search_plan": self.search_plan.model_dump() if self.search_plan else None,
            "contradictions": [c.to_dict() for c in self.contradictions],
            "stored": [{"id": r.id, "type": r.type, "content": r.content} for r in self.stored],
            "timing": self.timing,
            "degraded": self.degraded,
        }
