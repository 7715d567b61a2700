"""Deterministic context assembly from scored references.

No model calls. References from tool turns and safety nets are merged (max
score per node), superseded or vanished nodes are dropped, the rest grouped
into fixed sections with per-type caps.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from functools import cmp_to_key
from typing import TYPE_CHECKING

import structlog

from graphmem.constants import (
    SECTION_ENTITIES,
    SECTION_EVENTS,
    SECTION_FACTS,
    SECTION_INSTRUCTIONS,
    SECTION_ORDER,
    SECTION_PLANS,
)

if TYPE_CHECKING:
    from graphmem.config.settings import RetrievalSettings
    from graphmem.graph.store import GraphStore
    from graphmem.graph.types import Node, ScoredRef
    from graphmem.memory.tool_loop import ToolTurn

logger = structlog.get_logger()

_WRITE_TOOLS = frozenset({"store_memory", "supersede_memory", "done"})


class RankingPolicy:
    """Extension point for salience-aware ranking.

    Salience is advisory: the default multiplier is 1.0 for every node, so
    ranking is by similarity score alone. Subclass and override
    ``salience_multiplier`` to let salience move nodes.
    """

    def salience_multiplier(self, node: Node) -> float:
        return 1.0


@dataclass
class ContextSections:
    """Assembled lines per section header, in display order."""

    sections: dict[str, list[str]] = field(
        default_factory=lambda: {name: [] for name in SECTION_ORDER}
    )

    def lines(self, name: str) -> list[str]:
        return self.sections.get(name, [])

    def text(self, name: str) -> str:
        return "\n".join(self.lines(name))

    def non_empty(self) -> list[str]:
        return [name for name in SECTION_ORDER if self.sections.get(name)]

    @property
    def is_empty(self) -> bool:
        return not self.non_empty()

    def render(self) -> str:
        """Non-empty sections under their headers, separated by blank lines."""
        return "\n\n".join(f"{name}:\n{self.text(name)}" for name in self.non_empty())


@dataclass
class _Ranked:
    node: Node
    score: float


def collect_refs(turns: Iterable[ToolTurn]) -> list[ScoredRef]:
    """Refs surfaced by read tools. Write tools and done contribute nothing."""
    return [
        ref
        for turn in turns
        if turn.call.name not in _WRITE_TOOLS
        for ref in turn.outcome.refs
    ]


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


class Assembler:
    def __init__(
        self,
        store: GraphStore,
        settings: RetrievalSettings,
        *,
        policy: RankingPolicy | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._policy = policy or RankingPolicy()

    def _instruction_order(self, a: _Ranked, b: _Ranked) -> int:
        diff = b.score - a.score
        if abs(diff) > self._settings.instruction_tie_band:
            return 1 if diff > 0 else -1
        default = self._settings.default_scope
        scope_a = a.node.scope if a.node.scope is not None else default
        scope_b = b.node.scope if b.node.scope is not None else default
        if scope_a == scope_b:
            return 0
        return 1 if scope_b > scope_a else -1

    async def assemble(
        self, refs: Iterable[ScoredRef], *, today: date | None = None
    ) -> ContextSections:
        best: dict[str, float] = {}
        for ref in refs:
            if ref.score > best.get(ref.node_id, float("-inf")):
                best[ref.node_id] = ref.score

        result = ContextSections()
        if not best:
            return result

        nodes = await self._store.get_nodes(best)
        ranked = [
            _Ranked(node=node, score=score * self._policy.salience_multiplier(node))
            for node_id, score in best.items()
            if (node := nodes.get(node_id)) is not None and node.is_live
        ]
        ranked.sort(key=lambda r: r.score, reverse=True)

        groups: dict[str, list[_Ranked]] = {}
        for item in ranked:
            groups.setdefault(item.node.type, []).append(item)

        s = self._settings
        shown_elsewhere = {
            item.node.id for node_type, items in groups.items() if node_type != "entity"
            for item in items
        }

        entity_lines: list[str] = []
        for item in groups.get("entity", [])[: s.max_entities]:
            entity_lines.append(item.node.content)
            rels = [
                r
                for r in await self._store.relationships(item.node.id)
                if r.node.id not in shown_elsewhere
            ]
            rels.sort(key=lambda r: r.node.salience, reverse=True)
            for rel in rels[: s.max_relationships_per_entity]:
                entity_lines.append(f"  - {rel.edge.type}: {rel.node.content}")
        result.sections[SECTION_ENTITIES] = entity_lines

        instructions = sorted(
            groups.get("instruction", []), key=cmp_to_key(self._instruction_order)
        )
        result.sections[SECTION_INSTRUCTIONS] = [
            f"- {r.node.content}" for r in instructions[: s.max_instructions]
        ]

        facts = sorted(
            [*groups.get("fact", []), *groups.get("opinion", [])],
            key=lambda r: r.score,
            reverse=True,
        )[: s.max_facts]
        result.sections[SECTION_FACTS] = [f"- {r.node.content}" for r in facts]

        today = today or date.today()
        events = [(r, "") for r in groups.get("event", [])]
        upcoming: list[_Ranked] = []
        for item in groups.get("plan", []):
            when = _parse_date(item.node.valid_from)
            if when is not None and when <= today:
                events.append((item, f"[Was scheduled for {item.node.valid_from}, now past] "))
            else:
                upcoming.append(item)
        events.sort(key=lambda pair: pair[0].score, reverse=True)
        result.sections[SECTION_EVENTS] = [
            f"- {note}{r.node.content}" for r, note in events[: s.max_events]
        ]

        upcoming = sorted(upcoming[: s.max_plans], key=lambda r: r.node.valid_from or "")
        result.sections[SECTION_PLANS] = [
            f"- {r.node.content}" + (f" [scheduled: {r.node.valid_from}]" if r.node.valid_from else "")
            for r in upcoming
        ]

        logger.info(
            "context_assembled",
            refs=len(best),
            live=len(ranked),
            sections={name: len(result.lines(name)) for name in result.non_empty()},
        )
        return result
