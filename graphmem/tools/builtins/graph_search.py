"""Retrieval tools: entity lookup, relationship traversal and typed semantic search.

Every tool returns a text rendering for the model plus structured ScoredRefs.
Superseded nodes never appear; the store already excludes them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from graphmem.graph.types import ScoredRef
from graphmem.tools.base import BaseTool, ToolOutcome, format_node

if TYPE_CHECKING:
    from graphmem.config.settings import RetrievalSettings
    from graphmem.graph.store import GraphStore
    from graphmem.graph.types import Node
    from graphmem.llm.embedding_client import EmbeddingClient
    from graphmem.tools.context import ToolContext

_SEARCH_POOL = 20
_SEARCH_SHOWN = 10
_ENTITY_RELS_SHOWN = 15
_RELATIONSHIPS_SHOWN = 25
_BROAD_TIP = "Tip: these are broad results. Pass entity_id to scope the search."


def _text_arg(arguments: dict, key: str) -> str:
    value = arguments.get(key)
    return value.strip() if isinstance(value, str) else ""


def _optional_id(arguments: dict, key: str = "entity_id") -> str | None:
    value = arguments.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_days(arguments: dict) -> int | None:
    value = arguments.get("days")
    if isinstance(value, bool) or value is None:
        return None
    try:
        days = int(value)
    except (TypeError, ValueError):
        return None
    return days if days > 0 else None


class _GraphTool(BaseTool):
    """Shared wiring for tools that read the graph."""

    def __init__(
        self,
        store: GraphStore,
        embedder: EmbeddingClient,
        settings: RetrievalSettings,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._settings = settings

    async def _resolve(self, hits: list[ScoredRef]) -> list[tuple[Node, ScoredRef]]:
        """Attach nodes to hits, keeping hit order and skipping vanished nodes."""
        nodes = await self._store.get_nodes(h.node_id for h in hits)
        resolved = []
        for hit in hits:
            node = nodes.get(hit.node_id)
            if node is not None and node.is_live:
                resolved.append((node, hit))
        return resolved

    async def _semantic(
        self,
        query: str,
        node_types: tuple[str, ...],
        *,
        node_ids: list[str] | None = None,
        shown: int = _SEARCH_SHOWN,
        empty_message: str,
        broad_tip: bool = False,
    ) -> ToolOutcome:
        vector = await self._embedder.embed(query)
        hits = await self._store.cosine_search(
            vector,
            node_types=node_types,
            node_ids=node_ids,
            limit=_SEARCH_POOL,
            source=self.name,
        )
        resolved = (await self._resolve(hits))[:shown]
        if not resolved:
            return ToolOutcome(text=empty_message)
        lines = [format_node(node, hit.score) for node, hit in resolved]
        if broad_tip and len(resolved) >= 5:
            lines.append(_BROAD_TIP)
        return ToolOutcome(text="\n".join(lines), refs=[hit for _, hit in resolved])


class SearchEntityTool(_GraphTool):
    @property
    def name(self) -> str:
        return "search_entity"

    @property
    def description(self) -> str:
        return (
            "Find an entity (person, organisation, project, tool) by name. "
            "Returns the closest matches with their ids and direct relationships."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Entity name to search for."},
            },
            "required": ["name"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        name = _text_arg(arguments, "name")
        if not name:
            return ToolOutcome.failure("name must be a non-empty string.")

        vector = await self._embedder.embed(name)
        hits = await self._store.cosine_search(
            vector,
            node_types=("entity",),
            limit=self._settings.entity_search_top_k,
            source=self.name,
        )
        resolved = await self._resolve(hits)
        if not resolved:
            return ToolOutcome(text="No entities found.")

        lines: list[str] = []
        for entity, hit in resolved:
            lines.append(format_node(entity, hit.score))
            rels = await self._store.relationships(entity.id)
            for rel in rels[:_ENTITY_RELS_SHOWN]:
                lines.append(f"  -> {rel.edge.type} -> {rel.node.content} ({rel.node.type})")
            if len(rels) > _ENTITY_RELS_SHOWN:
                lines.append(
                    f"  ... and {len(rels) - _ENTITY_RELS_SHOWN} more. "
                    "Use get_relationships for the full list."
                )
        return ToolOutcome(text="\n".join(lines), refs=[hit for _, hit in resolved])


class GetRelationshipsTool(_GraphTool):
    @property
    def name(self) -> str:
        return "get_relationships"

    @property
    def description(self) -> str:
        return "List the relationships of an entity with the connected nodes."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "entity_id": {"type": "string", "description": "Entity node id."},
            },
            "required": ["entity_id"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        entity_id = _optional_id(arguments)
        if entity_id is None:
            return ToolOutcome.failure("entity_id must be a non-empty string.")

        rels = await self._store.relationships(entity_id)
        if not rels:
            return ToolOutcome(text="No relationships found.")

        shown = rels[:_RELATIONSHIPS_SHOWN]
        lines = [
            f"{rel.edge.type} -> {rel.node.content} ({rel.node.type}, id: {rel.node.id})"
            for rel in shown
        ]
        if len(rels) > _RELATIONSHIPS_SHOWN:
            lines.append(
                f"... and {len(rels) - _RELATIONSHIPS_SHOWN} more. "
                "Use search_facts with entity_id for a scoped search."
            )
        refs = [
            ScoredRef(node_id=rel.node.id, score=self._settings.default_score, source=self.name)
            for rel in shown
        ]
        return ToolOutcome(text="\n".join(lines), refs=refs)


class SearchFactsTool(_GraphTool):
    @property
    def name(self) -> str:
        return "search_facts"

    @property
    def description(self) -> str:
        return "Semantic search over facts and opinions, optionally scoped to one entity."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "entity_id": {
                    "type": "string",
                    "description": "Optional entity id to scope results.",
                },
            },
            "required": ["query"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        query = _text_arg(arguments, "query")
        if not query:
            return ToolOutcome.failure("query must be a non-empty string.")
        entity_id = _optional_id(arguments)
        node_ids = None
        if entity_id is not None:
            node_ids = [n.id for n in await self._store.facts_by_entity(entity_id)]
        return await self._semantic(
            query,
            ("fact", "opinion"),
            node_ids=node_ids,
            empty_message="No matching facts found.",
            broad_tip=entity_id is None,
        )


class SearchEventsTool(_GraphTool):
    @property
    def name(self) -> str:
        return "search_events"

    @property
    def description(self) -> str:
        return "Semantic search over events, optionally scoped to an entity and/or the last N days."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "entity_id": {
                    "type": "string",
                    "description": "Optional entity id to scope results.",
                },
                "days": {
                    "type": "integer",
                    "description": "Only return events from the last N days.",
                },
            },
            "required": ["query"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        query = _text_arg(arguments, "query")
        if not query:
            return ToolOutcome.failure("query must be a non-empty string.")
        entity_id = _optional_id(arguments)
        days = _optional_days(arguments)

        node_ids = None
        if entity_id is not None:
            node_ids = [n.id for n in await self._store.events_by_entity(entity_id, days=days)]
        elif days is not None:
            node_ids = await self._store.recent_event_ids(days)

        return await self._semantic(
            query,
            ("event",),
            node_ids=node_ids,
            shown=_SEARCH_POOL,
            empty_message="No matching events found.",
            broad_tip=entity_id is None,
        )


class SearchPlansTool(_GraphTool):
    @property
    def name(self) -> str:
        return "search_plans"

    @property
    def description(self) -> str:
        return "Semantic search over upcoming plans and scheduled items, optionally for one entity."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "entity_id": {
                    "type": "string",
                    "description": "Optional entity id to scope results.",
                },
            },
            "required": ["query"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        query = _text_arg(arguments, "query")
        if not query:
            return ToolOutcome.failure("query must be a non-empty string.")
        entity_id = _optional_id(arguments)
        node_ids = None
        if entity_id is not None:
            node_ids = [n.id for n in await self._store.plans_by_entity(entity_id)]
        return await self._semantic(
            query,
            ("plan",),
            node_ids=node_ids,
            empty_message="No matching plans found.",
        )


class SearchProcessesTool(_GraphTool):
    @property
    def name(self) -> str:
        return "search_processes"

    @property
    def description(self) -> str:
        return (
            "Find stored procedures, rules and tool usage guides by topic, "
            "optionally limited to those connected to one entity."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Topic to search for."},
                "entity_id": {
                    "type": "string",
                    "description": "Optional entity id to scope results.",
                },
            },
            "required": ["query"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        query = _text_arg(arguments, "query")
        if not query:
            return ToolOutcome.failure("query must be a non-empty string.")
        entity_id = _optional_id(arguments)
        node_ids = None
        if entity_id is not None:
            node_ids = [n.id for n in await self._store.instructions_by_entity(entity_id)]
        return await self._semantic(
            query,
            ("instruction",),
            node_ids=node_ids,
            empty_message="No matching processes found.",
        )


class GetInstructionsTool(_GraphTool):
    @property
    def name(self) -> str:
        return "get_instructions"

    @property
    def description(self) -> str:
        return "Find rules and instructions by keyword topic, or those connected to one entity."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "topic": {"type": "string", "description": "Optional topic keywords."},
                "entity_id": {
                    "type": "string",
                    "description": "Optional entity id to find its instructions.",
                },
            },
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        entity_id = _optional_id(arguments)
        limit = self._settings.max_instructions
        if entity_id is not None:
            nodes = (await self._store.instructions_by_entity(entity_id))[:limit]
        else:
            nodes = await self._store.instructions_by_topic(
                _text_arg(arguments, "topic"), limit=limit
            )
        if not nodes:
            return ToolOutcome(text="No instructions found.")
        refs = [
            ScoredRef(node_id=n.id, score=self._settings.default_score, source=self.name)
            for n in nodes
        ]
        return ToolOutcome(text="\n".join(format_node(n) for n in nodes), refs=refs)
