"""Storage tools: store_memory and supersede_memory."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from graphmem.constants import (
    DEFAULT_INSTRUCTION_SCOPE,
    DEFAULT_PLAN_SCOPE,
    DEFAULT_SALIENCE,
    DEFAULT_SUBTYPE,
    EDGE_ABOUT,
    EDGE_SEE_ALSO,
    NODE_TYPES,
    TYPE_ALIASES,
)
from graphmem.graph.types import EdgeSpec, NewNode, NodeRef
from graphmem.infra.errors import AlreadySupersededError, NodeNotFoundError
from graphmem.tools.base import BaseTool, ToolOutcome

if TYPE_CHECKING:
    from graphmem.graph.store import GraphStore
    from graphmem.graph.types import Node
    from graphmem.llm.embedding_client import EmbeddingClient
    from graphmem.tools.context import ToolContext

logger = structlog.get_logger()


def _id_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return list(dict.fromkeys(v.strip() for v in value if isinstance(v, str) and v.strip()))


def _float_or(value: Any, default: float | None) -> float | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def build_new_node(
    node_type: str,
    content: str,
    *,
    subtype: str | None = None,
    scope: float | None = None,
    salience: float | None = None,
    valid_from: str | None = None,
    source: str = "user",
) -> NewNode:
    """Apply per-type defaults for subtype, salience and scope."""
    if scope is None:
        if node_type == "instruction":
            scope = DEFAULT_INSTRUCTION_SCOPE
        elif node_type == "plan":
            scope = DEFAULT_PLAN_SCOPE
    if scope is not None:
        scope = min(max(scope, 0.0), 1.0)
    return NewNode(
        type=node_type,
        content=content,
        subtype=subtype or DEFAULT_SUBTYPE.get(node_type),
        salience=salience if salience is not None else DEFAULT_SALIENCE.get(node_type, 1.0),
        scope=scope,
        source=source,
        valid_from=valid_from,
    )


class StoreMemoryTool(BaseTool):
    """Create one node, link it and embed it, in a single store transaction.

    Storing text that already exists as a live node of the same type and
    source returns the existing node instead of creating a duplicate.
    """

    def __init__(self, store: GraphStore, embedder: EmbeddingClient) -> None:
        self._store = store
        self._embedder = embedder

    @property
    def name(self) -> str:
        return "store_memory"

    @property
    def description(self) -> str:
        return (
            "Store a new memory node (entity, fact, event, opinion, instruction or plan) "
            "and link it to related entities."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": list(NODE_TYPES),
                    "description": "Node type.",
                },
                "subtype": {
                    "type": "string",
                    "description": "Refinement, e.g. person, rule, tool_usage, action, scheduled.",
                },
                "content": {"type": "string", "description": "Verbatim content to store."},
                "entity_ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Entity ids this memory is about.",
                },
                "edge_type": {
                    "type": "string",
                    "description": "Label for the entity edges (default: about).",
                },
                "related_ids": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Ids of related memories to link with see_also.",
                },
                "scope": {
                    "type": "number",
                    "description": "Instructions only: 1.0 universal, 0.5 team-wide, 0.2 one entity.",
                },
                "salience": {"type": "number", "description": "Importance weight."},
                "valid_from": {
                    "type": "string",
                    "description": "Plans only: date as YYYY-MM-DD.",
                },
            },
            "required": ["type", "content"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        raw_type = str(arguments.get("type") or "").strip().lower()
        subtype = arguments.get("subtype") if isinstance(arguments.get("subtype"), str) else None
        node_type = raw_type
        if raw_type in TYPE_ALIASES:
            node_type = TYPE_ALIASES[raw_type]
            subtype = subtype or raw_type
        if node_type not in NODE_TYPES:
            return ToolOutcome.failure(
                f"type must be one of: {', '.join(NODE_TYPES)}. Got: {raw_type!r}"
            )

        content = arguments.get("content")
        if not isinstance(content, str) or not content.strip():
            return ToolOutcome.failure("content is required and must be non-empty.")
        content = content.strip()
        source = context.source if context else "user"

        existing = await self._store.find_live_duplicate(node_type, content, source)
        if existing is not None:
            logger.info("store_memory_duplicate", node_id=existing.id, node_type=node_type)
            return ToolOutcome(
                text=f"Already stored as {existing.id} ({existing.type}). Nothing new written.",
                stored=[NodeRef.of(existing)],
            )

        entity_ids = _id_list(arguments.get("entity_ids"))
        related_ids = _id_list(arguments.get("related_ids"))
        known = await self._store.get_nodes([*entity_ids, *related_ids])
        missing = [i for i in (*entity_ids, *related_ids) if i not in known]

        edge_type = arguments.get("edge_type")
        if not isinstance(edge_type, str) or not edge_type.strip():
            edge_type = EDGE_ABOUT
        edges = [EdgeSpec(target_id=i, type=edge_type.strip()) for i in entity_ids if i in known]
        edges += [EdgeSpec(target_id=i, type=EDGE_SEE_ALSO) for i in related_ids if i in known]

        valid_from = arguments.get("valid_from")
        if not isinstance(valid_from, str) or node_type not in ("plan", "event"):
            valid_from = None
        new_node = build_new_node(
            node_type,
            content,
            subtype=subtype,
            scope=_float_or(arguments.get("scope"), None),
            salience=_float_or(arguments.get("salience"), None),
            valid_from=valid_from or None,
            source=source,
        )
        vector = await self._embedder.embed(content)
        node = await self._store.create_node(new_node, vector, edges)

        text = f"Stored memory {node.id} ({node.type}/{node.subtype or 'none'})"
        if related_ids:
            text += f" [see_also: {', '.join(i for i in related_ids if i in known)}]"
        if missing:
            text += f". Unknown ids skipped: {', '.join(missing)}"
        return ToolOutcome(text=text, stored=[NodeRef.of(node)])


class SupersedeMemoryTool(BaseTool):
    """Replace an outdated memory with corrected content."""

    def __init__(self, store: GraphStore, embedder: EmbeddingClient) -> None:
        self._store = store
        self._embedder = embedder

    @property
    def name(self) -> str:
        return "supersede_memory"

    @property
    def description(self) -> str:
        return "Mark an existing memory as outdated and store the corrected version in its place."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "old_id": {"type": "string", "description": "Id of the memory to replace."},
                "new_content": {"type": "string", "description": "Corrected content."},
            },
            "required": ["old_id", "new_content"],
        }

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        old_id = arguments.get("old_id")
        new_content = arguments.get("new_content")
        if not isinstance(old_id, str) or not old_id.strip():
            return ToolOutcome.failure("old_id is required.")
        if not isinstance(new_content, str) or not new_content.strip():
            return ToolOutcome.failure("new_content is required and must be non-empty.")

        vector = await self._embedder.embed(new_content.strip())
        try:
            node: Node = await self._store.supersede_with_content(
                old_id.strip(),
                new_content.strip(),
                vector,
                source=context.source if context else "user",
            )
        except NodeNotFoundError:
            return ToolOutcome.failure(f"no memory with id {old_id}.")
        except AlreadySupersededError as e:
            return ToolOutcome.failure(
                f"{old_id} was already replaced by {e.superseded_by}; supersede that one instead."
            )
        return ToolOutcome(
            text=f"Superseded {old_id} -> {node.id}",
            stored=[NodeRef.of(node)],
        )
