"""Graph-side DTOs returned by GraphStore.

ORM records never leave the store; callers only see these frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Node:
    """A typed unit of stored memory."""

    id: str
    type: str
    content: str
    subtype: str | None = None
    salience: float = 1.0
    confidence: float = 1.0
    scope: float | None = None
    source: str = "user"
    superseded_by: str | None = None
    valid_from: str | None = None
    valid_until: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.superseded_by is None


@dataclass(frozen=True)
class NewNode:
    """Input for GraphStore.create_node(). The store assigns id and created_at."""

    type: str
    content: str
    subtype: str | None = None
    salience: float = 1.0
    confidence: float = 1.0
    scope: float | None = None
    source: str = "user"
    valid_from: str | None = None
    valid_until: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EdgeSpec:
    """An edge to create alongside a new node, from the new node to target_id."""

    target_id: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Edge:
    id: str
    source_id: str
    target_id: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class Relationship:
    """One hop from a node: the connecting edge and the live node on the other end."""

    edge: Edge
    node: Node
    direction: str  # "out" | "in"


@dataclass(frozen=True)
class ScoredRef:
    """A node surfaced by a search, with its similarity score and the pass that found it."""

    node_id: str
    score: float
    source: str = ""


@dataclass(frozen=True)
class NodeRef:
    """Lightweight handle to a stored node."""

    id: str
    type: str
    content: str

    @classmethod
    def of(cls, node: Node) -> NodeRef:
        return cls(id=node.id, type=node.type, content=node.content)
