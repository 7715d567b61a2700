from __future__ import annotations

from typing import TYPE_CHECKING

from graphmem.tools.builtins.done import DoneTool
from graphmem.tools.builtins.graph_search import (
    GetInstructionsTool,
    GetRelationshipsTool,
    SearchEntityTool,
    SearchEventsTool,
    SearchFactsTool,
    SearchPlansTool,
    SearchProcessesTool,
)
from graphmem.tools.builtins.memory_write import StoreMemoryTool, SupersedeMemoryTool
from graphmem.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from graphmem.config.settings import RetrievalSettings
    from graphmem.graph.store import GraphStore
    from graphmem.llm.embedding_client import EmbeddingClient


def build_retrieve_registry(
    store: GraphStore,
    embedder: EmbeddingClient,
    settings: RetrievalSettings,
) -> ToolRegistry:
    """Capability set for the retrieval loop and the follow-up path. Read-only."""
    registry = ToolRegistry("retrieve")
    for tool_cls in (
        SearchEntityTool,
        GetRelationshipsTool,
        SearchFactsTool,
        SearchEventsTool,
        SearchPlansTool,
        SearchProcessesTool,
        GetInstructionsTool,
    ):
        registry.register(tool_cls(store, embedder, settings))
    registry.register(
        DoneTool(
            "Signal that you have finished searching. Everything your searches "
            "returned is collected automatically."
        )
    )
    return registry


def build_store_registry(
    store: GraphStore,
    embedder: EmbeddingClient,
    settings: RetrievalSettings,
) -> ToolRegistry:
    """Capability set for the storage loop."""
    registry = ToolRegistry("store")
    registry.register(SearchEntityTool(store, embedder, settings))
    registry.register(SearchFactsTool(store, embedder, settings))
    registry.register(StoreMemoryTool(store, embedder))
    registry.register(SupersedeMemoryTool(store, embedder))
    registry.register(DoneTool("Signal that all new information has been stored."))
    return registry
