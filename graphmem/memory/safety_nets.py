"""Deterministic retrieval passes that backstop the agentic tool loop.

Three passes share one query embedding and run concurrently:

1. instruction pre-fetch with template dedup,
2. broad cosine search across every node type,
3. auto-inject of global (high-scope) instructions with a lowered cosine bar.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

import structlog

from graphmem.graph.types import ScoredRef
from graphmem.infra.errors import EmbeddingError
from graphmem.memory.contracts import Degraded, Ok, StageResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from graphmem.config.settings import RetrievalSettings
    from graphmem.graph.store import GraphStore
    from graphmem.llm.embedding_client import EmbeddingClient

logger = structlog.get_logger()

SOURCE_INSTRUCTION_PREFETCH = "instruction_prefetch"
SOURCE_BROAD_SEARCH = "broad_search"
SOURCE_GLOBAL_INSTRUCTIONS = "global_instructions"

_PLACEHOLDER_RUN = re.compile(r"_(?:\s_)*")


def template_key(content: str, max_words: int = 15) -> str:
    """Reduce an instruction to its wording pattern.

    Capitalised words (names, mostly) become ``_``; everything else is
    lowercased. Only the first ``max_words`` words count and adjacent
    placeholders collapse into one, so "Peter sends reports to Anderson" and
    "Sarah sends reports to Big Corp" share a key.
    """
    words = [
        "_" if word[:1].isupper() else word.lower()
        for word in content.split()
    ][:max_words]
    return _PLACEHOLDER_RUN.sub("_", " ".join(words))


class SafetyNets:
    def __init__(
        self,
        store: GraphStore,
        embedder: EmbeddingClient,
        settings: RetrievalSettings,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._settings = settings

    async def run(self, query: str) -> StageResult[list[ScoredRef]]:
        """Run all passes for a query. An embedding failure degrades to no refs."""
        try:
            vector = await self._embedder.embed(query)
        except EmbeddingError as e:
            logger.warning("safety_nets_degraded", error=str(e))
            return Degraded([], reason=f"safety nets: {e}")

        prefetch, broad, global_ = await asyncio.gather(
            self.instruction_prefetch(vector),
            self.broad_search(vector),
            self.global_instructions(vector),
        )
        logger.info(
            "safety_nets_done",
            instruction_prefetch=len(prefetch),
            broad_search=len(broad),
            global_instructions=len(global_),
        )
        return Ok([*prefetch, *broad, *global_])

    async def instruction_prefetch(self, vector: Sequence[float]) -> list[ScoredRef]:
        s = self._settings
        hits = await self._store.cosine_search(
            vector,
            node_types=("instruction",),
            limit=s.max_instructions * s.instruction_prefetch_multiplier,
            source=SOURCE_INSTRUCTION_PREFETCH,
        )
        nodes = await self._store.get_nodes(h.node_id for h in hits)

        per_template: dict[str, int] = {}
        kept: list[ScoredRef] = []
        for hit in hits:
            node = nodes.get(hit.node_id)
            if node is None:
                continue
            key = template_key(node.content, s.template_max_words)
            count = per_template.get(key, 0)
            if count >= s.template_max_per_group:
                continue
            per_template[key] = count + 1
            kept.append(hit)
            if len(kept) >= s.max_instructions:
                break
        return kept

    async def broad_search(self, vector: Sequence[float]) -> list[ScoredRef]:
        return await self._store.cosine_search(
            vector, limit=self._settings.broad_search_top_k, source=SOURCE_BROAD_SEARCH
        )

    async def global_instructions(self, vector: Sequence[float]) -> list[ScoredRef]:
        s = self._settings
        globals_ = await self._store.list_by_type(
            "instruction", min_scope=s.global_scope_threshold
        )
        if not globals_:
            return []
        hits = await self._store.cosine_search(
            vector,
            node_ids=[n.id for n in globals_],
            limit=len(globals_),
            source=SOURCE_GLOBAL_INSTRUCTIONS,
        )
        return [
            ScoredRef(
                node_id=h.node_id,
                score=max(h.score, s.global_score_floor),
                source=SOURCE_GLOBAL_INSTRUCTIONS,
            )
            for h in hits
            if h.score > s.global_cosine_floor
        ]
