"""Post-storage reconciliation of newly stored instructions against existing ones."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from graphmem.infra.errors import (
    AlreadySupersededError,
    EmbeddingError,
    LLMError,
    NodeNotFoundError,
    SupersessionCycleError,
)
from graphmem.memory.contracts import Contradiction
from graphmem.memory.prompts import RECONCILE_SYSTEM_PROMPT
from graphmem.memory.schemas import ReconcileDecision, parse_model_output

if TYPE_CHECKING:
    from collections.abc import Iterable

    from graphmem.graph.store import GraphStore
    from graphmem.graph.types import Node, NodeRef
    from graphmem.llm.embedding_client import EmbeddingClient
    from graphmem.llm.model_client import ModelClient

logger = structlog.get_logger()


@dataclass(frozen=True)
class Supersession:
    old_id: str
    new_id: str
    reason: str = ""


@dataclass
class ReconcileOutcome:
    superseded: list[Supersession] = field(default_factory=list)
    contradictions: list[Contradiction] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def default_question(new_content: str, old_content: str) -> str:
    return f'"{new_content}" may conflict with "{old_content}". Which one is correct?'


class Reconciler:
    def __init__(
        self,
        store: GraphStore,
        embedder: EmbeddingClient,
        model_client: ModelClient,
        *,
        model: str,
        threshold: float = 0.45,
        top_k: int = 10,
        temperature: float = 0.1,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._model_client = model_client
        self._model = model
        self._threshold = threshold
        self._top_k = top_k
        self._temperature = temperature

    async def reconcile(self, stored: Iterable[NodeRef]) -> ReconcileOutcome:
        """Check each stored instruction against similar live instructions.

        Failures on one node (embedding, completion, unparseable verdicts) skip
        that node only. Store-layer failures propagate.
        """
        outcome = ReconcileOutcome()
        seen: set[str] = set()
        for ref in stored:
            if ref.type != "instruction" or ref.id in seen:
                continue
            seen.add(ref.id)
            node = await self._store.find_node(ref.id)
            if node is None or not node.is_live:
                continue
            try:
                await self._reconcile_one(node, outcome)
            except (EmbeddingError, LLMError) as e:
                logger.warning("reconcile_node_skipped", node_id=node.id, error=str(e))
                outcome.skipped.append(node.id)

        if outcome.superseded or outcome.contradictions:
            logger.info(
                "reconciled",
                superseded=len(outcome.superseded),
                contradictions=len(outcome.contradictions),
            )
        return outcome

    async def _candidates(self, node: Node) -> list[Node]:
        vector = await self._embedder.embed(node.content)
        hits = await self._store.cosine_search(
            vector,
            node_types=("instruction",),
            limit=self._top_k,
            min_score=self._threshold,
            source="reconcile",
        )
        nodes = await self._store.get_nodes(h.node_id for h in hits if h.node_id != node.id)
        return [nodes[h.node_id] for h in hits if h.node_id in nodes and nodes[h.node_id].is_live]

    async def _reconcile_one(self, node: Node, outcome: ReconcileOutcome) -> None:
        candidates = await self._candidates(node)
        if not candidates:
            return

        listing = "\n".join(
            f'{i}. "{c.content}" (id: {c.id})' for i, c in enumerate(candidates, start=1)
        )
        raw = await self._model_client.chat(
            [
                {"role": "system", "content": RECONCILE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f'New instruction: "{node.content}"\n\nExisting instructions:\n{listing}\n\n'
                        "Classify each existing instruction."
                    ),
                },
            ],
            self._model,
            self._temperature,
            tag="reconcile",
        )
        decision, err = parse_model_output(ReconcileDecision, raw)
        if decision is None:
            logger.warning("reconcile_parse_failed", node_id=node.id, error=err)
            outcome.skipped.append(node.id)
            return

        by_id = {c.id: c for c in candidates}
        for verdict in decision.results:
            old = by_id.get(verdict.id)
            if old is None:
                continue
            if verdict.verdict == "SUPERSEDES":
                try:
                    await self._store.set_superseded_by(old.id, node.id)
                except (AlreadySupersededError, NodeNotFoundError, SupersessionCycleError) as e:
                    logger.info("reconcile_supersede_noop", old_id=old.id, reason=e.code)
                    continue
                outcome.superseded.append(
                    Supersession(old_id=old.id, new_id=node.id, reason=verdict.reason)
                )
                logger.info("instruction_superseded", old_id=old.id, new_id=node.id)
            elif verdict.verdict == "CONTRADICTION":
                outcome.contradictions.append(
                    Contradiction(
                        new_content=node.content,
                        old_content=old.content,
                        old_id=old.id,
                        question=decision.question or default_question(node.content, old.content),
                    )
                )
