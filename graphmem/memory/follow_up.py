"""Follow-up path: one analysis call, then direct tool calls. No tool loop, no curation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from graphmem.constants import NODE_TYPES
from graphmem.infra.errors import EmbeddingError, LLMError
from graphmem.memory.contracts import Degraded, Ok, StageResult
from graphmem.memory.prompts import FOLLOWUP_SYSTEM_PROMPT
from graphmem.memory.schemas import (
    Classification,
    EntityMention,
    FollowUpDecision,
    Operations,
    parse_model_output,
)
from graphmem.memory.tool_loop import ToolCall, ToolTurn, execute_tool
from graphmem.tools.base import ToolOutcome
from graphmem.tools.context import ToolContext

if TYPE_CHECKING:
    from graphmem.config.settings import RetrievalSettings
    from graphmem.graph.store import GraphStore
    from graphmem.llm.embedding_client import EmbeddingClient
    from graphmem.llm.model_client import ModelClient
    from graphmem.memory.assembler import Assembler
    from graphmem.memory.contracts import StoreOutcome
    from graphmem.memory.state import ConversationTurn
    from graphmem.memory.storage import StorageOrchestrator
    from graphmem.tools.registry import ToolRegistry

logger = structlog.get_logger()

# Node types each retrieve tool already covers; the broad pass fills the rest.
TOOL_COVERAGE: dict[str, tuple[str, ...]] = {
    "search_entity": ("entity",),
    "search_facts": ("fact", "opinion"),
    "search_events": ("event", "plan"),
    "search_plans": ("plan", "event"),
    "search_processes": ("instruction",),
    "get_instructions": ("instruction",),
}


@dataclass
class FollowUpOutcome:
    decision: FollowUpDecision
    context: str = ""
    turns: list[ToolTurn] = field(default_factory=list)
    store: StoreOutcome | None = None
    timing: dict[str, float] = field(default_factory=dict)


def format_turns(previous: list[ConversationTurn]) -> str:
    lines = []
    for turn in previous:
        line = f'User: "{turn.prompt}" [entities: {", ".join(turn.entities) or "none"}]'
        if turn.context_summary:
            line += f"\n  Memory found: {turn.context_summary}"
        lines.append(line)
    return "\n".join(lines)


def minimal_classification(decision: FollowUpDecision, prompt: str) -> Classification:
    """Classification for storing a follow-up message without a classifier call."""
    return Classification(
        entities=[EntityMention(name=e.name, type=e.type) for e in decision.resolved_entities],
        implied_facts=[prompt],
        operations=Operations(retrieve=False, store=True),
    )


class FollowUpPipeline:
    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        store: GraphStore,
        embedder: EmbeddingClient,
        assembler: Assembler,
        storage: StorageOrchestrator,
        settings: RetrievalSettings,
        *,
        model: str,
        temperature: float = 0.1,
    ) -> None:
        self._model_client = model_client
        self._registry = registry
        self._store = store
        self._embedder = embedder
        self._assembler = assembler
        self._storage = storage
        self._settings = settings
        self._model = model
        self._temperature = temperature

    async def analyse(
        self, message: str, previous: list[ConversationTurn]
    ) -> StageResult[FollowUpDecision | None]:
        user_content = (
            f"Recent conversation:\n{format_turns(previous)}\n\n"
            f'New message: "{message}"\n\n'
            "What NEW information should be retrieved or stored?"
        )
        try:
            raw = await self._model_client.chat(
                [
                    {"role": "system", "content": FOLLOWUP_SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                self._model,
                self._temperature,
                tag="follow_up",
            )
        except LLMError as e:
            logger.warning("follow_up_analysis_failed", error=str(e))
            return Degraded(None, reason=f"follow-up: {e}")

        decision, err = parse_model_output(FollowUpDecision, raw)
        if decision is None:
            logger.warning("follow_up_analysis_failed", error=err, raw=(raw or "")[:200])
            return Degraded(None, reason=f"follow-up: {err}")
        return Ok(decision)

    async def run(
        self,
        message: str,
        previous: list[ConversationTurn],
        *,
        context: ToolContext | None = None,
    ) -> StageResult[FollowUpOutcome | None]:
        """Run the follow-up path. Degraded(None) means: fall back to the full path."""
        context = context or ToolContext()
        start = time.monotonic()
        analysis = await self.analyse(message, previous)
        if analysis.value is None:
            return Degraded(None, reason=analysis.reason or "follow-up: no decision")
        decision = analysis.value
        outcome = FollowUpOutcome(decision=decision)
        outcome.timing["analysis_s"] = round(time.monotonic() - start, 3)

        start = time.monotonic()
        await self._run_calls(decision, outcome, context)
        await self._broad_pass(decision.resolved_prompt or message, outcome)
        refs = [ref for turn in outcome.turns for ref in turn.outcome.refs]
        outcome.context = (await self._assembler.assemble(refs)).render()
        outcome.timing["search_s"] = round(time.monotonic() - start, 3)

        if decision.storage_needed:
            start = time.monotonic()
            prompt = decision.resolved_prompt.strip() or message
            outcome.store = await self._storage.run(
                prompt, minimal_classification(decision, prompt), context=context
            )
            outcome.timing["store_s"] = round(time.monotonic() - start, 3)

        logger.info(
            "follow_up_finished",
            calls=len(outcome.turns),
            context_chars=len(outcome.context),
            storage_needed=decision.storage_needed,
            reasoning=decision.reasoning[:200],
        )
        return Ok(outcome)

    async def _call(
        self, name: str, arguments: dict, outcome: FollowUpOutcome, context: ToolContext
    ) -> None:
        tool = self._registry.get(name)
        if tool is None or tool.terminal:
            logger.warning("follow_up_unknown_tool", tool_name=name)
            return
        call = ToolCall(id=f"follow-up-{len(outcome.turns) + 1}", name=name, arguments=arguments)
        result = await execute_tool(tool, call, context)
        outcome.turns.append(ToolTurn(call=call, outcome=result))

    async def _run_calls(
        self, decision: FollowUpDecision, outcome: FollowUpOutcome, context: ToolContext
    ) -> None:
        searched: set[str] = set()
        for entity in decision.resolved_entities:
            name = entity.name.strip()
            if not name or name.lower() in searched:
                continue
            searched.add(name.lower())
            await self._call("search_entity", {"name": name}, outcome, context)

        if not decision.retrieval_needed:
            return
        for call in decision.retrieve_calls:
            if call.tool == "search_entity":
                name = str(call.args.get("name") or "").strip().lower()
                if name in searched:
                    continue
                searched.add(name)
            await self._call(call.tool, dict(call.args), outcome, context)

    async def _broad_pass(self, query: str, outcome: FollowUpOutcome) -> None:
        """Cosine search over node types the direct calls did not cover."""
        if not outcome.turns:
            return
        covered = {t for turn in outcome.turns for t in TOOL_COVERAGE.get(turn.call.name, ())}
        uncovered = [t for t in NODE_TYPES if t not in covered]
        if not uncovered:
            return
        try:
            vector = await self._embedder.embed(query)
        except EmbeddingError as e:
            logger.warning("follow_up_broad_pass_skipped", error=str(e))
            return
        refs = await self._store.cosine_search(
            vector,
            node_types=uncovered,
            limit=max(self._settings.followup_broad_top_k, 5 * len(uncovered)),
            min_score=self._settings.followup_min_score,
            source="broad_search",
        )
        if refs:
            outcome.turns.append(
                ToolTurn(
                    call=ToolCall(
                        id="follow-up-broad",
                        name="broad_search",
                        arguments={"query": query, "types": uncovered},
                    ),
                    outcome=ToolOutcome(text=f"{len(refs)} broad matches", refs=refs),
                )
            )
