"""Full retrieval path: plan, then tool loop alongside the safety nets, assemble, curate."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from graphmem.memory.assembler import collect_refs
from graphmem.memory.prompts import RETRIEVE_SYSTEM_PROMPT

if TYPE_CHECKING:
    from graphmem.graph.types import ScoredRef
    from graphmem.memory.assembler import Assembler
    from graphmem.memory.curator import SectionCurator
    from graphmem.memory.planner import SearchPlanner
    from graphmem.memory.safety_nets import SafetyNets
    from graphmem.memory.schemas import Classification, SearchPlan
    from graphmem.memory.tool_loop import LoopOutcome, ToolLoop, ToolTurn
    from graphmem.tools.context import ToolContext

logger = structlog.get_logger()


@dataclass
class FullRetrieval:
    context: str = ""
    raw_context: str = ""
    search_plan: SearchPlan | None = None
    turns: list[ToolTurn] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    timing: dict[str, float] = field(default_factory=dict)


def loop_message(message: str, plan: SearchPlan) -> str:
    guidance = plan.guidance or "(no plan available: search as you see fit)"
    return (
        f'User prompt: "{message}"\n\n'
        f"Search plan:\n{guidance}\n\n"
        'Execute this search plan. Call "done" when you have finished searching.'
    )


class RetrievalOrchestrator:
    def __init__(
        self,
        planner: SearchPlanner,
        loop: ToolLoop,
        safety_nets: SafetyNets,
        assembler: Assembler,
        curator: SectionCurator,
        *,
        max_turns: int = 8,
    ) -> None:
        self._planner = planner
        self._loop = loop
        self._safety_nets = safety_nets
        self._assembler = assembler
        self._curator = curator
        self._max_turns = max_turns

    async def run(
        self,
        message: str,
        classification: Classification,
        *,
        context: ToolContext | None = None,
    ) -> FullRetrieval:
        result = FullRetrieval()

        (plan, loop_outcome), nets = await asyncio.gather(
            self._plan_and_search(message, classification, result, context),
            self._safety_nets.run(message),
        )
        result.search_plan = plan
        result.turns = loop_outcome.turns
        if loop_outcome.error:
            result.degraded.append(f"tool loop: {loop_outcome.error}")
        if nets.degraded:
            result.degraded.append(nets.reason)

        refs: list[ScoredRef] = [*collect_refs(loop_outcome.turns), *nets.value]
        start = time.monotonic()
        sections = await self._assembler.assemble(refs)
        result.raw_context = sections.render()
        result.timing["assemble_s"] = round(time.monotonic() - start, 3)

        start = time.monotonic()
        curated = await self._curator.curate(message, sections)
        result.context = curated.value.render()
        result.timing["curate_s"] = round(time.monotonic() - start, 3)
        if curated.degraded:
            result.degraded.append(curated.reason)

        logger.info(
            "full_retrieval_finished",
            turns=len(result.turns),
            refs=len(refs),
            raw_chars=len(result.raw_context),
            curated_chars=len(result.context),
            degraded=len(result.degraded),
        )
        return result

    async def _plan_and_search(
        self,
        message: str,
        classification: Classification,
        result: FullRetrieval,
        context: ToolContext | None,
    ) -> tuple[SearchPlan, LoopOutcome]:
        start = time.monotonic()
        planned = await self._planner.plan(message, classification)
        result.timing["plan_s"] = round(time.monotonic() - start, 3)
        if planned.degraded:
            result.degraded.append(planned.reason)

        start = time.monotonic()
        loop_outcome = await self._loop.run(
            RETRIEVE_SYSTEM_PROMPT.format(max_turns=self._max_turns),
            loop_message(message, planned.value),
            context=context,
        )
        result.timing["search_s"] = round(time.monotonic() - start, 3)
        return planned.value, loop_outcome
