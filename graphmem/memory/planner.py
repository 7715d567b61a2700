"""L1.5 search planner: judges query complexity and drafts search guidance."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

from graphmem.infra.errors import LLMError
from graphmem.memory.contracts import Degraded, Ok, StageResult
from graphmem.memory.prompts import PLANNER_SYSTEM_PROMPT
from graphmem.memory.schemas import SearchPlan

if TYPE_CHECKING:
    from graphmem.llm.model_client import ModelClient
    from graphmem.memory.schemas import Classification, Complexity

logger = structlog.get_logger()

_COMPLEXITY_PATTERNS: tuple[tuple[re.Pattern[str], Complexity], ...] = (
    (re.compile(r"simple[\s_-]*fact", re.IGNORECASE), "simple_fact"),
    (re.compile(r"entity[\s_-]*lookup", re.IGNORECASE), "entity_lookup"),
    (re.compile(r"rule\s*/\s*process|rule[\s_-]*process", re.IGNORECASE), "rule_process"),
    (re.compile(r"multi[\s_-]*part", re.IGNORECASE), "multi_part"),
)


def detect_complexity(text: str) -> Complexity | None:
    """Return the complexity label mentioned first in the plan text."""
    first: tuple[int, Complexity] | None = None
    for pattern, label in _COMPLEXITY_PATTERNS:
        match = pattern.search(text)
        if match and (first is None or match.start() < first[0]):
            first = (match.start(), label)
    return first[1] if first else None


def _describe(classification: Classification) -> str:
    entities = ", ".join(f"{e.name} ({e.type})" for e in classification.entities) or "none"
    return (
        f"Entities mentioned: {entities}\n"
        f"Concepts: {', '.join(classification.concepts) or 'none'}\n"
        f"Intents: {', '.join(classification.intents) or 'none'}"
    )


class SearchPlanner:
    def __init__(self, model_client: ModelClient, *, model: str, temperature: float = 0.2) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def plan(self, message: str, classification: Classification) -> StageResult[SearchPlan]:
        user_content = (
            f'Query: "{message}"\n{_describe(classification)}\n\n'
            "How should the memory graph be searched for this? Think about the "
            "associations a person would make, then give the search plan."
        )
        try:
            text = await self._model_client.chat(
                [
                    {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                self._model,
                self._temperature,
                tag="plan",
            )
        except LLMError as e:
            logger.warning("search_plan_degraded", error=str(e))
            return Degraded(SearchPlan(), reason=f"planner: {e}")
        except Exception as e:
            logger.exception("search_plan_failed")
            return Degraded(SearchPlan(), reason=f"planner: {e}")

        guidance = (text or "").strip()
        if not guidance:
            logger.warning("search_plan_degraded", error="empty response")
            return Degraded(SearchPlan(), reason="planner: empty response")

        plan = SearchPlan(complexity=detect_complexity(guidance), guidance=guidance)
        logger.info("search_planned", complexity=plan.complexity, chars=len(guidance))
        return Ok(plan)
