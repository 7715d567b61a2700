"""Storage pipeline: extract instructions, filter, store loop, then force-store.

Stages run strictly in sequence. Force-store observes the final state of the
store loop, so every approved item ends up persisted even when the model
skipped it.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING

import structlog

from graphmem.constants import DEFAULT_INSTRUCTION_SCOPE, DEFAULT_PLAN_SCOPE
from graphmem.memory.contracts import StoreOutcome
from graphmem.memory.extraction import combine_items
from graphmem.memory.prompts import STORE_SYSTEM_PROMPT
from graphmem.memory.tool_loop import ToolCall, ToolTurn, execute_tool
from graphmem.tools.context import ToolContext

if TYPE_CHECKING:
    from graphmem.graph.store import GraphStore
    from graphmem.memory.extraction import InstructionExtractor, StorageFilter
    from graphmem.memory.schemas import Classification, StoreItem
    from graphmem.memory.tool_loop import ToolLoop
    from graphmem.tools.base import BaseTool

logger = structlog.get_logger()

_WRITE_TOOLS = ("store_memory", "supersede_memory")


def should_store(classification: Classification) -> bool:
    """Storage runs only for messages with content that asked for or carries storable items."""
    if not classification.has_content:
        return False
    return bool(
        classification.operations.store
        or classification.implied_facts
        or classification.events
        or classification.plans
        or classification.opinions
        or "instruction" in classification.intents
    )


def _item_label(item: StoreItem) -> str:
    label = item.type.capitalize()
    if item.subtype:
        label += f" ({item.subtype})"
    line = f"{label}: {item.content}"
    if item.valid_from:
        line += f" [valid_from: {item.valid_from}]"
    if item.scope is not None:
        line += f" [scope: {item.scope:g}]"
    return line


def is_persisted(item: StoreItem, stored_contents: list[str], match_chars: int) -> bool:
    """Prefix containment either way on lowercased content."""
    key = item.content.lower()[: match_chars * 2]
    for stored in stored_contents:
        if key[:match_chars] in stored or stored[:match_chars] in key:
            return True
    return False


class StorageOrchestrator:
    def __init__(
        self,
        store: GraphStore,
        *,
        extractor: InstructionExtractor,
        storage_filter: StorageFilter,
        loop: ToolLoop,
        store_tool: BaseTool,
        max_turns: int = 8,
        match_chars: int = 30,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._filter = storage_filter
        self._loop = loop
        self._store_tool = store_tool
        self._max_turns = max_turns
        self._match_chars = match_chars

    async def run(
        self,
        message: str,
        classification: Classification,
        *,
        context: ToolContext | None = None,
    ) -> StoreOutcome:
        context = context or ToolContext()
        outcome = StoreOutcome()

        start = time.monotonic()
        extraction = await self._extractor.extract(message)
        outcome.timing["extract_s"] = round(time.monotonic() - start, 3)
        if extraction.degraded:
            outcome.degraded.append(extraction.reason)

        start = time.monotonic()
        decision = await self._filter.decide(message, classification, extraction.value)
        outcome.timing["filter_s"] = round(time.monotonic() - start, 3)
        if decision.degraded:
            outcome.degraded.append(decision.reason)
        outcome.skip_reason = decision.value.skip_reason

        items = combine_items(extraction.value, decision.value)
        if not items:
            logger.info("storage_skipped", reason=outcome.skip_reason)
            return outcome

        start = time.monotonic()
        user_content = (
            f'User said: "{message}"\n\n'
            f"Entities to link: {json.dumps(classification.entity_names)}\n"
            "Items to store:\n"
            + "\n".join(f"- {_item_label(item)}" for item in items)
            + "\n\nSearch for the entities to get their ids, then store each item "
            'with store_memory. Call "done" when finished.'
        )
        loop_outcome = await self._loop.run(
            STORE_SYSTEM_PROMPT.format(max_turns=self._max_turns),
            user_content,
            context=context,
        )
        outcome.turns.extend(loop_outcome.turns)
        outcome.stored.extend(loop_outcome.stored)
        outcome.timing["store_s"] = round(time.monotonic() - start, 3)
        if loop_outcome.error:
            outcome.degraded.append(f"store loop: {loop_outcome.error}")

        start = time.monotonic()
        await self._force_store(items, outcome, context)
        outcome.timing["force_store_s"] = round(time.monotonic() - start, 3)

        logger.info(
            "storage_finished",
            items=len(items),
            stored=len(outcome.stored),
            forced=len(outcome.forced),
            stop_reason=loop_outcome.stop_reason.value,
        )
        return outcome

    async def _force_store(
        self, items: list[StoreItem], outcome: StoreOutcome, context: ToolContext
    ) -> None:
        stored_contents = [ref.content.lower() for ref in outcome.stored]
        for turn in outcome.turns:
            if turn.call.name in _WRITE_TOOLS and not turn.outcome.error:
                text = turn.call.arguments.get("content") or turn.call.arguments.get("new_content")
                if isinstance(text, str) and text.strip():
                    stored_contents.append(text.lower())

        missed = [i for i in items if not is_persisted(i, stored_contents, self._match_chars)]
        if not missed:
            return

        entity_ids = list(
            dict.fromkeys(
                ref.node_id
                for turn in outcome.turns
                if turn.call.name == "search_entity"
                for ref in turn.outcome.refs
            )
        )
        entities = await self._store.get_nodes(entity_ids)

        for n, item in enumerate(missed, start=1):
            lowered = item.content.lower()
            args: dict = {
                "type": item.type,
                "subtype": item.subtype,
                "content": item.content,
                "entity_ids": [
                    e.id for e in entities.values() if e.content and e.content.lower() in lowered
                ],
            }
            if item.salience is not None:
                args["salience"] = item.salience
            if item.type == "instruction":
                args["scope"] = item.scope if item.scope is not None else DEFAULT_INSTRUCTION_SCOPE
            elif item.type == "plan":
                args["scope"] = item.scope if item.scope is not None else DEFAULT_PLAN_SCOPE
            elif item.scope is not None:
                args["scope"] = item.scope
            if item.valid_from:
                args["valid_from"] = item.valid_from

            call = ToolCall(id=f"force-{n}", name="store_memory", arguments=args)
            result = await execute_tool(self._store_tool, call, context)
            outcome.turns.append(
                ToolTurn(
                    call=call,
                    outcome=result,
                    reasoning="force-store",
                )
            )
            if result.error:
                logger.warning("force_store_failed", content=item.content[:80], error=result.error)
                outcome.degraded.append(f"force-store: {result.error}")
                continue
            outcome.forced.extend(result.stored)
            logger.info("force_stored", node_type=item.type, content=item.content[:80])
