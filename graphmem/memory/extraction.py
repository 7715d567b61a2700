"""Pre-storage model stages: instruction extraction and the storage filter.

Both stages degrade to "nothing" on failure; storing nothing is always safe.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from graphmem.infra.errors import LLMError
from graphmem.memory.contracts import Degraded, Ok, StageResult
from graphmem.memory.prompts import (
    INSTRUCTION_EXTRACT_SYSTEM_PROMPT,
    STORAGE_FILTER_SYSTEM_PROMPT,
)
from graphmem.memory.schemas import (
    InstructionExtraction,
    StorageFilterDecision,
    StoreItem,
    parse_model_output,
)

if TYPE_CHECKING:
    from graphmem.llm.model_client import ModelClient
    from graphmem.memory.schemas import Classification, ExtractedInstruction

logger = structlog.get_logger()


def classified_items(message: str, classification: Classification) -> list[str]:
    """Labelled storable items from a classification, as shown to the filter."""
    items = [f"Fact: {f}" for f in classification.implied_facts]
    items += [f"Event: {e}" for e in classification.events]
    items += [f"Plan: {p}" for p in classification.plans]
    items += [f"Opinion: {o}" for o in classification.opinions]
    if "instruction" in classification.intents:
        items.append(f'Instruction (user\'s exact words): "{message}"')
    return items


class InstructionExtractor:
    def __init__(self, model_client: ModelClient, *, model: str, temperature: float = 0.1) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def extract(self, message: str) -> StageResult[list[ExtractedInstruction]]:
        try:
            raw = await self._model_client.chat(
                [
                    {"role": "system", "content": INSTRUCTION_EXTRACT_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f'User message: "{message}"\n\n'
                            "Extract any instructions, rules or procedures from this message."
                        ),
                    },
                ],
                self._model,
                self._temperature,
                tag="extract_instructions",
            )
        except LLMError as e:
            logger.warning("instruction_extract_degraded", error=str(e))
            return Degraded([], reason=f"instruction extractor: {e}")

        result, err = parse_model_output(InstructionExtraction, raw)
        if result is None:
            logger.warning("instruction_extract_degraded", error=err, raw=(raw or "")[:200])
            return Degraded([], reason=f"instruction extractor: {err}")

        logger.info("instructions_extracted", count=len(result.instructions))
        return Ok(result.instructions)


class StorageFilter:
    def __init__(self, model_client: ModelClient, *, model: str, temperature: float = 0.1) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def decide(
        self,
        message: str,
        classification: Classification,
        instructions: list[ExtractedInstruction],
    ) -> StageResult[StorageFilterDecision]:
        """Approve the non-instruction items worth keeping.

        Instruction-typed items are removed from the decision: the extracted
        instructions are stored on their own and take precedence.
        """
        items = classified_items(message, classification)
        if not items:
            return Ok(StorageFilterDecision(skip_reason="nothing extracted to evaluate"))

        handled = ""
        if instructions:
            handled = (
                "\nAlready handled as instructions (do not repeat them):\n"
                + "\n".join(f'- "{i.content}" -> instruction/{i.subtype}' for i in instructions)
                + "\n"
            )
        entities = ", ".join(f"{e.name} ({e.type})" for e in classification.entities) or "none"
        user_content = (
            f'User message: "{message}"\n\n'
            f"Extracted by classifier:\nEntities: {entities}\nItems:\n"
            + "\n".join(f"- {item}" for item in items)
            + f"\nIntents: {', '.join(classification.intents) or 'none'}\n"
            + handled
            + "\nWhat from this is worth storing as a permanent memory?"
        )

        try:
            raw = await self._model_client.chat(
                [
                    {"role": "system", "content": STORAGE_FILTER_SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                self._model,
                self._temperature,
                tag="storage_filter",
            )
        except LLMError as e:
            logger.warning("storage_filter_degraded", error=str(e))
            return Degraded(StorageFilterDecision(skip_reason=str(e)), reason=f"storage filter: {e}")

        decision, err = parse_model_output(StorageFilterDecision, raw)
        if decision is None:
            logger.warning("storage_filter_degraded", error=err, raw=(raw or "")[:200])
            return Degraded(
                StorageFilterDecision(skip_reason="unparseable decision, storing nothing"),
                reason=f"storage filter: {err}",
            )

        kept = [item for item in decision.store_items if item.type != "instruction"]
        logger.info(
            "storage_filtered",
            approved=len(kept),
            dropped_instructions=len(decision.store_items) - len(kept),
            skip_reason=decision.skip_reason[:200],
        )
        return Ok(StorageFilterDecision(store_items=kept, skip_reason=decision.skip_reason))


def combine_items(
    instructions: list[ExtractedInstruction], decision: StorageFilterDecision
) -> list[StoreItem]:
    """Extracted instructions first, then the filter's approved items."""
    items = [
        StoreItem(content=i.content, type="instruction", subtype=i.subtype, scope=i.scope)
        for i in instructions
    ]
    items.extend(item for item in decision.store_items if item.type != "instruction")
    return items
