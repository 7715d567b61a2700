"""L1 classifier: extracts entities, facts and intents and picks memory operations."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

import structlog

from graphmem.infra.errors import LLMError
from graphmem.memory.contracts import Degraded, Ok, StageResult
from graphmem.memory.prompts import CLASSIFY_SYSTEM_PROMPT
from graphmem.memory.schemas import Classification, parse_model_output

if TYPE_CHECKING:
    from graphmem.llm.model_client import ModelClient

logger = structlog.get_logger()

_ABBREVIATIONS = re.compile(
    r"\b(?:Mr|Mrs|Ms|Dr|Sr|Jr|Prof|Inc|Ltd|Corp|etc|vs|approx|dept|govt|e\.g|i\.e)\.\s"
)
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[A-Z\"'(])")


def split_sentences(text: str) -> list[str]:
    """Split on sentence punctuation followed by a capital, keeping abbreviations intact."""
    protected: list[str] = []

    def _protect(match: re.Match[str]) -> str:
        protected.append(match.group(0).rstrip())
        return f"\x00{len(protected) - 1}\x00 "

    safe = _ABBREVIATIONS.sub(_protect, text)
    parts = []
    for part in _SENTENCE_BREAK.split(safe):
        for i, original in enumerate(protected):
            part = part.replace(f"\x00{i}\x00", original)
        part = part.strip()
        if part:
            parts.append(part)
    return parts or [text]


class Classifier:
    def __init__(
        self,
        model_client: ModelClient,
        *,
        model: str,
        temperature: float = 0.1,
        retry_temperature: float = 0.3,
    ) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature
        self._retry_temperature = retry_temperature

    async def classify(
        self, message: str, *, context: str | None = None
    ) -> tuple[StageResult[Classification], str]:
        """Classify a message. Returns (stage result, raw model output).

        Multi-sentence messages are classified per sentence in parallel, each
        call seeing the full message for reference resolution, and merged.
        ``context`` (e.g. the previous assistant reply) is only used to resolve
        pronouns. Never raises: failures yield Degraded(empty Classification).
        """
        prefix = ""
        if context:
            prefix = (
                "[Conversation context for resolving references only. "
                f"Do not extract from it]\n{context}\n\n"
            )
        sentences = split_sentences(message)

        if len(sentences) <= 1:
            results = [await self._classify_one(message, None, prefix)]
        else:
            results = await asyncio.gather(
                *(self._classify_one(s, message, prefix) for s in sentences)
            )

        parsed = [r for r, _, _ in results if r is not None]
        if len(results) == 1:
            raw = results[0][1]
        else:
            raw = "\n".join(f"[s{i + 1}] {text}" for i, (_, text, _) in enumerate(results))

        if not parsed:
            reason = next(err for _, _, err in results if err)
            logger.warning("classification_degraded", sentences=len(sentences), reason=reason)
            return Degraded(Classification(), reason=f"classifier: {reason}"), raw

        merged = parsed[0] if len(parsed) == 1 else Classification.merge(parsed)
        logger.info(
            "classified",
            sentences=len(sentences),
            entities=len(merged.entities),
            intents=merged.intents,
            retrieve=merged.operations.retrieve,
            store=merged.operations.store,
        )
        return Ok(merged), raw

    async def _classify_one(
        self, sentence: str, full_message: str | None, prefix: str
    ) -> tuple[Classification | None, str, str | None]:
        """Returns (classification | None, raw output, error | None)."""
        if full_message and full_message != sentence:
            content = (
                f'Full message (for reference resolution):\n"{full_message}"\n\n'
                f'Classify THIS sentence:\n"{sentence}"'
            )
        else:
            content = sentence
        messages = [
            {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
            {"role": "user", "content": prefix + content},
        ]

        raw, err = "", None
        for temperature in (self._temperature, self._retry_temperature):
            try:
                raw = await self._model_client.chat(
                    messages, self._model, temperature, tag="classify"
                )
            except LLMError as e:
                logger.warning("classify_call_failed", error=str(e))
                return None, raw, f"completion failed: {e}"
            result, err = parse_model_output(Classification, raw)
            if result is not None:
                return result, raw, None
            logger.warning("classify_parse_failed", error=err, temperature=temperature)
        return None, raw, err
