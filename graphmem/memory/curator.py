"""Per-section curation: the model copies forward only the lines that help."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from graphmem.constants import NO_RELEVANT_RECORDS
from graphmem.infra.errors import LLMError
from graphmem.llm.json_output import strip_fences
from graphmem.memory.assembler import ContextSections
from graphmem.memory.contracts import Degraded, Ok, StageResult
from graphmem.memory.prompts import CURATION_SYSTEM_PROMPT

if TYPE_CHECKING:
    from graphmem.llm.model_client import ModelClient

logger = structlog.get_logger()


def keep_verbatim(output: str, candidates: list[str]) -> list[str]:
    """Lines of output that occur verbatim inside some candidate line."""
    kept = []
    for line in output.splitlines():
        line = line.rstrip()
        if not line.strip():
            continue
        if any(line in candidate for candidate in candidates):
            kept.append(line)
    return kept


class SectionCurator:
    def __init__(self, model_client: ModelClient, *, model: str, temperature: float = 0.0) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def curate(self, query: str, sections: ContextSections) -> StageResult[ContextSections]:
        """Curate every non-empty section in parallel.

        A failed call keeps that section's raw lines, so a model outage never
        loses context. Output lines not found in the section's candidates are
        dropped.
        """
        names = sections.non_empty()
        if not names:
            return Ok(ContextSections())

        results = await asyncio.gather(
            *(self._curate_section(query, name, sections.lines(name)) for name in names)
        )

        curated = ContextSections()
        failures: list[str] = []
        for name, (lines, error) in zip(names, results):
            curated.sections[name] = lines
            if error:
                failures.append(f"{name}: {error}")

        logger.info(
            "context_curated",
            sections=len(names),
            kept={name: len(curated.lines(name)) for name in names},
            fallbacks=len(failures),
        )
        if failures:
            return Degraded(curated, reason="curation fell back to raw for " + "; ".join(failures))
        return Ok(curated)

    async def _curate_section(
        self, query: str, name: str, candidates: list[str]
    ) -> tuple[list[str], str | None]:
        """Returns (kept lines, error | None). On error the raw lines are kept."""
        body = "\n".join(candidates)
        try:
            raw = await self._model_client.chat(
                [
                    {"role": "system", "content": CURATION_SYSTEM_PROMPT},
                    {"role": "user", "content": f'Query: "{query}"\n\n{name}:\n{body}'},
                ],
                self._model,
                self._temperature,
                tag="curate",
            )
        except LLMError as e:
            logger.warning("curation_section_failed", section=name, error=str(e))
            return list(candidates), str(e)

        text = strip_fences(raw or "").strip()
        if not text or text == NO_RELEVANT_RECORDS:
            return [], None

        kept = keep_verbatim(text, candidates)
        if not kept:
            logger.warning("curation_output_unverifiable", section=name, chars=len(text))
            return list(candidates), "no verbatim lines in model output"
        return kept, None
