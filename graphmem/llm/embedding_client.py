"""Embedding client over an OpenAI-compatible /embeddings endpoint."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog
from openai import NOT_GIVEN, AsyncOpenAI

from graphmem.infra.errors import EmbeddingError
from graphmem.llm.model_client import retry_call

if TYPE_CHECKING:
    from graphmem.llm.usage import UsageTracker

logger = structlog.get_logger()


class EmbeddingClient(ABC):
    """Abstract text → vector client."""

    @abstractmethod
    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in order. Empty strings map to zero vectors."""
        ...

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]


class OpenAICompatEmbeddingClient(EmbeddingClient):
    """Batched embedding calls with the shared retry policy."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        *,
        dimensions: int | None = None,
        batch_size: int = 128,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        usage: UsageTracker | None = None,
    ) -> None:
        self._client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )
        self._model = model
        self._dimensions = dimensions
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._usage = usage

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        indexed = [(i, t) for i, t in enumerate(texts) if t and t.strip()]
        results: list[list[float] | None] = [None] * len(texts)

        for start in range(0, len(indexed), self._batch_size):
            batch = indexed[start : start + self._batch_size]
            vectors = await self._embed_batch([t for _, t in batch])
            for (i, _), vector in zip(batch, vectors, strict=True):
                results[i] = vector

        width = len(next((v for v in results if v is not None), [])) or (self._dimensions or 0)
        return [v if v is not None else [0.0] * width for v in results]

    async def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        response = await retry_call(
            lambda: self._client.embeddings.create(
                model=self._model,
                input=batch,
                dimensions=self._dimensions if self._dimensions else NOT_GIVEN,
            ),
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            context="embedding",
            error_cls=EmbeddingError,
        )
        if len(response.data) != len(batch):
            raise EmbeddingError(
                f"Embedding count mismatch: sent {len(batch)}, got {len(response.data)}"
            )
        if self._usage is not None and response.usage is not None:
            self._usage.record(
                "embedding", self._model, response.usage.prompt_tokens or 0, embedding=True
            )
        logger.debug("embedding_batch", size=len(batch), model=self._model)
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]

    async def close(self) -> None:
        await self._client.close()
