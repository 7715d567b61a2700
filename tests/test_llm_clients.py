"""Tests for the OpenAI-compatible completion and embedding clients.

Covers: empty choices raise LLMError, usage is recorded per tag,
        retry_call wraps status errors, embeddings keep input order and
        map blank inputs to zero vectors.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError, BadRequestError

from graphmem.infra.errors import EmbeddingError, LLMError
from graphmem.llm.embedding_client import OpenAICompatEmbeddingClient
from graphmem.llm.model_client import OpenAICompatModelClient, retry_call
from graphmem.llm.usage import UsageTracker

_REQUEST = httpx.Request("POST", "https://example.invalid/v1/chat/completions")


def _make_response(*, choices=None, usage=None):
    resp = MagicMock()
    resp.choices = choices if choices is not None else []
    resp.usage = usage
    return resp


def _make_choice(content="hello"):
    choice = MagicMock()
    choice.message.content = content
    choice.message.tool_calls = None
    return choice


@pytest.fixture()
def usage():
    return UsageTracker()


@pytest.fixture()
def client(usage):
    return OpenAICompatModelClient(api_key="test-key", max_retries=0, usage=usage)


class TestModelClient:
    @pytest.mark.asyncio()
    async def test_empty_choices_raises_llm_error(self, client):
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            return_value=_make_response(choices=[])
        )
        with pytest.raises(LLMError, match="Empty choices"):
            await client.chat([{"role": "user", "content": "hi"}], "m", tag="classify")

    @pytest.mark.asyncio()
    async def test_chat_records_usage(self, client, usage):
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            return_value=_make_response(
                choices=[_make_choice("world")],
                usage=SimpleNamespace(prompt_tokens=10, completion_tokens=4),
            )
        )
        result = await client.chat([{"role": "user", "content": "hi"}], "gpt-4o-mini", tag="plan")

        assert result == "world"
        assert usage.by_tag["plan"].calls == 1
        assert usage.by_tag["plan"].output_tokens == 4

    @pytest.mark.asyncio()
    async def test_chat_completion_returns_message(self, client):
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            return_value=_make_response(choices=[_make_choice("text")])
        )
        message = await client.chat_completion(
            [{"role": "user", "content": "hi"}], "m", tools=[{"type": "function"}]
        )
        assert message.content == "text"


class TestRetryCall:
    @pytest.mark.asyncio()
    async def test_status_error_not_retried(self):
        calls = 0

        async def fail():
            nonlocal calls
            calls += 1
            raise BadRequestError(
                "bad", response=httpx.Response(400, request=_REQUEST), body=None
            )

        with pytest.raises(LLMError, match="API error: 400"):
            await retry_call(fail, max_retries=3, base_delay=0)
        assert calls == 1

    @pytest.mark.asyncio()
    async def test_transient_errors_retried_then_wrapped(self):
        calls = 0

        async def fail():
            nonlocal calls
            calls += 1
            raise APIConnectionError(request=_REQUEST)

        with pytest.raises(EmbeddingError, match="after 2 attempts"):
            await retry_call(fail, max_retries=1, base_delay=0, error_cls=EmbeddingError)
        assert calls == 2


class TestEmbeddingClient:
    @pytest.mark.asyncio()
    async def test_order_and_blank_inputs(self, usage):
        client = OpenAICompatEmbeddingClient(
            api_key="k", model="text-embedding-3-small", max_retries=0, usage=usage
        )
        client._client = MagicMock()
        client._client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(
                data=[
                    SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                    SimpleNamespace(index=0, embedding=[1.0, 0.0]),
                ],
                usage=SimpleNamespace(prompt_tokens=3),
            )
        )

        vectors = await client.embed_many(["a", " ", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 0.0], [0.0, 1.0]]
        assert usage.by_tag["embedding"].embedding

    @pytest.mark.asyncio()
    async def test_count_mismatch(self):
        client = OpenAICompatEmbeddingClient(api_key="k", model="m", max_retries=0)
        client._client = MagicMock()
        client._client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[], usage=None)
        )
        with pytest.raises(EmbeddingError, match="count mismatch"):
            await client.embed_many(["a"])
