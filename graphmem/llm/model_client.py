from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from openai import (
    NOT_GIVEN,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from graphmem.infra.errors import LLMError

if TYPE_CHECKING:
    from openai.types.chat import ChatCompletionMessage

    from graphmem.llm.usage import UsageTracker

logger = structlog.get_logger()

T = TypeVar("T")

RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError)


class ModelClient(ABC):
    """Abstract base class for completion model clients."""

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        *,
        tag: str = "chat",
    ) -> str:
        """Send messages and return the complete response content."""
        ...

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
        tag: str = "chat_completion",
    ) -> ChatCompletionMessage:
        """Non-streaming call. Returns full message (may contain content or tool_calls)."""
        ...


def _first_choice(response, *, context: str = ""):
    """Extract first choice from response, raising LLMError if empty."""
    if not response.choices:
        raise LLMError(f"Empty choices from provider ({context})")
    return response.choices[0]


async def retry_call(
    coro_factory: Callable[[], Coroutine[Any, Any, T]],
    *,
    max_retries: int,
    base_delay: float,
    context: str = "",
    error_cls: type[Exception] = LLMError,
) -> T:
    """Execute an async call with exponential backoff retry.

    Retries on: APIConnectionError, APITimeoutError, RateLimitError.
    Non-retryable API errors are wrapped in error_cls.
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except RETRYABLE_ERRORS as e:
            if attempt == max_retries:
                raise error_cls(
                    f"API call failed after {max_retries + 1} attempts: {e}"
                ) from e
            delay = base_delay * (2**attempt) + random.uniform(0, 0.5)
            logger.warning(
                "llm_retry",
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=str(e),
                context=context,
            )
            await asyncio.sleep(delay)
        except APIStatusError as e:
            raise error_cls(f"API error: {e.status_code} {e.message}") from e
    # Unreachable, but satisfies type checker
    raise error_cls("Retry loop exhausted")  # pragma: no cover


class OpenAICompatModelClient(ModelClient):
    """Model client using the OpenAI SDK.

    Works with OpenAI, OpenRouter, and Ollama via OpenAI-compatible endpoints.
    Includes exponential backoff retry for transient errors and records token
    usage per tag when a tracker is supplied.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        usage: UsageTracker | None = None,
    ) -> None:
        # SDK-level retries disabled; retry_call owns the policy.
        self._client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._usage = usage

    async def _retry_call(
        self,
        coro_factory: Callable[[], Coroutine[Any, Any, T]],
        *,
        context: str = "",
    ) -> T:
        return await retry_call(
            coro_factory,
            max_retries=self._max_retries,
            base_delay=self._base_delay,
            context=context,
        )

    def _track(self, response, model: str, tag: str) -> None:
        usage = getattr(response, "usage", None)
        if self._usage is None or usage is None:
            return
        self._usage.record(
            tag,
            model,
            input_tokens=usage.prompt_tokens or 0,
            output_tokens=usage.completion_tokens or 0,
        )

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        *,
        tag: str = "chat",
    ) -> str:
        """Send messages and return the complete response content."""
        logger.debug("chat_request", model=model, message_count=len(messages), tag=tag)
        response = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=messages,
                **({"temperature": temperature} if temperature is not None else {}),
            ),
            context=tag,
        )
        self._track(response, model, tag)
        content = _first_choice(response, context=tag).message.content or ""
        logger.debug("chat_response", chars=len(content), tag=tag)
        return content

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
        tag: str = "chat_completion",
    ) -> ChatCompletionMessage:
        """Non-streaming call returning full message with potential tool_calls."""
        logger.debug(
            "chat_completion_request",
            model=model,
            message_count=len(messages),
            tool_count=len(tools) if tools else 0,
            tag=tag,
        )
        response = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=messages,
                tools=tools if tools else NOT_GIVEN,
                **({"temperature": temperature} if temperature is not None else {}),
            ),
            context=tag,
        )
        self._track(response, model, tag)
        message = _first_choice(response, context=tag).message
        logger.debug(
            "chat_completion_response",
            has_content=bool(message.content),
            tool_calls=len(message.tool_calls) if message.tool_calls else 0,
            tag=tag,
        )
        return message

    async def close(self) -> None:
        await self._client.close()
