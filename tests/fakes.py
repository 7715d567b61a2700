"""Deterministic stand-ins for the completion and embedding endpoints."""

from __future__ import annotations

import json
import re
import zlib
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

from graphmem.graph.store import stem_word
from graphmem.infra.errors import EmbeddingError
from graphmem.llm.embedding_client import EmbeddingClient
from graphmem.llm.model_client import ModelClient

DIMENSIONS = 256


class FakeEmbedder(EmbeddingClient):
    """Bag-of-stems hashing: texts sharing words get a positive cosine."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding endpoint down")
        vector = [0.0] * DIMENSIONS
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(stem_word(word).encode()) % DIMENSIONS] += 1.0
        return vector

    async def close(self) -> None:
        return None


def tool_call(name: str, arguments: dict | str | None = None, call_id: str | None = None):
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    return SimpleNamespace(
        id=call_id or f"call-{name}-{zlib.crc32(raw.encode()) & 0xFFFF}",
        function=SimpleNamespace(name=name, arguments=raw),
    )


def reply(*calls, content: str = "") -> SimpleNamespace:
    """A chat completion message, with or without tool calls."""
    return SimpleNamespace(content=content, tool_calls=list(calls) or None)


Script = list[Any] | Callable[[list[dict[str, Any]]], Any]


class ScriptedModelClient(ModelClient):
    """Replays scripted answers per call tag.

    A script is either a list consumed in order or a callable receiving the
    messages. Exception instances in a script are raised. Unscripted tags
    answer with an empty string (chat) or a message without tool calls.
    """

    def __init__(
        self,
        chat: dict[str, Script] | None = None,
        completions: dict[str, Script] | None = None,
    ) -> None:
        self.chat_scripts = {k: (list(v) if isinstance(v, list) else v) for k, v in (chat or {}).items()}
        self.completion_scripts = {
            k: (list(v) if isinstance(v, list) else v) for k, v in (completions or {}).items()
        }
        self.calls: list[tuple[str, list[dict[str, Any]]]] = []
        self.closed = False

    @staticmethod
    def _next(scripts: dict[str, Script], tag: str, messages: list[dict[str, Any]], default):
        script = scripts.get(tag)
        if script is None:
            return default
        if callable(script):
            answer = script(messages)
        elif script:
            answer = script.pop(0)
        else:
            answer = default
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def tags(self) -> list[str]:
        return [tag for tag, _ in self.calls]

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
        *,
        tag: str = "chat",
    ) -> str:
        self.calls.append((tag, messages))
        return self._next(self.chat_scripts, tag, messages, "")

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
        tag: str = "chat_completion",
    ):
        self.calls.append((tag, messages))
        return self._next(self.completion_scripts, tag, messages, reply())

    async def close(self) -> None:
        self.closed = True


def classification_json(**fields: Any) -> str:
    payload = {
        "entities": [],
        "implied_facts": [],
        "events": [],
        "plans": [],
        "opinions": [],
        "concepts": [],
        "implied_processes": [],
        "intents": [],
        "operations": {"retrieve": False, "store": False},
    }
    payload.update(fields)
    return json.dumps(payload)
