"""Tests for the bounded ToolLoop state machine and execute_tool."""

from __future__ import annotations

import asyncio

import pytest

from graphmem.infra.errors import LLMError, StoreUnavailableError
from graphmem.memory.tool_loop import StopReason, ToolCall, ToolLoop, execute_tool
from graphmem.tools.base import BaseTool, ToolOutcome
from graphmem.tools.builtins.done import DoneTool
from graphmem.tools.context import ToolContext
from graphmem.tools.registry import ToolRegistry
from tests.fakes import ScriptedModelClient, reply, tool_call


class EchoTool(BaseTool):
    """Test tool that echoes its arguments."""

    def __init__(self, text_size: int = 0) -> None:
        self.seen: list[dict] = []
        self._text_size = text_size

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echo arguments back"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        self.seen.append(arguments)
        text = "x" * self._text_size if self._text_size else f"echo: {arguments.get('text', '')}"
        return ToolOutcome(text=text)


class FailingTool(BaseTool):
    """Test tool that always raises."""

    def __init__(self, exc: Exception | None = None) -> None:
        self._exc = exc or RuntimeError("boom")

    @property
    def name(self) -> str:
        return "failing_tool"

    @property
    def description(self) -> str:
        return "Always fails"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        raise self._exc


class SlowTool(EchoTool):
    @property
    def name(self) -> str:
        return "slow"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> ToolOutcome:
        await asyncio.sleep(5)
        return ToolOutcome(text="late")


def _registry(*tools: BaseTool) -> ToolRegistry:
    registry = ToolRegistry("test")
    for tool in tools:
        registry.register(tool)
    registry.register(DoneTool("Finish."))
    return registry


def _loop(client, registry, **kwargs) -> ToolLoop:
    return ToolLoop(client, registry, model="test-model", tag="loop", **kwargs)


class TestTerminalTransitions:
    @pytest.mark.asyncio
    async def test_done_stops_loop(self) -> None:
        echo = EchoTool()
        client = ScriptedModelClient(
            completions={
                "loop": [
                    reply(tool_call("echo", {"text": "hi"}), content="looking"),
                    reply(tool_call("done")),
                ]
            }
        )
        outcome = await _loop(client, _registry(echo)).run("sys", "user")

        assert outcome.stop_reason is StopReason.done
        assert outcome.iterations == 2
        assert [t.call.name for t in outcome.turns] == ["echo"]
        assert outcome.turns[0].reasoning == "looking"
        assert echo.seen == [{"text": "hi"}]

    @pytest.mark.asyncio
    async def test_iteration_cap(self) -> None:
        client = ScriptedModelClient(
            completions={"loop": lambda messages: reply(tool_call("echo", {"text": "again"}))}
        )
        outcome = await _loop(client, _registry(EchoTool()), max_iterations=3).run("s", "u")

        assert outcome.stop_reason is StopReason.iteration_cap
        assert outcome.iterations == 3
        assert len(outcome.turns) == 3
        assert client.tags().count("loop") == 3

    @pytest.mark.asyncio
    async def test_unknown_tool_ends_loop(self) -> None:
        client = ScriptedModelClient(completions={"loop": [reply(tool_call("rm_rf"))]})
        outcome = await _loop(client, _registry(EchoTool())).run("s", "u")

        assert outcome.stop_reason is StopReason.invalid_tool
        assert outcome.turns == []

    @pytest.mark.asyncio
    async def test_nudges_once_then_stops(self) -> None:
        client = ScriptedModelClient(completions={"loop": [reply(content="no"), reply(content="no")]})
        outcome = await _loop(client, _registry(EchoTool()), nudge="Use a tool.").run("s", "u")

        assert outcome.stop_reason is StopReason.no_tool_call
        assert outcome.iterations == 2
        nudged_messages = client.calls[1][1]
        assert nudged_messages[-1] == {"role": "user", "content": "Use a tool."}

    @pytest.mark.asyncio
    async def test_nudge_recovers(self) -> None:
        echo = EchoTool()
        client = ScriptedModelClient(
            completions={
                "loop": [reply(), reply(tool_call("echo", {"text": "ok"})), reply(tool_call("done"))]
            }
        )
        outcome = await _loop(client, _registry(echo), nudge="Use a tool.").run("s", "u")
        assert outcome.stop_reason is StopReason.done
        assert len(outcome.turns) == 1

    @pytest.mark.asyncio
    async def test_no_nudge_without_prompt(self) -> None:
        client = ScriptedModelClient(completions={"loop": [reply(content="done thinking")]})
        outcome = await _loop(client, _registry(EchoTool())).run("s", "u")
        assert outcome.stop_reason is StopReason.no_tool_call
        assert outcome.iterations == 1

    @pytest.mark.asyncio
    async def test_consecutive_errors(self) -> None:
        client = ScriptedModelClient(
            completions={"loop": lambda messages: reply(tool_call("failing_tool"))}
        )
        outcome = await _loop(
            client, _registry(FailingTool()), max_consecutive_errors=2
        ).run("s", "u")

        assert outcome.stop_reason is StopReason.consecutive_errors
        assert len(outcome.turns) == 2
        assert outcome.error == "2 consecutive tool errors"

    @pytest.mark.asyncio
    async def test_success_resets_error_count(self) -> None:
        client = ScriptedModelClient(
            completions={
                "loop": [
                    reply(tool_call("failing_tool")),
                    reply(tool_call("echo", {"text": "a"})),
                    reply(tool_call("failing_tool")),
                    reply(tool_call("done")),
                ]
            }
        )
        outcome = await _loop(
            client, _registry(EchoTool(), FailingTool()), max_consecutive_errors=2
        ).run("s", "u")
        assert outcome.stop_reason is StopReason.done
        assert len(outcome.turns) == 3

    @pytest.mark.asyncio
    async def test_model_error(self) -> None:
        client = ScriptedModelClient(completions={"loop": [LLMError("503 from provider")]})
        outcome = await _loop(client, _registry(EchoTool())).run("s", "u")
        assert outcome.stop_reason is StopReason.model_error
        assert "503" in outcome.error

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        client = ScriptedModelClient(completions={"loop": [reply(tool_call("slow"))]})
        outcome = await _loop(client, _registry(SlowTool()), timeout_s=0.05).run("s", "u")
        assert outcome.stop_reason is StopReason.timeout
        assert outcome.error is not None


class TestResultsFedBack:
    @pytest.mark.asyncio
    async def test_long_result_truncated(self) -> None:
        client = ScriptedModelClient(
            completions={"loop": [reply(tool_call("echo", call_id="c1")), reply(tool_call("done"))]}
        )
        await _loop(client, _registry(EchoTool(text_size=50)), max_result_chars=10).run("s", "u")

        second_call_messages = client.calls[1][1]
        tool_message = next(m for m in second_call_messages if m["role"] == "tool")
        assert tool_message["tool_call_id"] == "c1"
        assert tool_message["content"] == "x" * 10 + "\n...(truncated)"

    @pytest.mark.asyncio
    async def test_bad_json_arguments_become_tool_error(self) -> None:
        echo = EchoTool()
        client = ScriptedModelClient(
            completions={"loop": [reply(tool_call("echo", "{not json")), reply(tool_call("done"))]}
        )
        outcome = await _loop(client, _registry(echo)).run("s", "u")

        assert echo.seen == []
        assert outcome.turns[0].outcome.error.startswith("Invalid JSON arguments")


class TestExecuteTool:
    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self) -> None:
        call = ToolCall(id="1", name="failing_tool", arguments={})
        outcome = await execute_tool(FailingTool(), call, ToolContext())
        assert outcome.error == "Tool failing_tool failed"

    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self) -> None:
        call = ToolCall(id="1", name="failing_tool", arguments={})
        with pytest.raises(StoreUnavailableError):
            await execute_tool(
                FailingTool(StoreUnavailableError("disk gone")), call, ToolContext()
            )
