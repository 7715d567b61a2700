"""Bounded agentic tool loop.

The loop is an explicit state machine:

    AWAIT_MODEL --(tool calls)--> EXECUTE --(results fed back)--> AWAIT_MODEL
         |                           |
         +--------> FINISHED <-------+

The capability set (a ToolRegistry) is the transition table from tool name to
handler. Terminal transitions: the ``done`` tool, a reply without tool calls
once something ran, the iteration cap, an unknown tool, too many consecutive
tool errors, the loop timeout, or a failed completion call.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from graphmem.infra.errors import LLMError, StoreUnavailableError
from graphmem.tools.base import ToolOutcome
from graphmem.tools.context import ToolContext

if TYPE_CHECKING:
    from graphmem.graph.types import NodeRef, ScoredRef
    from graphmem.llm.model_client import ModelClient
    from graphmem.tools.base import BaseTool
    from graphmem.tools.registry import ToolRegistry

logger = structlog.get_logger()


class LoopState(StrEnum):
    AWAIT_MODEL = "await_model"
    EXECUTE = "execute"
    FINISHED = "finished"


class StopReason(StrEnum):
    done = "done"
    no_tool_call = "no_tool_call"
    iteration_cap = "iteration_cap"
    invalid_tool = "invalid_tool"
    consecutive_errors = "consecutive_errors"
    timeout = "timeout"
    model_error = "model_error"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    parse_error: str | None = None


@dataclass
class ToolTurn:
    """One executed tool call and its structured outcome."""

    call: ToolCall
    outcome: ToolOutcome
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.call.name,
            "arguments": self.call.arguments,
            "reasoning": self.reasoning,
            "result": self.outcome.text,
            "error": self.outcome.error,
            "refs": [{"node_id": r.node_id, "score": r.score} for r in self.outcome.refs],
            "stored": [r.id for r in self.outcome.stored],
        }


@dataclass
class LoopOutcome:
    turns: list[ToolTurn]
    stop_reason: StopReason
    iterations: int = 0
    error: str | None = None
    elapsed_s: float = 0.0

    @property
    def refs(self) -> list[ScoredRef]:
        return [ref for turn in self.turns for ref in turn.outcome.refs]

    @property
    def stored(self) -> list[NodeRef]:
        return [ref for turn in self.turns for ref in turn.outcome.stored]


@dataclass
class _Run:
    """Mutable state of one loop execution."""

    messages: list[dict[str, Any]]
    context: ToolContext
    turns: list[ToolTurn] = field(default_factory=list)
    pending: list[ToolCall] = field(default_factory=list)
    reasoning: str = ""
    iterations: int = 0
    consecutive_errors: int = 0
    nudged: bool = False
    stop_reason: StopReason | None = None
    error: str | None = None

    def stop(self, reason: StopReason, error: str | None = None) -> LoopState:
        self.stop_reason = reason
        self.error = error
        return LoopState.FINISHED


def _safe_parse_args(raw: str | None) -> tuple[dict, str | None]:
    """Parse JSON tool call arguments. Returns (dict, error_message | None)."""
    if raw is None or raw == "":
        return {}, None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        return {}, f"JSON parse error: {e}"
    if not isinstance(parsed, dict):
        return {}, f"Expected dict, got {type(parsed).__name__}"
    return parsed, None


class ToolLoop:
    """Runs one capability set against the completion model until a terminal transition."""

    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        *,
        model: str,
        max_iterations: int = 8,
        max_consecutive_errors: int = 3,
        max_result_chars: int = 4000,
        timeout_s: float | None = None,
        temperature: float | None = None,
        nudge: str | None = None,
        tag: str = "tool_loop",
    ) -> None:
        self._model_client = model_client
        self._registry = registry
        self._model = model
        self._max_iterations = max_iterations
        self._max_consecutive_errors = max_consecutive_errors
        self._max_result_chars = max_result_chars
        self._timeout_s = timeout_s
        self._temperature = temperature
        self._nudge = nudge
        self._tag = tag
        self._transitions = {
            LoopState.AWAIT_MODEL: self._await_model,
            LoopState.EXECUTE: self._execute,
        }

    async def run(
        self,
        system_prompt: str,
        user_message: str,
        *,
        context: ToolContext | None = None,
    ) -> LoopOutcome:
        run = _Run(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            context=context or ToolContext(),
        )
        start = time.monotonic()
        try:
            if self._timeout_s is not None:
                await asyncio.wait_for(self._drive(run), timeout=self._timeout_s)
            else:
                await self._drive(run)
        except TimeoutError:
            run.stop(StopReason.timeout, error=f"tool loop exceeded {self._timeout_s}s")

        outcome = LoopOutcome(
            turns=run.turns,
            stop_reason=run.stop_reason or StopReason.done,
            iterations=run.iterations,
            error=run.error,
            elapsed_s=round(time.monotonic() - start, 3),
        )
        log = logger.warning if outcome.error else logger.info
        log(
            "tool_loop_finished",
            registry=self._registry.name,
            stop_reason=outcome.stop_reason.value,
            iterations=outcome.iterations,
            turns=len(outcome.turns),
            error=outcome.error,
            session_id=run.context.session_id,
        )
        return outcome

    async def _drive(self, run: _Run) -> None:
        state = LoopState.AWAIT_MODEL
        while state is not LoopState.FINISHED:
            state = await self._transitions[state](run)

    async def _await_model(self, run: _Run) -> LoopState:
        if run.iterations >= self._max_iterations:
            logger.warning(
                "max_tool_iterations", max=self._max_iterations, registry=self._registry.name
            )
            return run.stop(StopReason.iteration_cap)
        run.iterations += 1

        try:
            message = await self._model_client.chat_completion(
                run.messages,
                self._model,
                tools=self._registry.get_tools_schema(),
                temperature=self._temperature,
                tag=self._tag,
            )
        except LLMError as e:
            return run.stop(StopReason.model_error, error=str(e))

        tool_calls = message.tool_calls or []
        if not tool_calls:
            if not run.turns and not run.nudged and self._nudge:
                run.nudged = True
                run.messages.append({"role": "assistant", "content": message.content or ""})
                run.messages.append({"role": "user", "content": self._nudge})
                logger.info("tool_loop_nudged", registry=self._registry.name)
                return LoopState.AWAIT_MODEL
            return run.stop(StopReason.no_tool_call)

        run.pending = []
        for tc in tool_calls:
            arguments, parse_err = _safe_parse_args(tc.function.arguments)
            if parse_err:
                logger.warning(
                    "tool_call_args_parse_failed",
                    tool_name=tc.function.name,
                    error=parse_err,
                    raw_args=(tc.function.arguments or "")[:200],
                )
            run.pending.append(
                ToolCall(id=tc.id, name=tc.function.name, arguments=arguments, parse_error=parse_err)
            )
        run.reasoning = message.content or ""
        run.messages.append(
            {
                "role": "assistant",
                "content": message.content or "",
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in run.pending
                ],
            }
        )
        return LoopState.EXECUTE

    async def _execute(self, run: _Run) -> LoopState:
        for call in run.pending:
            tool = self._registry.get(call.name)
            if tool is None:
                logger.warning(
                    "unknown_tool", tool_name=call.name, registry=self._registry.name
                )
                return run.stop(StopReason.invalid_tool)
            if tool.terminal:
                return run.stop(StopReason.done)

            outcome = await execute_tool(tool, call, run.context)
            text = outcome.text or "(no results)"
            if len(text) > self._max_result_chars:
                text = text[: self._max_result_chars] + "\n...(truncated)"
            run.messages.append({"role": "tool", "tool_call_id": call.id, "content": text})
            run.turns.append(ToolTurn(call=call, outcome=outcome, reasoning=run.reasoning))

            if outcome.error:
                run.consecutive_errors += 1
                if run.consecutive_errors >= self._max_consecutive_errors:
                    return run.stop(
                        StopReason.consecutive_errors,
                        error=f"{run.consecutive_errors} consecutive tool errors",
                    )
            else:
                run.consecutive_errors = 0

        run.pending = []
        return LoopState.AWAIT_MODEL


async def execute_tool(tool: BaseTool, call: ToolCall, context: ToolContext) -> ToolOutcome:
    """Execute one call. Returns an error outcome instead of raising, except
    for store-layer failures, which abort the calling stage."""
    if call.parse_error:
        return ToolOutcome.failure(f"Invalid JSON arguments: {call.parse_error}")
    try:
        outcome = await tool.execute(call.arguments, context)
    except StoreUnavailableError:
        raise
    except Exception:
        logger.exception("tool_execution_failed", tool_name=call.name)
        return ToolOutcome.failure(f"Tool {call.name} failed")
    logger.info(
        "tool_executed",
        tool_name=call.name,
        refs=len(outcome.refs),
        stored=len(outcome.stored),
        error=outcome.error,
    )
    return outcome
