"""Debug traces: one JSON document per engine invocation, written only when enabled."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterable

    from graphmem.memory.tool_loop import ToolTurn

logger = structlog.get_logger()


@dataclass
class Trace:
    operation: str
    session_id: str | None
    prompt: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    path: str | None = None
    classification: dict[str, Any] | None = None
    classifier_raw: str | None = None
    search_plan: dict[str, Any] | None = None
    turns: list[dict[str, Any]] = field(default_factory=list)
    context: str = ""
    stored: list[dict[str, str]] = field(default_factory=list)
    contradictions: list[dict[str, str]] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    timing: dict[str, float] = field(default_factory=dict)
    usage: dict[str, Any] = field(default_factory=dict)

    def add_turns(self, pipeline: str, turns: Iterable[ToolTurn]) -> None:
        self.turns.extend({"pipeline": pipeline, **turn.to_dict()} for turn in turns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "session_id": self.session_id,
            "prompt": self.prompt,
            "started_at": self.started_at.isoformat(),
            "path": self.path,
            "classification": self.classification,
            "classifier_raw": self.classifier_raw,
            "search_plan": self.search_plan,
            "turns": self.turns,
            "context": self.context,
            "stored": self.stored,
            "contradictions": self.contradictions,
            "degraded": self.degraded,
            "timing": self.timing,
            "usage": self.usage,
        }


class TraceWriter:
    """Writes traces into a directory. A writer without a directory is a no-op."""

    def __init__(self, directory: Path | None) -> None:
        self._directory = Path(directory) if directory else None

    @property
    def enabled(self) -> bool:
        return self._directory is not None

    def write(self, trace: Trace) -> Path | None:
        if self._directory is None:
            return None
        stamp = trace.started_at.strftime("%Y%m%dT%H%M%S%f")
        target = self._directory / f"{stamp}-{trace.operation}-{uuid.uuid4().hex[:8]}.json"
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            target.write_text(
                json.dumps(trace.to_dict(), indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("trace_write_failed", path=str(target), error=str(e))
            return None
        return target
