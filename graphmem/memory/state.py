"""Conversation state: the last few turns of the current session, kept in one JSON file."""

from __future__ import annotations

import os
import re
import tempfile
import time
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger()

_ID_RE = re.compile(r"\s*\(id:\s*[^)]+\)")
_SCORE_RE = re.compile(r"\s*\[score:\s*[\d.]+\]")
_SALIENCE_RE = re.compile(r"\s*salience:\s*[\d.]+")


class ConversationTurn(BaseModel):
    prompt: str
    entities: list[str] = Field(default_factory=list)
    context_summary: str | None = None
    timestamp: float = Field(default_factory=time.time)


class ConversationState(BaseModel):
    session_id: str | None = None
    turns: list[ConversationTurn] = Field(default_factory=list)


def build_context_summary(
    context: str, *, max_lines: int = 3, max_chars: int = 400
) -> str | None:
    """Short digest of what memory returned, for resolving references next turn."""
    if not context:
        return None
    lines = []
    for line in context.splitlines():
        line = _SALIENCE_RE.sub("", _SCORE_RE.sub("", _ID_RE.sub("", line))).strip()
        if len(line) > 10:
            lines.append(line)
        if len(lines) >= max_lines:
            break
    return "; ".join(lines)[:max_chars] or None


class ConversationStateStore:
    """Reads and atomically rewrites the conversation state file.

    The file holds a single session. A different session id means the stored
    turns belong to another conversation and are ignored, then replaced on
    the next write. There is no time-based expiry.
    """

    def __init__(self, path: Path, *, max_turns: int = 5) -> None:
        self._path = Path(path)
        self._max_turns = max_turns

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> ConversationState:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ConversationState()
        except OSError as e:
            logger.warning("conversation_state_unreadable", path=str(self._path), error=str(e))
            return ConversationState()
        try:
            return ConversationState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "conversation_state_invalid", path=str(self._path), errors=e.error_count()
            )
            return ConversationState()

    def turns_for(self, session_id: str | None) -> list[ConversationTurn]:
        """Prior turns of this session, or [] when the session changed."""
        state = self.read()
        if not state.turns:
            return []
        if state.session_id != session_id:
            logger.info(
                "conversation_state_reset",
                previous_session=state.session_id,
                session_id=session_id,
            )
            return []
        return state.turns

    def append(
        self,
        session_id: str | None,
        previous: list[ConversationTurn],
        turn: ConversationTurn,
    ) -> ConversationState:
        state = ConversationState(
            session_id=session_id,
            turns=[*previous, turn][-self._max_turns :],
        )
        self.write(state)
        return state

    def write(self, state: ConversationState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)
