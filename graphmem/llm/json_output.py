"""Lenient extraction of JSON objects from model text."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def strip_fences(text: str) -> str:
    """Remove reasoning blocks and a surrounding markdown code fence."""
    cleaned = _THINK_RE.sub("", text).strip()
    return _FENCE_RE.sub("", cleaned).strip()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Parse the first JSON object in text. Returns None if there is none."""
    if not text:
        return None
    cleaned = strip_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None
