"""Pydantic schemas for every model call site that must return JSON.

Each schema has all-default fields, so ``Schema()`` is the empty variant a
stage falls back to when the model output does not validate. Validators are
lenient about the small slips models make (a bare string where a list was
expected, a subtype sent as the type) but never guess at content.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from graphmem.constants import NODE_TYPES, TYPE_ALIASES
from graphmem.llm.json_output import extract_json_object

M = TypeVar("M", bound=BaseModel)


def _coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValueError(f"expected a list of strings, got {type(value).__name__}")
    out: list[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("content") or item.get("name") or ""
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def _keep_dicts_with(key: str):
    """Drop list items that are not objects carrying a non-empty ``key``."""

    def _filter(value: Any) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"expected a list, got {type(value).__name__}")
        kept: list[Any] = []
        for item in value:
            if isinstance(item, BaseModel):
                kept.append(item)
                continue
            if isinstance(item, str) and key in ("name", "content"):
                item = {key: item}
            if isinstance(item, dict) and str(item.get(key) or "").strip():
                kept.append(item)
        return kept

    return BeforeValidator(_filter)


StrList = Annotated[list[str], BeforeValidator(_coerce_str_list)]


class _ModelOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ── Classification (L1) ──


class EntityMention(_ModelOutput):
    name: str
    type: str = "unknown"
    ambiguous: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()


class Operations(_ModelOutput):
    retrieve: bool = False
    store: bool = False


class Classification(_ModelOutput):
    entities: Annotated[list[EntityMention], _keep_dicts_with("name")] = Field(
        default_factory=list
    )
    implied_facts: StrList = Field(default_factory=list)
    events: StrList = Field(default_factory=list)
    plans: StrList = Field(default_factory=list)
    opinions: StrList = Field(default_factory=list)
    concepts: StrList = Field(default_factory=list)
    implied_processes: StrList = Field(default_factory=list)
    intents: StrList = Field(default_factory=list)
    operations: Operations = Field(default_factory=Operations)

    @field_validator("intents")
    @classmethod
    def _lower_intents(cls, v: list[str]) -> list[str]:
        return [i.lower() for i in v]

    @property
    def has_content(self) -> bool:
        """True when anything was extracted that memory could act on."""
        return bool(
            self.entities
            or self.implied_facts
            or self.events
            or self.plans
            or self.opinions
            or self.concepts
            or self.implied_processes
        )

    @property
    def entity_names(self) -> list[str]:
        return [e.name for e in self.entities]

    @classmethod
    def merge(cls, parts: list[Classification]) -> Classification:
        """Combine per-sentence classifications into one."""
        entities: dict[str, EntityMention] = {}
        for part in parts:
            for entity in part.entities:
                entities.setdefault(entity.name.lower(), entity)

        def _concat(attr: str) -> list[str]:
            return [item for part in parts for item in getattr(part, attr)]

        def _unique(attr: str) -> list[str]:
            return list(dict.fromkeys(_concat(attr)))

        return cls(
            entities=list(entities.values()),
            implied_facts=_concat("implied_facts"),
            events=_concat("events"),
            plans=_concat("plans"),
            opinions=_concat("opinions"),
            concepts=_unique("concepts"),
            implied_processes=_concat("implied_processes"),
            intents=_unique("intents"),
            operations=Operations(
                retrieve=any(p.operations.retrieve for p in parts),
                store=any(p.operations.store for p in parts),
            ),
        )


# ── Search plan (L1.5) ──

Complexity = Literal["simple_fact", "entity_lookup", "rule_process", "multi_part"]


class SearchPlan(_ModelOutput):
    complexity: Complexity | None = None
    guidance: str = ""


# ── Storage: instruction extraction and storage filter ──


class ExtractedInstruction(_ModelOutput):
    content: str
    subtype: Literal["rule", "tool_usage", "process"] = "rule"
    scope: float = 0.5
    reason: str = ""

    @field_validator("subtype", mode="before")
    @classmethod
    def _default_subtype(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in ("rule", "tool_usage", "process") else "rule"

    @field_validator("scope", mode="before")
    @classmethod
    def _clamp_scope(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(max(value, 0.0), 1.0)


class InstructionExtraction(_ModelOutput):
    instructions: Annotated[list[ExtractedInstruction], _keep_dicts_with("content")] = Field(
        default_factory=list
    )


class StoreItem(_ModelOutput):
    content: str
    type: str = "fact"
    subtype: str | None = None
    reason: str = ""
    valid_from: str | None = None
    scope: float | None = None
    salience: float | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> str:
        raw = str(v or "fact").strip().lower()
        raw = TYPE_ALIASES.get(raw, raw)
        if raw not in NODE_TYPES or raw == "entity":
            raise ValueError(f"unsupported store item type: {v!r}")
        return raw

    @field_validator("scope", "salience", mode="before")
    @classmethod
    def _numeric_or_none(cls, v: Any) -> float | None:
        if v is None or v == "":
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None


class StorageFilterDecision(_ModelOutput):
    store_items: list[StoreItem] = Field(default_factory=list)
    skip_reason: str = ""

    @field_validator("store_items", mode="before")
    @classmethod
    def _drop_invalid_items(cls, v: Any) -> list[Any]:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("store_items must be a list")
        kept = []
        for item in v:
            try:
                kept.append(StoreItem.model_validate(item))
            except ValidationError:
                continue
        return kept


# ── Reconciliation ──

Verdict = Literal["KEEP", "SUPERSEDES", "CONTRADICTION"]


class ReconcileVerdict(_ModelOutput):
    id: str
    verdict: Verdict = "KEEP"
    reason: str = ""

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, v: Any) -> str:
        raw = str(v or "").strip().upper().replace(" ", "_")
        return "KEEP" if raw in ("NO_CONFLICT", "") else raw


class ReconcileDecision(_ModelOutput):
    results: Annotated[list[ReconcileVerdict], _keep_dicts_with("id")] = Field(
        default_factory=list
    )
    question: str | None = None


# ── Follow-up ──


class RetrieveCall(_ModelOutput):
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)


class FollowUpDecision(_ModelOutput):
    resolved_entities: Annotated[list[EntityMention], _keep_dicts_with("name")] = Field(
        default_factory=list
    )
    retrieval_needed: bool = False
    retrieve_calls: Annotated[list[RetrieveCall], _keep_dicts_with("tool")] = Field(
        default_factory=list
    )
    storage_needed: bool = False
    resolved_prompt: str = ""
    reasoning: str = ""


def parse_model_output(schema: type[M], text: str) -> tuple[M | None, str | None]:
    """Validate model text against schema. Returns (model, error_message | None)."""
    payload = extract_json_object(text)
    if payload is None:
        return None, "no JSON object in model output"
    try:
        return schema.model_validate(payload), None
    except ValidationError as e:
        return None, f"schema validation failed: {e.error_count()} errors"
