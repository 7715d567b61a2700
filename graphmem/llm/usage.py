"""Per-tag token accounting and cost estimation.

One tracker is shared by the completion and embedding clients of an engine.
Tags name the pipeline stage (classify, plan, tool_loop, curate, reconcile,
embedding, ...) so a trace can show where the tokens went.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# USD per million tokens (input, output). Unknown models use _DEFAULT_PRICE.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "openai/gpt-oss-120b": (0.08, 0.36),
    "openai/gpt-oss-20b": (0.03, 0.14),
    "deepseek/deepseek-chat-v3-0324": (0.25, 0.38),
    "qwen/qwen3-235b-a22b": (0.20, 0.60),
}
EMBEDDING_PRICING: dict[str, float] = {
    "text-embedding-3-small": 0.02,
    "text-embedding-3-large": 0.13,
}
_DEFAULT_PRICE = (0.10, 0.50)
_DEFAULT_EMBEDDING_PRICE = 0.06


@dataclass
class TagUsage:
    model: str = ""
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    embedding: bool = False

    @property
    def cost_usd(self) -> float:
        if self.embedding:
            price = EMBEDDING_PRICING.get(self.model, _DEFAULT_EMBEDDING_PRICE)
            return self.input_tokens * price / 1_000_000
        price_in, price_out = MODEL_PRICING.get(self.model, _DEFAULT_PRICE)
        return (self.input_tokens * price_in + self.output_tokens * price_out) / 1_000_000


@dataclass
class UsageTracker:
    """Accumulates token usage keyed by tag."""

    by_tag: dict[str, TagUsage] = field(default_factory=dict)

    def record(
        self,
        tag: str,
        model: str,
        input_tokens: int,
        output_tokens: int = 0,
        *,
        embedding: bool = False,
    ) -> None:
        entry = self.by_tag.setdefault(tag, TagUsage(model=model, embedding=embedding))
        entry.model = model
        entry.calls += 1
        entry.input_tokens += input_tokens
        entry.output_tokens += output_tokens

    @property
    def total_cost_usd(self) -> float:
        return sum(u.cost_usd for u in self.by_tag.values())

    def snapshot(self) -> dict[str, dict[str, float | int | str]]:
        return {
            tag: {
                "model": u.model,
                "calls": u.calls,
                "input_tokens": u.input_tokens,
                "output_tokens": u.output_tokens,
                "cost_usd": round(u.cost_usd, 6),
            }
            for tag, u in sorted(self.by_tag.items())
        }

    def reset(self) -> None:
        self.by_tag.clear()
