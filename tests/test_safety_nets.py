"""Tests for the deterministic retrieval safety nets."""

from __future__ import annotations

import pytest

from graphmem.config.settings import RetrievalSettings
from graphmem.memory.safety_nets import (
    SOURCE_BROAD_SEARCH,
    SOURCE_GLOBAL_INSTRUCTIONS,
    SafetyNets,
    template_key,
)
from tests.fakes import FakeEmbedder


class TestTemplateKey:
    def test_names_collapse_to_one_placeholder(self) -> None:
        assert template_key("Peter sends reports to Anderson") == "_ sends reports to _"
        assert template_key("Sarah sends reports to Big Corp") == "_ sends reports to _"

    def test_only_leading_words_count(self) -> None:
        long_a = "always " * 20 + "alpha"
        long_b = "always " * 20 + "beta"
        assert template_key(long_a) == template_key(long_b)
        assert template_key("a b c", max_words=2) == "a b"


class TestInstructionPrefetch:
    @pytest.mark.asyncio
    async def test_template_groups_are_bounded(self, store, add_node, embedder) -> None:
        for sender, client in [
            ("Peter", "Anderson"),
            ("Sarah", "Big Corp"),
            ("Tom", "Initech"),
            ("Maya", "Globex"),
        ]:
            await add_node("instruction", f"{sender} sends reports to {client}")
        other = await add_node("instruction", "always archive old reports")

        settings = RetrievalSettings(template_max_per_group=2)
        nets = SafetyNets(store, embedder, settings)
        refs = await nets.instruction_prefetch(await embedder.embed("who sends reports"))

        nodes = await store.get_nodes(r.node_id for r in refs)
        keys = [template_key(nodes[r.node_id].content) for r in refs]
        assert keys.count("_ sends reports to _") == 2
        assert other.id in {r.node_id for r in refs}

    @pytest.mark.asyncio
    async def test_capped_at_max_instructions(self, store, add_node, embedder) -> None:
        for i in range(6):
            await add_node("instruction", f"rule number {i} about reports variant{i}")
        settings = RetrievalSettings(max_instructions=3, template_max_per_group=10)
        refs = await SafetyNets(store, embedder, settings).instruction_prefetch(
            await embedder.embed("reports")
        )
        assert len(refs) == 3


class TestGlobalInstructions:
    @pytest.mark.asyncio
    async def test_score_floor_applied(self, store, add_node, embedder) -> None:
        wide = await add_node("instruction", "Always reply in British English", scope=0.9)
        await add_node("instruction", "Reply to Tom on Fridays", scope=0.2)

        nets = SafetyNets(store, embedder, RetrievalSettings())
        refs = await nets.global_instructions(await embedder.embed("please reply to Tom"))

        assert [r.node_id for r in refs] == [wide.id]
        assert refs[0].score >= 0.6
        assert refs[0].source == SOURCE_GLOBAL_INSTRUCTIONS

    @pytest.mark.asyncio
    async def test_below_cosine_floor_injects_nothing(self, store, add_node, embedder) -> None:
        await add_node("instruction", "Always reply in British English", scope=0.9)
        nets = SafetyNets(store, embedder, RetrievalSettings(global_cosine_floor=0.9))
        vector = await embedder.embed("please reply to Tom")
        assert await nets.global_instructions(vector) == []


class TestRun:
    @pytest.mark.asyncio
    async def test_run_combines_passes(self, store, add_node, embedder) -> None:
        fact = await add_node("fact", "Sarah drinks green tea")
        result = await SafetyNets(store, embedder, RetrievalSettings()).run("green tea")
        assert not result.degraded
        assert any(r.node_id == fact.id and r.source == SOURCE_BROAD_SEARCH for r in result.value)

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades(self, store) -> None:
        nets = SafetyNets(store, FakeEmbedder(fail=True), RetrievalSettings())
        result = await nets.run("anything")
        assert result.degraded
        assert result.value == []
        assert "embedding endpoint down" in result.reason
