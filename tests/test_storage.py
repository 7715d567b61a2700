"""Tests for the storage pipeline: extraction, filter, store loop and force-store."""

from __future__ import annotations

import json

import pytest

from graphmem.config.settings import RetrievalSettings
from graphmem.infra.errors import LLMError
from graphmem.memory.extraction import InstructionExtractor, StorageFilter, classified_items
from graphmem.memory.schemas import Classification, EntityMention, Operations, StoreItem
from graphmem.memory.storage import StorageOrchestrator, is_persisted, should_store
from graphmem.memory.tool_loop import ToolLoop
from graphmem.tools.builtins import build_store_registry
from tests.fakes import FakeEmbedder, ScriptedModelClient, reply, tool_call

NO_INSTRUCTIONS = json.dumps({"instructions": []})


def _orchestrator(store, embedder, client) -> StorageOrchestrator:
    registry = build_store_registry(store, embedder, RetrievalSettings())
    return StorageOrchestrator(
        store,
        extractor=InstructionExtractor(client, model="m"),
        storage_filter=StorageFilter(client, model="m"),
        loop=ToolLoop(client, registry, model="m", tag="store_loop"),
        store_tool=registry.get("store_memory"),
    )


def _classification(**fields) -> Classification:
    fields.setdefault("operations", Operations(store=True))
    return Classification(**fields)


class TestShouldStore:
    def test_requires_content(self) -> None:
        assert not should_store(Classification(operations=Operations(store=True)))
        assert not should_store(Classification(intents=["instruction"]))

    def test_storable_items(self) -> None:
        assert should_store(Classification(implied_facts=["Sarah leads sales"]))
        assert should_store(
            Classification(entities=[EntityMention(name="Tom")], operations=Operations(store=True))
        )
        assert should_store(Classification(concepts=["invoicing"], intents=["instruction"]))

    def test_question_only(self) -> None:
        question = Classification(
            entities=[EntityMention(name="Sarah")], operations=Operations(retrieve=True)
        )
        assert not should_store(question)


class TestIsPersisted:
    def test_prefix_containment(self) -> None:
        item = StoreItem(content="Sarah moved to York in March", type="fact")
        assert is_persisted(item, ["sarah moved to york in march 2026"], 10)
        assert is_persisted(item, ["sarah moved"], 10)
        assert not is_persisted(item, ["tom moved to leeds"], 10)
        assert not is_persisted(item, [], 10)


class TestExtraction:
    def test_classified_items_labels(self) -> None:
        c = Classification(implied_facts=["f"], plans=["p"], intents=["instruction"])
        assert classified_items("Always do X", c) == [
            "Fact: f",
            "Plan: p",
            "Instruction (user's exact words): \"Always do X\"",
        ]

    @pytest.mark.asyncio
    async def test_extractor_degrades_on_failure(self) -> None:
        client = ScriptedModelClient(chat={"extract_instructions": [LLMError("down")]})
        result = await InstructionExtractor(client, model="m").extract("Always do X")
        assert result.degraded
        assert result.value == []

    @pytest.mark.asyncio
    async def test_filter_drops_instruction_items(self) -> None:
        decision = json.dumps(
            {
                "store_items": [
                    {"content": "Always cc finance", "type": "rule"},
                    {"content": "Sarah leads sales", "type": "fact"},
                    {"content": "Sarah", "type": "entity"},
                ]
            }
        )
        client = ScriptedModelClient(chat={"storage_filter": [decision]})
        result = await StorageFilter(client, model="m").decide(
            "msg", Classification(implied_facts=["Sarah leads sales"]), []
        )
        assert [i.content for i in result.value.store_items] == ["Sarah leads sales"]

    @pytest.mark.asyncio
    async def test_filter_skips_call_without_items(self) -> None:
        client = ScriptedModelClient()
        result = await StorageFilter(client, model="m").decide(
            "hi", Classification(entities=[EntityMention(name="Tom")]), []
        )
        assert not result.degraded
        assert result.value.store_items == []
        assert client.calls == []


class TestStorageOrchestrator:
    @pytest.mark.asyncio
    async def test_force_stores_what_the_loop_skipped(self, store, add_node, embedder) -> None:
        sarah = await add_node("entity", "Sarah", subtype="person")
        client = ScriptedModelClient(
            chat={
                "extract_instructions": [NO_INSTRUCTIONS],
                "storage_filter": [
                    json.dumps({"store_items": [{"content": "Sarah moved to York", "type": "fact"}]})
                ],
            },
            completions={
                "store_loop": [
                    reply(tool_call("search_entity", {"name": "Sarah"})),
                    reply(tool_call("done")),
                ]
            },
        )
        outcome = await _orchestrator(store, embedder, client).run(
            "Sarah moved to York",
            _classification(
                entities=[EntityMention(name="Sarah")], implied_facts=["Sarah moved to York"]
            ),
        )

        assert outcome.stored == []
        assert [r.content for r in outcome.forced] == ["Sarah moved to York"]
        assert outcome.turns[-1].call.id == "force-1"
        linked = await store.facts_by_entity(sarah.id)
        assert [n.content for n in linked] == ["Sarah moved to York"]

    @pytest.mark.asyncio
    async def test_no_force_store_when_loop_stored(self, store, embedder) -> None:
        client = ScriptedModelClient(
            chat={
                "extract_instructions": [NO_INSTRUCTIONS],
                "storage_filter": [
                    json.dumps({"store_items": [{"content": "Tom likes jazz", "type": "opinion"}]})
                ],
            },
            completions={
                "store_loop": [
                    reply(tool_call("store_memory", {"type": "opinion", "content": "Tom likes jazz"})),
                    reply(tool_call("done")),
                ]
            },
        )
        outcome = await _orchestrator(store, embedder, client).run(
            "Tom likes jazz", _classification(opinions=["Tom likes jazz"])
        )
        assert [r.content for r in outcome.stored] == ["Tom likes jazz"]
        assert outcome.forced == []
        assert len(await store.list_by_type("opinion")) == 1

    @pytest.mark.asyncio
    async def test_rejected_loop_write_is_force_stored(self, store, embedder) -> None:
        client = ScriptedModelClient(
            chat={
                "extract_instructions": [NO_INSTRUCTIONS],
                "storage_filter": [
                    json.dumps(
                        {"store_items": [{"content": "Sarah moved to York in March", "type": "fact"}]}
                    )
                ],
            },
            completions={
                "store_loop": [
                    reply(
                        tool_call(
                            "store_memory",
                            {"type": "memo", "content": "Sarah moved to York in March"},
                        )
                    ),
                    reply(tool_call("done")),
                ]
            },
        )
        outcome = await _orchestrator(store, embedder, client).run(
            "Sarah moved to York in March",
            _classification(implied_facts=["Sarah moved to York in March"]),
        )

        assert outcome.turns[0].outcome.error
        assert [r.content for r in outcome.forced] == ["Sarah moved to York in March"]
        facts = await store.list_by_type("fact")
        assert [n.content for n in facts] == ["Sarah moved to York in March"]

    @pytest.mark.asyncio
    async def test_force_store_embedding_failure_degrades(self, store) -> None:
        client = ScriptedModelClient(
            chat={
                "extract_instructions": [NO_INSTRUCTIONS],
                "storage_filter": [
                    json.dumps(
                        {
                            "store_items": [
                                {"content": "Tom plays chess", "type": "fact"},
                                {"content": "Tom likes jazz", "type": "opinion"},
                            ]
                        }
                    )
                ],
            },
            completions={"store_loop": [reply(tool_call("done"))]},
        )
        outcome = await _orchestrator(store, FakeEmbedder(fail=True), client).run(
            "Tom plays chess and likes jazz",
            _classification(implied_facts=["Tom plays chess"], opinions=["Tom likes jazz"]),
        )

        assert outcome.forced == []
        assert [t.call.id for t in outcome.turns[-2:]] == ["force-1", "force-2"]
        assert len(outcome.degraded) == 2
        assert all(d.startswith("force-store:") for d in outcome.degraded)

    @pytest.mark.asyncio
    async def test_extracted_instruction_keeps_scope(self, store, embedder) -> None:
        client = ScriptedModelClient(
            chat={
                "extract_instructions": [
                    json.dumps(
                        {
                            "instructions": [
                                {"content": "Always cc finance on invoices", "scope": 0.9}
                            ]
                        }
                    )
                ],
            },
        )
        outcome = await _orchestrator(store, embedder, client).run(
            "Always cc finance on invoices",
            _classification(concepts=["invoices"], intents=["instruction"]),
        )

        assert [r.type for r in outcome.forced] == ["instruction"]
        node = await store.get_node(outcome.forced[0].id)
        assert node.scope == 0.9
        assert node.subtype == "rule"

    @pytest.mark.asyncio
    async def test_nothing_to_store_skips_loop(self, store, embedder) -> None:
        client = ScriptedModelClient(chat={"extract_instructions": [NO_INSTRUCTIONS]})
        outcome = await _orchestrator(store, embedder, client).run(
            "Tom", _classification(entities=[EntityMention(name="Tom")])
        )
        assert outcome.skip_reason == "nothing extracted to evaluate"
        assert "store_loop" not in client.tags()
        assert outcome.all_stored == []
