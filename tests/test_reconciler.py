"""Tests for post-storage instruction reconciliation."""

from __future__ import annotations

import json

import pytest

from graphmem.graph.types import NodeRef
from graphmem.infra.errors import LLMError
from graphmem.memory.reconciler import Reconciler, default_question
from tests.fakes import FakeEmbedder, ScriptedModelClient


def _reconciler(store, embedder, client, **kwargs) -> Reconciler:
    return Reconciler(store, embedder, client, model="m", **kwargs)


def _verdicts(*results, question: str | None = None) -> str:
    return json.dumps({"results": [dict(r) for r in results], "question": question})


class TestReconciler:
    @pytest.mark.asyncio
    async def test_supersedes_outdated_instruction(self, store, add_node, embedder) -> None:
        old = await add_node("instruction", "Send the weekly report to Peter on Mondays")
        new = await add_node("instruction", "Send the weekly report to Peter on Fridays")
        client = ScriptedModelClient(
            chat={"reconcile": [_verdicts({"id": old.id, "verdict": "SUPERSEDES"})]}
        )

        outcome = await _reconciler(store, embedder, client).reconcile([NodeRef.of(new)])

        assert [(s.old_id, s.new_id) for s in outcome.superseded] == [(old.id, new.id)]
        assert (await store.get_node(old.id)).superseded_by == new.id
        assert outcome.contradictions == []

    @pytest.mark.asyncio
    async def test_contradiction_is_surfaced_not_resolved(
        self, store, add_node, embedder
    ) -> None:
        old = await add_node("instruction", "Always send invoices by email")
        new = await add_node("instruction", "Never send invoices by email")
        client = ScriptedModelClient(
            chat={
                "reconcile": [
                    _verdicts(
                        {"id": old.id, "verdict": "CONTRADICTION"},
                        question="Should invoices go by email or not?",
                    )
                ]
            }
        )

        outcome = await _reconciler(store, embedder, client).reconcile([NodeRef.of(new)])

        assert len(outcome.contradictions) == 1
        c = outcome.contradictions[0]
        assert c.old_id == old.id
        assert c.new_content == "Never send invoices by email"
        assert c.question == "Should invoices go by email or not?"
        assert (await store.get_node(old.id)).is_live

    @pytest.mark.asyncio
    async def test_default_question(self, store, add_node, embedder) -> None:
        old = await add_node("instruction", "Always send invoices by email")
        new = await add_node("instruction", "Never send invoices by email")
        client = ScriptedModelClient(
            chat={"reconcile": [_verdicts({"id": old.id, "verdict": "contradiction"})]}
        )
        outcome = await _reconciler(store, embedder, client).reconcile([NodeRef.of(new)])
        assert outcome.contradictions[0].question == default_question(new.content, old.content)

    @pytest.mark.asyncio
    async def test_keep_and_no_conflict_do_nothing(self, store, add_node, embedder) -> None:
        a = await add_node("instruction", "Send the weekly report to Peter")
        b = await add_node("instruction", "Send the weekly report as PDF")
        new = await add_node("instruction", "Send the weekly report before noon")
        client = ScriptedModelClient(
            chat={
                "reconcile": [
                    _verdicts(
                        {"id": a.id, "verdict": "KEEP"},
                        {"id": b.id, "verdict": "NO_CONFLICT"},
                        {"id": "unknown", "verdict": "SUPERSEDES"},
                    )
                ]
            }
        )
        outcome = await _reconciler(store, embedder, client, threshold=0.3).reconcile(
            [NodeRef.of(new)]
        )
        assert outcome.superseded == [] and outcome.contradictions == []
        assert len(await store.list_by_type("instruction")) == 3

    @pytest.mark.asyncio
    async def test_only_instructions_are_checked(self, store, add_node, embedder) -> None:
        fact = await add_node("fact", "Sarah likes tea")
        client = ScriptedModelClient()
        outcome = await _reconciler(store, embedder, client).reconcile([NodeRef.of(fact)])
        assert client.calls == []
        assert outcome.skipped == []

    @pytest.mark.asyncio
    async def test_no_similar_instructions_no_call(self, store, add_node, embedder) -> None:
        new = await add_node("instruction", "Water the office plants")
        client = ScriptedModelClient()
        await _reconciler(store, embedder, client).reconcile([NodeRef.of(new)])
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_failures_skip_the_node(self, store, add_node, embedder) -> None:
        await add_node("instruction", "Send the weekly report to Peter on Mondays")
        new = await add_node("instruction", "Send the weekly report to Peter on Fridays")

        client = ScriptedModelClient(chat={"reconcile": [LLMError("down")]})
        outcome = await _reconciler(store, embedder, client).reconcile([NodeRef.of(new)])
        assert outcome.skipped == [new.id]

        outcome = await _reconciler(store, FakeEmbedder(fail=True), ScriptedModelClient()).reconcile(
            [NodeRef.of(new)]
        )
        assert outcome.skipped == [new.id]
