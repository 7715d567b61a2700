"""Shared pytest fixtures for graphmem tests.

Every test that touches the graph gets its own SQLite file under tmp_path,
so there is nothing to truncate between tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from graphmem.config.settings import (
    CompletionSettings,
    DatabaseSettings,
    MemorySettings,
    RetrievalSettings,
    Settings,
)
from graphmem.graph.database import create_db_engine, ensure_schema, make_session_factory
from graphmem.graph.store import GraphStore
from graphmem.graph.types import EdgeSpec, NewNode, Node
from tests.fakes import FakeEmbedder


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database=DatabaseSettings(path=tmp_path / "graph.db"),
        completion=CompletionSettings(api_key="test-key"),
        memory=MemorySettings(state_path=tmp_path / "state.json"),
    )


@pytest.fixture
def retrieval_settings() -> RetrievalSettings:
    return RetrievalSettings()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest_asyncio.fixture
async def store(settings: Settings) -> AsyncGenerator[GraphStore, None]:
    """A fresh graph store backed by a temporary SQLite file."""
    engine = await create_db_engine(settings.database)
    await ensure_schema(engine)
    yield GraphStore(make_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def add_node(store: GraphStore, embedder: FakeEmbedder):
    """Factory: create an embedded node, optionally linked to other node ids."""

    async def _add(
        node_type: str,
        content: str,
        *,
        links: tuple[str, ...] = (),
        edge_type: str = "about",
        **fields,
    ) -> Node:
        vector = await embedder.embed(content)
        return await store.create_node(
            NewNode(type=node_type, content=content, **fields),
            vector,
            [EdgeSpec(target_id=target, type=edge_type) for target in links],
        )

    return _add
