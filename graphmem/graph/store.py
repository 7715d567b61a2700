"""GraphStore: persistence for nodes, edges and embeddings.

Every logical write (node + embedding + edges) is one transaction, so a
reader never observes a node without its embedding. Supersession is a
compare-and-set on ``superseded_by IS NULL``; two concurrent attempts on the
same node cannot both succeed. Superseded nodes are excluded from every
search path here, so callers never have to filter them again.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from graphmem.constants import NODE_TYPES
from graphmem.graph.models import EdgeRecord, EmbeddingRecord, NodeRecord
from graphmem.graph.types import Edge, EdgeSpec, NewNode, Node, Relationship, ScoredRef
from graphmem.infra.errors import (
    AlreadySupersededError,
    NodeNotFoundError,
    StoreError,
    StoreUnavailableError,
    SupersessionCycleError,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

_STEM_DOUBLED = ("ting", "sing", "ning", "ling", "ring", "ding", "ping", "ying")
_STEM_SUFFIXES = ("ied", "ies", "ing", "ed", "er", "es", "ly")


def stem_word(word: str) -> str:
    """Crude suffix stripping used for keyword instruction lookup."""
    w = word.lower()
    if len(w) <= 3:
        return w
    for suffix in (*_STEM_DOUBLED, *_STEM_SUFFIXES):
        if w.endswith(suffix) and len(w) > len(suffix) + 2:
            return w[: -len(suffix)]
    if w.endswith("s") and not w.endswith("ss") and len(w) > 4:
        return w[:-1]
    return w


def normalize_content(text: str) -> str:
    return " ".join(text.split()).lower()


def _to_vector_bytes(vector: Sequence[float]) -> tuple[bytes, int]:
    arr = np.asarray(vector, dtype=np.float32)
    return arr.tobytes(), int(arr.shape[0])


def _to_node(record: NodeRecord) -> Node:
    return Node(
        id=record.id,
        type=record.node_type,
        subtype=record.subtype,
        content=record.content,
        salience=record.salience,
        confidence=record.confidence,
        scope=record.scope,
        source=record.source,
        superseded_by=record.superseded_by,
        valid_from=record.valid_from,
        valid_until=record.valid_until,
        attributes=dict(record.attributes or {}),
        created_at=record.created_at,
    )


def _to_edge(record: EdgeRecord) -> Edge:
    return Edge(
        id=record.id,
        source_id=record.source_id,
        target_id=record.target_id,
        type=record.edge_type,
        attributes=dict(record.attributes or {}),
        created_at=record.created_at,
    )


class GraphStore:
    """Async graph store over a SQLite database.

    The store handle is passed explicitly to every component that needs it;
    there is no module-level connection.
    """

    def __init__(self, db_session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._db_factory = db_session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a DB session, mapping driver failures onto the store error taxonomy."""
        try:
            async with self._db_factory() as db:
                yield db
        except IntegrityError as e:
            raise StoreError(f"Integrity violation: {e.orig}", code="INTEGRITY_ERROR") from e
        except DBAPIError as e:
            logger.error("graph_store_unavailable", error=str(e.orig))
            raise StoreUnavailableError(f"Graph store unavailable: {e.orig}") from e

    # ── writes ──

    async def create_node(
        self,
        new_node: NewNode,
        vector: Sequence[float] | None = None,
        edges: Iterable[EdgeSpec] = (),
    ) -> Node:
        """Write a node, its embedding and its outgoing edges in one transaction."""
        if new_node.type not in NODE_TYPES:
            raise ValueError(f"Unknown node type: {new_node.type!r}")
        if not new_node.content.strip():
            raise ValueError("Node content must be non-empty")

        edges = list(edges)
        node_id = str(uuid.uuid4())
        async with self._session() as db:
            await self._require_nodes(db, {e.target_id for e in edges})
            record = NodeRecord(
                id=node_id,
                node_type=new_node.type,
                subtype=new_node.subtype,
                content=new_node.content,
                salience=new_node.salience,
                confidence=new_node.confidence,
                scope=new_node.scope,
                source=new_node.source,
                valid_from=new_node.valid_from,
                valid_until=new_node.valid_until,
                attributes=dict(new_node.attributes),
            )
            db.add(record)
            # Flush the node first so edge foreign keys resolve.
            await db.flush()
            if vector is not None:
                blob, dims = _to_vector_bytes(vector)
                db.add(
                    EmbeddingRecord(
                        node_id=node_id, node_type=new_node.type, dimensions=dims, vector=blob
                    )
                )
            for spec in edges:
                db.add(
                    EdgeRecord(
                        id=str(uuid.uuid4()),
                        source_id=node_id,
                        target_id=spec.target_id,
                        edge_type=spec.type,
                        attributes=dict(spec.attributes),
                    )
                )
            await db.commit()
            node = _to_node(record)

        logger.info(
            "node_created",
            node_id=node_id,
            node_type=node.type,
            subtype=node.subtype,
            edges=len(edges),
            embedded=vector is not None,
        )
        return node

    async def create_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: str,
        attributes: dict[str, Any] | None = None,
    ) -> Edge:
        async with self._session() as db:
            await self._require_nodes(db, {source_id, target_id})
            record = EdgeRecord(
                id=str(uuid.uuid4()),
                source_id=source_id,
                target_id=target_id,
                edge_type=edge_type,
                attributes=dict(attributes or {}),
            )
            db.add(record)
            await db.commit()
            edge = _to_edge(record)
        logger.debug("edge_created", source_id=source_id, target_id=target_id, edge_type=edge_type)
        return edge

    async def put_embedding(self, node_id: str, vector: Sequence[float]) -> None:
        """Insert or replace the embedding for a node."""
        blob, dims = _to_vector_bytes(vector)
        async with self._session() as db:
            node_type = await db.scalar(
                select(NodeRecord.node_type).where(NodeRecord.id == node_id)
            )
            if node_type is None:
                raise NodeNotFoundError(node_id)
            await db.merge(
                EmbeddingRecord(node_id=node_id, node_type=node_type, dimensions=dims, vector=blob)
            )
            await db.commit()

    async def set_superseded_by(self, old_id: str, new_id: str) -> None:
        """Mark old_id as replaced by new_id.

        Raises:
            NodeNotFoundError: either node does not exist.
            SupersessionCycleError: new_id's successor chain reaches old_id.
            AlreadySupersededError: old_id already has a successor.
        """
        if old_id == new_id:
            raise SupersessionCycleError(old_id, new_id)

        async with self._session() as db:
            rows = await db.execute(
                select(NodeRecord.id, NodeRecord.superseded_by).where(
                    NodeRecord.id.in_([old_id, new_id])
                )
            )
            found = {row.id: row.superseded_by for row in rows}
            for node_id in (old_id, new_id):
                if node_id not in found:
                    raise NodeNotFoundError(node_id)

            await self._check_no_cycle(db, old_id, found[new_id])
            await self._compare_and_set(db, old_id, new_id)
            await db.commit()

        logger.info("node_superseded", old_id=old_id, new_id=new_id)

    async def supersede_with_content(
        self,
        old_id: str,
        new_content: str,
        vector: Sequence[float] | None = None,
        *,
        source: str = "user",
    ) -> Node:
        """Create a corrected copy of old_id and supersede the original.

        The replacement inherits type, subtype, scope, salience, time bounds and
        attributes, and every edge touching the old node is copied onto it. All
        of it commits or none of it does.
        """
        if not new_content.strip():
            raise ValueError("Replacement content must be non-empty")

        new_id = str(uuid.uuid4())
        async with self._session() as db:
            old = await db.get(NodeRecord, old_id)
            if old is None:
                raise NodeNotFoundError(old_id)
            if old.superseded_by is not None:
                raise AlreadySupersededError(old_id, old.superseded_by)

            record = NodeRecord(
                id=new_id,
                node_type=old.node_type,
                subtype=old.subtype,
                content=new_content,
                salience=old.salience,
                confidence=old.confidence,
                scope=old.scope,
                source=source,
                valid_from=old.valid_from,
                valid_until=old.valid_until,
                attributes=dict(old.attributes or {}),
            )
            db.add(record)
            await db.flush()
            if vector is not None:
                blob, dims = _to_vector_bytes(vector)
                db.add(
                    EmbeddingRecord(
                        node_id=new_id, node_type=old.node_type, dimensions=dims, vector=blob
                    )
                )

            old_edges = (
                await db.scalars(
                    select(EdgeRecord).where(
                        or_(EdgeRecord.source_id == old_id, EdgeRecord.target_id == old_id)
                    )
                )
            ).all()
            for e in old_edges:
                db.add(
                    EdgeRecord(
                        id=str(uuid.uuid4()),
                        source_id=new_id if e.source_id == old_id else e.source_id,
                        target_id=new_id if e.target_id == old_id else e.target_id,
                        edge_type=e.edge_type,
                        attributes=dict(e.attributes or {}),
                    )
                )

            await self._compare_and_set(db, old_id, new_id)
            await db.commit()
            node = _to_node(record)

        logger.info(
            "node_replaced",
            old_id=old_id,
            new_id=new_id,
            node_type=node.type,
            edges_copied=len(old_edges),
        )
        return node

    async def _compare_and_set(self, db: AsyncSession, old_id: str, new_id: str) -> None:
        result = await db.execute(
            update(NodeRecord)
            .where(NodeRecord.id == old_id, NodeRecord.superseded_by.is_(None))
            .values(superseded_by=new_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            current = await db.scalar(
                select(NodeRecord.superseded_by).where(NodeRecord.id == old_id)
            )
            raise AlreadySupersededError(old_id, current)

    async def _check_no_cycle(
        self, db: AsyncSession, old_id: str, successor: str | None
    ) -> None:
        seen: set[str] = set()
        cursor = successor
        while cursor is not None and cursor not in seen:
            if cursor == old_id:
                raise SupersessionCycleError(old_id, successor or "")
            seen.add(cursor)
            cursor = await db.scalar(
                select(NodeRecord.superseded_by).where(NodeRecord.id == cursor)
            )

    async def _require_nodes(self, db: AsyncSession, node_ids: set[str]) -> None:
        if not node_ids:
            return
        existing = set(
            (await db.scalars(select(NodeRecord.id).where(NodeRecord.id.in_(node_ids)))).all()
        )
        missing = node_ids - existing
        if missing:
            raise NodeNotFoundError(sorted(missing)[0])

    # ── point lookups ──

    async def find_node(self, node_id: str) -> Node | None:
        async with self._session() as db:
            record = await db.get(NodeRecord, node_id)
            return _to_node(record) if record is not None else None

    async def get_node(self, node_id: str) -> Node:
        """Return the node or raise NodeNotFoundError. Superseded nodes are returned too."""
        node = await self.find_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    async def get_nodes(self, node_ids: Iterable[str]) -> dict[str, Node]:
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return {}
        async with self._session() as db:
            records = (
                await db.scalars(select(NodeRecord).where(NodeRecord.id.in_(ids)))
            ).all()
            return {r.id: _to_node(r) for r in records}

    # ── scans ──

    async def list_by_type(
        self,
        node_type: str,
        *,
        min_scope: float | None = None,
        include_superseded: bool = False,
        limit: int | None = None,
    ) -> list[Node]:
        stmt = select(NodeRecord).where(NodeRecord.node_type == node_type)
        if not include_superseded:
            stmt = stmt.where(NodeRecord.superseded_by.is_(None))
        if min_scope is not None:
            stmt = stmt.where(NodeRecord.scope >= min_scope)
        stmt = stmt.order_by(NodeRecord.salience.desc(), NodeRecord.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as db:
            return [_to_node(r) for r in (await db.scalars(stmt)).all()]

    async def edges_of(self, node_id: str) -> list[Edge]:
        """All edges touching node_id, in either direction."""
        async with self._session() as db:
            records = (
                await db.scalars(
                    select(EdgeRecord)
                    .where(or_(EdgeRecord.source_id == node_id, EdgeRecord.target_id == node_id))
                    .order_by(EdgeRecord.created_at)
                )
            ).all()
            return [_to_edge(r) for r in records]

    async def relationships(self, node_id: str, *, limit: int | None = None) -> list[Relationship]:
        """One-hop neighbours of node_id that are still live, outgoing first."""
        async with self._session() as db:
            outgoing = await db.execute(
                select(EdgeRecord, NodeRecord)
                .join(NodeRecord, EdgeRecord.target_id == NodeRecord.id)
                .where(EdgeRecord.source_id == node_id, NodeRecord.superseded_by.is_(None))
                .order_by(EdgeRecord.created_at)
            )
            incoming = await db.execute(
                select(EdgeRecord, NodeRecord)
                .join(NodeRecord, EdgeRecord.source_id == NodeRecord.id)
                .where(EdgeRecord.target_id == node_id, NodeRecord.superseded_by.is_(None))
                .order_by(EdgeRecord.created_at)
            )
            result = [
                Relationship(edge=_to_edge(e), node=_to_node(n), direction="out")
                for e, n in outgoing.all()
            ]
            result.extend(
                Relationship(edge=_to_edge(e), node=_to_node(n), direction="in")
                for e, n in incoming.all()
            )
        return result[:limit] if limit is not None else result

    async def linked_nodes(
        self,
        entity_id: str,
        node_types: Sequence[str],
        *,
        days: int | None = None,
    ) -> list[Node]:
        """Live nodes of the given types joined to entity_id by an edge in either direction."""
        linked = (
            select(EdgeRecord.target_id.label("nid")).where(EdgeRecord.source_id == entity_id)
        ).union(
            select(EdgeRecord.source_id.label("nid")).where(EdgeRecord.target_id == entity_id)
        ).subquery()
        stmt = (
            select(NodeRecord)
            .where(
                NodeRecord.id.in_(select(linked.c.nid)),
                NodeRecord.node_type.in_(list(node_types)),
                NodeRecord.superseded_by.is_(None),
            )
            .order_by(NodeRecord.salience.desc(), NodeRecord.created_at.desc())
        )
        if days:
            stmt = stmt.where(NodeRecord.created_at >= datetime.now(UTC) - timedelta(days=days))
        async with self._session() as db:
            return [_to_node(r) for r in (await db.scalars(stmt)).all()]

    async def facts_by_entity(self, entity_id: str) -> list[Node]:
        return await self.linked_nodes(entity_id, ("fact", "opinion"))

    async def events_by_entity(self, entity_id: str, *, days: int | None = None) -> list[Node]:
        events = await self.linked_nodes(entity_id, ("event",), days=days)
        return sorted(events, key=lambda n: n.created_at or datetime.min, reverse=True)

    async def instructions_by_entity(self, entity_id: str) -> list[Node]:
        nodes = await self.linked_nodes(entity_id, ("instruction",))
        return sorted(nodes, key=lambda n: (n.scope or 0.0, n.salience), reverse=True)

    async def plans_by_entity(self, entity_id: str) -> list[Node]:
        return await self.linked_nodes(entity_id, ("plan",))

    async def recent_event_ids(self, days: int) -> list[str]:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        async with self._session() as db:
            return list(
                (
                    await db.scalars(
                        select(NodeRecord.id)
                        .where(
                            NodeRecord.node_type == "event",
                            NodeRecord.superseded_by.is_(None),
                            NodeRecord.created_at >= cutoff,
                        )
                        .order_by(NodeRecord.created_at.desc())
                    )
                ).all()
            )

    async def instructions_by_topic(self, topic: str | None, *, limit: int = 15) -> list[Node]:
        """Keyword lookup over live instructions, ranked by stem hits then salience."""
        if not topic or not topic.strip():
            return await self.list_by_type("instruction", limit=limit)

        stems = [stem_word(w) for w in re.findall(r"\w+", topic) if len(w) > 2]
        if not stems:
            return []

        stmt = select(NodeRecord).where(
            NodeRecord.node_type == "instruction",
            NodeRecord.superseded_by.is_(None),
            or_(*(NodeRecord.content.ilike(f"%{s}%") for s in stems)),
        )
        async with self._session() as db:
            candidates = [_to_node(r) for r in (await db.scalars(stmt)).all()]

        def _hits(node: Node) -> int:
            lowered = node.content.lower()
            return sum(1 for s in stems if s in lowered)

        candidates.sort(key=lambda n: (_hits(n), n.salience), reverse=True)
        return candidates[:limit]

    async def find_live_duplicate(self, node_type: str, content: str, source: str) -> Node | None:
        """Live node with the same type, source and normalised content, if any."""
        target = normalize_content(content)
        async with self._session() as db:
            records = (
                await db.scalars(
                    select(NodeRecord).where(
                        NodeRecord.node_type == node_type,
                        NodeRecord.source == source,
                        NodeRecord.superseded_by.is_(None),
                    )
                )
            ).all()
        for record in records:
            if normalize_content(record.content) == target:
                return _to_node(record)
        return None

    # ── vector search ──

    async def cosine_search(
        self,
        vector: Sequence[float],
        *,
        node_types: Sequence[str] | None = None,
        node_ids: Iterable[str] | None = None,
        limit: int = 10,
        min_score: float | None = None,
        source: str = "cosine",
    ) -> list[ScoredRef]:
        """Brute-force cosine similarity over live embeddings, best first."""
        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0 or limit <= 0:
            return []

        stmt = (
            select(EmbeddingRecord.node_id, EmbeddingRecord.dimensions, EmbeddingRecord.vector)
            .join(NodeRecord, NodeRecord.id == EmbeddingRecord.node_id)
            .where(NodeRecord.superseded_by.is_(None))
        )
        if node_types:
            stmt = stmt.where(EmbeddingRecord.node_type.in_(list(node_types)))
        if node_ids is not None:
            ids = list(node_ids)
            if not ids:
                return []
            stmt = stmt.where(EmbeddingRecord.node_id.in_(ids))

        async with self._session() as db:
            rows = (await db.execute(stmt)).all()

        dims = query.shape[0]
        usable = [r for r in rows if r.dimensions == dims]
        if len(usable) < len(rows):
            logger.warning(
                "embedding_dimension_mismatch",
                expected=dims,
                skipped=len(rows) - len(usable),
            )
        if not usable:
            return []

        matrix = np.vstack([np.frombuffer(r.vector, dtype=np.float32) for r in usable])
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        scores = (matrix @ query) / (norms * query_norm)

        order = np.argsort(-scores, kind="stable")
        results: list[ScoredRef] = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                break
            results.append(ScoredRef(node_id=usable[idx].node_id, score=score, source=source))
            if len(results) >= limit:
                break
        return results
