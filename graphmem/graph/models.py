"""SQLAlchemy 2.0 async models for the memory graph."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class NodeRecord(Base):
    """A node row. superseded_by is only ever written once (compare-and-set)."""

    __tablename__ = "nodes"
    __table_args__ = (
        Index("idx_nodes_type", "node_type"),
        Index("idx_nodes_superseded", "superseded_by"),
        Index("idx_nodes_type_scope", "node_type", "scope"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    node_type: Mapped[str] = mapped_column(String(16))
    subtype: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    content: Mapped[str] = mapped_column(Text)
    salience: Mapped[float] = mapped_column(Float, default=1.0)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    scope: Mapped[float | None] = mapped_column(Float, nullable=True, default=None)
    source: Mapped[str] = mapped_column(String(16), default="user")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    valid_from: Mapped[str | None] = mapped_column(String(32), nullable=True, default=None)
    valid_until: Mapped[str | None] = mapped_column(String(32), nullable=True, default=None)
    superseded_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("nodes.id"), nullable=True, default=None
    )
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)


class EdgeRecord(Base):
    __tablename__ = "edges"
    __table_args__ = (
        Index("idx_edges_source", "source_id"),
        Index("idx_edges_target", "target_id"),
        Index("idx_edges_type", "edge_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(36), ForeignKey("nodes.id"))
    target_id: Mapped[str] = mapped_column(String(36), ForeignKey("nodes.id"))
    edge_type: Mapped[str] = mapped_column(String(64))
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class EmbeddingRecord(Base):
    """One float32 vector per node. node_type is denormalised for filtered scans."""

    __tablename__ = "embeddings"
    __table_args__ = (Index("idx_embeddings_type", "node_type"),)

    node_id: Mapped[str] = mapped_column(String(36), ForeignKey("nodes.id"), primary_key=True)
    node_type: Mapped[str] = mapped_column(String(16))
    dimensions: Mapped[int] = mapped_column(Integer)
    vector: Mapped[bytes] = mapped_column(LargeBinary)
