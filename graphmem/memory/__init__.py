"""Memory module: classification, retrieval, storage, and reconciliation over the graph."""

from graphmem.memory.contracts import (
    Contradiction,
    Degraded,
    Ok,
    RetrievalResult,
    StoreResult,
)
from graphmem.memory.engine import MemoryEngine
from graphmem.memory.schemas import Classification

__all__ = [
    "Classification",
    "Contradiction",
    "Degraded",
    "MemoryEngine",
    "Ok",
    "RetrievalResult",
    "StoreResult",
]
