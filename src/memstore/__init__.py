"""memstore -- memory consolidation and relationship management engine.

Quick start::

    from memstore import MemoryStore

    async def main():
        store = MemoryStore()
        await store.initialize()

        first = await store.remember("Postgres VACUUM reclaims dead tuples")
        second = await store.remember("VACUUM in Postgres reclaims dead tuples")
        await store.consolidate(first["memory_id"], [second["memory_id"]])

        await store.shutdown()

For lower-level access, import from submodules::

    from memstore.records import MemoryRecord, MemoryRepository
    from memstore.duplicates import DuplicateDetector
    from memstore.consolidation import ConsolidationEngine, ConsolidationResult
    from memstore.relationships import RelationshipManager, Relationship
    from memstore.state import ProcessingStateManager, PROCESSING_STATES
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memstore.store import MemoryStore
from memstore.records import MemoryRecord, Relationship, RELATIONSHIP_TYPES
from memstore.state import PROCESSING_STATES

__all__ = [
    "__version__",
    "MemoryStore",
    "MemoryRecord",
    "Relationship",
    "RELATIONSHIP_TYPES",
    "PROCESSING_STATES",
]
