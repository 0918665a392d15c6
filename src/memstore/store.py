"""Central orchestrator for the memstore engine.

:class:`MemoryStore` wires one :class:`~memstore.storage.Storage`, one
:class:`~memstore.records.MemoryRepository` and one similarity source into
every component (duplicate detection, consolidation, backups,
relationships, processing state) and exposes a single high-level API.

All public methods return plain dicts because their output is
JSON-serialised for MCP tool responses and CLI output.

Usage::

    from memstore.store import MemoryStore

    store = MemoryStore()
    await store.initialize()

    first = await store.remember("Postgres VACUUM reclaims dead tuples", namespace="ops")
    second = await store.remember("VACUUM in Postgres reclaims dead tuples", namespace="ops")
    await store.consolidate(first["memory_id"], [second["memory_id"]], namespace="ops")
    await store.shutdown()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from memstore.backup import BackupManager
from memstore.config import get_config
from memstore.consolidation import ConsolidationEngine
from memstore.duplicates import DuplicateDetector
from memstore.records import MemoryRepository
from memstore.relationships import RelationshipManager, RelationshipUpdate
from memstore.search import FtsSimilaritySource
from memstore.state import ProcessingStateManager
from memstore.storage import Storage

logger = logging.getLogger(__name__)


class MemoryStore:
    """The central orchestrator.  One store per process.

    All components are built by :meth:`initialize` and released by
    :meth:`shutdown`::

        store = MemoryStore()
        await store.initialize()    # sets up DB and components
        ...                         # MCP tool calls
        await store.shutdown()      # close DB
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._config = get_config()
        self._db_path_override = db_path
        self._storage: Storage | None = None
        self._repository: MemoryRepository | None = None
        self._detector: DuplicateDetector | None = None
        self._backups: BackupManager | None = None
        self._states: ProcessingStateManager | None = None
        self._consolidation: ConsolidationEngine | None = None
        self._relationships: RelationshipManager | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Initialize all components.  Idempotent.

        Startup sequence:

        1. Create :class:`Storage` and initialise it (DB, tables, backup).
        2. Create the repository and the FTS similarity source.
        3. Create the detector, backup manager and state manager.
        4. Create the consolidation engine and relationship manager.
        """
        if self._initialized:
            return

        self._storage = Storage(self._db_path_override or self._config.db_path)
        await self._storage.initialize()

        self._repository = MemoryRepository(self._storage)
        self._detector = DuplicateDetector(
            self._repository, FtsSimilaritySource(self._storage)
        )
        self._backups = BackupManager(self._repository)
        self._states = ProcessingStateManager(self._repository)
        self._consolidation = ConsolidationEngine(
            self._repository,
            self._backups,
            self._states,
            self._detector,
        )
        self._relationships = RelationshipManager(self._repository)

        self._initialized = True
        logger.info("Memory store initialized. DB: %s", self._storage.db_path)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "MemoryStore not initialized. Call await store.initialize() first."
            )

    def _ns(self, namespace: str | None) -> str:
        return namespace or self._config.default_namespace

    # ==================================================================
    # Records
    # ==================================================================

    async def remember(
        self,
        content: str,
        namespace: str | None = None,
        summary: str = "",
        topic: str | None = None,
        classification: str = "contextual",
        importance: str = "medium",
        entities: list[str] | None = None,
        keywords: list[str] | None = None,
        confidence_score: float = 0.5,
        classification_reason: str = "",
        relationships: list[dict[str, Any]] | None = None,
        check_duplicates: bool = True,
    ) -> dict[str, Any]:
        """Store a new memory and report likely duplicates.

        Parameters
        ----------
        content:
            The text to store.
        namespace:
            Isolation key; the configured default when ``None``.
        relationships:
            Outgoing edges to store with the memory.  Invalid edges are
            reported, not stored.
        check_duplicates:
            Run duplicate detection against the namespace after storing.

        Returns
        -------
        dict
            Keys: ``memory_id``, ``memory``, ``duplicates``,
            ``relationships``.
        """
        self._ensure_initialized()
        assert self._repository is not None
        assert self._states is not None
        assert self._detector is not None
        assert self._relationships is not None

        namespace = self._ns(namespace)
        record = await self._repository.create(
            content,
            namespace=namespace,
            summary=summary,
            topic=topic,
            classification=classification,
            importance=importance,
            entities=entities,
            keywords=keywords,
            confidence_score=confidence_score,
            classification_reason=classification_reason,
        )
        await self._states.initialize_memory_state(record.id)

        stored = None
        if relationships:
            stored = await self._relationships.store_relationships(
                record.id, relationships, namespace
            )

        duplicates = []
        if check_duplicates:
            duplicates = await self._detector.detect_for_memory(record.id, namespace)

        fresh = await self._repository.get(record.id, namespace)
        return {
            "memory_id": record.id,
            "memory": (fresh or record).to_dict(),
            "duplicates": [d.to_dict() for d in duplicates],
            "relationships": stored.to_dict() if stored else None,
        }

    async def get(self, memory_id: str, namespace: str | None = None) -> dict[str, Any] | None:
        self._ensure_initialized()
        assert self._repository is not None
        record = await self._repository.get(memory_id, self._ns(namespace))
        return record.to_dict() if record else None

    # ==================================================================
    # Duplicates and consolidation
    # ==================================================================

    async def find_duplicates(
        self,
        memory_id: str | None = None,
        text: str | None = None,
        namespace: str | None = None,
        threshold: float | None = None,
    ) -> dict[str, Any]:
        """Duplicate candidates for a stored memory or free text.

        With neither *memory_id* nor *text*, the whole namespace is swept
        and grouped.
        """
        self._ensure_initialized()
        assert self._detector is not None
        namespace = self._ns(namespace)

        if memory_id:
            candidates = await self._detector.detect_for_memory(
                memory_id, namespace, threshold=threshold
            )
            return {"memory_id": memory_id, "candidates": [c.to_dict() for c in candidates]}
        if text:
            candidates = await self._detector.detect(text, namespace, threshold=threshold)
            return {"candidates": [c.to_dict() for c in candidates]}

        groups = await self._detector.find_duplicate_groups(namespace, threshold=threshold)
        return {"groups": [g.to_dict() for g in groups]}

    async def consolidate(
        self,
        primary_id: str,
        duplicate_ids: list[str],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Merge *duplicate_ids* into *primary_id*.

        Returns
        -------
        dict
            :class:`~memstore.consolidation.ConsolidationResult` as a dict.
        """
        self._ensure_initialized()
        assert self._consolidation is not None
        result = await self._consolidation.consolidate(
            primary_id, duplicate_ids, self._ns(namespace)
        )
        return result.to_dict()

    async def validate_consolidation(
        self,
        primary_id: str,
        duplicate_ids: list[str],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._consolidation is not None
        result = await self._consolidation.validator.validate(
            primary_id, duplicate_ids, self._ns(namespace)
        )
        return result.to_dict()

    async def mark_duplicate(
        self,
        duplicate_id: str,
        original_id: str,
        reason: str = "manual",
        namespace: str | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._consolidation is not None
        await self._consolidation.mark_as_duplicate(
            duplicate_id, original_id, reason, self._ns(namespace)
        )
        return {"duplicate_id": duplicate_id, "duplicate_of": original_id, "reason": reason}

    async def sweep(
        self,
        namespace: str | None = None,
        threshold: float | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Detect duplicate groups and consolidate each one.

        Returns
        -------
        dict
            Keys: ``groups``, ``consolidated``, ``errors``, ``dry_run`` and,
            for a dry run, ``details`` listing every group found.
        """
        self._ensure_initialized()
        assert self._detector is not None
        assert self._consolidation is not None
        namespace = self._ns(namespace)

        groups = await self._detector.find_duplicate_groups(namespace, threshold=threshold)
        summary: dict[str, Any] = {
            "groups": len(groups),
            "consolidated": 0,
            "errors": [],
            "dry_run": dry_run,
        }
        if dry_run:
            summary["details"] = [g.to_dict() for g in groups]
            return summary

        for group in groups:
            result = await self._consolidation.consolidate(
                group.primary_id, group.duplicate_ids, namespace
            )
            summary["consolidated"] += result.consolidated
            summary["errors"].extend(result.errors)

        logger.info(
            "Sweep of %s: %d groups, %d duplicates consolidated, %d errors",
            namespace,
            summary["groups"],
            summary["consolidated"],
            len(summary["errors"]),
        )
        return summary

    async def history(self, limit: int = 20, namespace: str | None = None) -> list[dict[str, Any]]:
        self._ensure_initialized()
        assert self._consolidation is not None
        return await self._consolidation.get_history(limit, namespace)

    # ==================================================================
    # Relationships
    # ==================================================================

    async def relate(
        self,
        memory_id: str,
        relationships: list[dict[str, Any]],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Store outgoing edges on *memory_id*."""
        self._ensure_initialized()
        assert self._relationships is not None
        result = await self._relationships.store_relationships(
            memory_id, relationships, self._ns(namespace)
        )
        return result.to_dict()

    async def update_relationships(
        self,
        memory_id: str,
        updates: Iterable[Mapping[str, Any]],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Apply ``{"relationship": {...}, "operation": ...}`` edits."""
        self._ensure_initialized()
        assert self._relationships is not None
        edits = [RelationshipUpdate.from_dict(u) for u in updates]
        result = await self._relationships.update_relationships(
            memory_id, edits, self._ns(namespace)
        )
        return result.to_dict()

    async def related(
        self,
        memory_id: str,
        namespace: str | None = None,
        relationship_type: str | None = None,
        min_confidence: float | None = None,
        min_strength: float | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._relationships is not None
        related = await self._relationships.get_related_memories(
            memory_id,
            self._ns(namespace),
            relationship_type=relationship_type,
            min_confidence=min_confidence,
            min_strength=min_strength,
            limit=limit,
        )
        return {"memory_id": memory_id, "related": [r.to_dict() for r in related]}

    async def network(
        self,
        memory_id: str,
        max_depth: int | None = None,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._relationships is not None
        network = await self._relationships.get_relationship_network(
            memory_id, max_depth, self._ns(namespace)
        )
        return network.to_dict()

    async def resolve_conflicts(self, memory_id: str, namespace: str | None = None) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._relationships is not None
        resolution = await self._relationships.resolve_relationship_conflicts(
            memory_id, self._ns(namespace)
        )
        return resolution.to_dict()

    async def check_consistency(self, memory_id: str, namespace: str | None = None) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._relationships is not None
        report = await self._relationships.validate_relationship_consistency(
            memory_id, self._ns(namespace)
        )
        return report.to_dict()

    # ==================================================================
    # Processing state
    # ==================================================================

    async def transition(
        self,
        memory_id: str,
        state: str,
        reason: str | None = None,
        force: bool = False,
        agent_id: str | None = None,
    ) -> dict[str, Any]:
        """Move a memory to *state*.

        Returns
        -------
        dict
            Keys: ``memory_id``, ``success``, ``state`` (the state after the
            attempt).
        """
        self._ensure_initialized()
        assert self._states is not None
        success = await self._states.transition_to(
            memory_id, state, reason=reason, agent_id=agent_id, force=force
        )
        return {
            "memory_id": memory_id,
            "success": success,
            "state": await self._states.get_current_state(memory_id),
        }

    async def state_history(self, memory_id: str) -> list[dict[str, Any]]:
        self._ensure_initialized()
        assert self._states is not None
        return [t.to_dict() for t in self._states.get_state_history(memory_id)]

    # ==================================================================
    # Maintenance
    # ==================================================================

    async def stats(self, namespace: str | None = None) -> dict[str, Any]:
        """Consolidation, relationship and processing-state statistics."""
        self._ensure_initialized()
        assert self._consolidation is not None
        assert self._relationships is not None
        assert self._states is not None
        namespace = self._ns(namespace)

        consolidation = await self._consolidation.get_consolidation_stats(namespace)
        relationships = await self._relationships.get_relationship_statistics(namespace)
        states = await self._states.get_state_statistics(namespace)
        return {
            "namespace": namespace,
            "consolidation": consolidation.to_dict(),
            "relationships": relationships.to_dict(),
            "states": states,
        }

    async def cleanup(
        self,
        namespace: str | None = None,
        older_than_days: int | None = None,
        dry_run: bool = False,
        include_relationships: bool = True,
    ) -> dict[str, Any]:
        """Clean old consolidated duplicates and, optionally, stale edges.

        The database is optimised afterwards unless this is a dry run.
        """
        self._ensure_initialized()
        assert self._consolidation is not None
        assert self._relationships is not None
        assert self._storage is not None
        namespace = self._ns(namespace)

        memories = await self._consolidation.cleanup_consolidated_memories(
            older_than_days=older_than_days, dry_run=dry_run, namespace=namespace
        )
        result: dict[str, Any] = {"namespace": namespace, "memories": memories.to_dict()}
        if include_relationships:
            edges = await self._relationships.cleanup_invalid_relationships(
                namespace, dry_run=dry_run
            )
            result["relationships"] = edges.to_dict()

        if not dry_run:
            await self._storage.optimize()
        return result

    async def status(self) -> dict[str, Any]:
        """Database location, size and row counts."""
        self._ensure_initialized()
        assert self._storage is not None
        return {
            "db_path": str(self._storage.db_path),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "tables": await self._storage.table_counts(),
            "default_namespace": self._config.default_namespace,
        }

    async def shutdown(self) -> None:
        """Close storage.  Safe to call even if never initialised."""
        if self._storage:
            await self._storage.close()
        self._initialized = False
        logger.info("Memory store shut down")
