"""Relationship graph between memory records.

Every memory owns its outgoing edges, split into two JSON columns:
``superseding_relationships`` for ``supersedes`` edges and
``general_relationships`` for every other type.  Within one memory an
edge is unique by ``(type, target_memory_id)``.

The module is organised in three layers:

* Pure functions -- :func:`validate_relationship`,
  :func:`validate_relationships`, :func:`merge_relationships`,
  :func:`detect_relationship_conflicts` and
  :func:`resolve_conflicts_by_quality`.
* Result dataclasses returned by the manager.
* :class:`RelationshipManager` -- storage, queries, conflict resolution
  and maintenance sweeps.  Every write is a read-modify-write performed
  inside :meth:`~memstore.storage.Storage.execute_transaction`, so two
  writers on the same memory cannot lose each other's edges.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from memstore.config import get_config
from memstore.consolidation import CleanupResult
from memstore.errors import MemoryNotFoundError, RelationshipValidationError
from memstore.records import (
    RELATIONSHIP_TYPES,
    MemoryRecord,
    MemoryRepository,
    Relationship,
    fetch_record,
    now_iso,
    parse_iso,
    write_fields,
)

log = logging.getLogger(__name__)

__all__ = [
    "Relationship",
    "RelationshipManager",
    "RelationshipQuery",
    "RelationshipUpdate",
    "detect_relationship_conflicts",
    "merge_relationships",
    "resolve_conflicts_by_quality",
    "validate_relationship",
    "validate_relationships",
]

UPDATE_OPERATIONS: tuple[str, ...] = ("add", "update", "remove")
"""Operations accepted by :meth:`RelationshipManager.update_relationships`."""

_MIN_REASON_LENGTH = 10
_MIN_CONTEXT_LENGTH = 5
_MAX_STRENGTH_OVER_CONFIDENCE = 0.3
_CONFIDENCE_VARIANCE_LIMIT = 0.5
_KEEP_PER_TARGET = 2
_NETWORK_FANOUT = 10
_TOP_ENTITIES = 20
_RECENT_DAYS = 30


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_relationship(rel: Relationship) -> str | None:
    """Return the reason *rel* is invalid, or ``None`` when it is valid."""
    if not rel.type:
        return "Missing relationship type"
    if len((rel.reason or "").strip()) < _MIN_REASON_LENGTH:
        return "Insufficient reasoning provided"
    if len((rel.context or "").strip()) < _MIN_CONTEXT_LENGTH:
        return "Insufficient context provided"
    if not 0.0 <= rel.confidence <= 1.0:
        return "Confidence must be between 0 and 1"
    if not 0.0 <= rel.strength <= 1.0:
        return "Strength must be between 0 and 1"
    if rel.type not in RELATIONSHIP_TYPES:
        return f"Invalid relationship type: {rel.type}"
    if any(not isinstance(e, str) or not e.strip() for e in rel.entities):
        return "Invalid entities in relationship"
    if rel.strength > rel.confidence + _MAX_STRENGTH_OVER_CONFIDENCE:
        return "Strength cannot significantly exceed confidence"
    return None


def validate_relationships(
    relationships: Iterable[Relationship],
) -> tuple[list[Relationship], list[dict[str, Any]]]:
    """Split *relationships* into valid edges and ``{relationship, reason}`` rejects."""
    valid: list[Relationship] = []
    invalid: list[dict[str, Any]] = []
    for rel in relationships:
        reason = validate_relationship(rel)
        if reason is None:
            valid.append(rel)
        else:
            invalid.append({"relationship": rel.to_dict(), "reason": reason})
    return valid, invalid


def _coerce(items: Iterable[Relationship | Mapping[str, Any]]) -> tuple[list[Relationship], list[dict[str, Any]]]:
    edges: list[Relationship] = []
    malformed: list[dict[str, Any]] = []
    for item in items:
        try:
            edges.append(Relationship.from_dict(item))
        except RelationshipValidationError as exc:
            malformed.append({"relationship": exc.payload, "reason": exc.reason})
    return edges, malformed


# ---------------------------------------------------------------------------
# Merge, conflicts and resolution
# ---------------------------------------------------------------------------


def merge_relationships(
    existing: Iterable[Relationship],
    incoming: Iterable[Relationship],
) -> list[Relationship]:
    """Fold *incoming* edges into *existing*.

    An incoming edge with a known key replaces the stored one only when
    its confidence or strength is higher; reason and context come from
    whichever of the two has the higher confidence.  Novel keys are
    appended in order.
    """
    merged = list(existing)
    index = {rel.key: i for i, rel in enumerate(merged)}
    for rel in incoming:
        position = index.get(rel.key)
        if position is None:
            index[rel.key] = len(merged)
            merged.append(rel)
            continue
        current = merged[position]
        if rel.confidence > current.confidence or rel.strength > current.strength:
            richer = rel if rel.confidence > current.confidence else current
            merged[position] = Relationship(
                type=rel.type,
                target_memory_id=rel.target_memory_id,
                confidence=rel.confidence,
                strength=rel.strength,
                reason=richer.reason,
                context=richer.context,
                entities=list(rel.entities),
            )
    return merged


def _combine_max(current: Relationship, rel: Relationship) -> Relationship:
    richer = rel if rel.confidence > current.confidence else current
    return Relationship(
        type=current.type,
        target_memory_id=current.target_memory_id,
        confidence=max(current.confidence, rel.confidence),
        strength=max(current.strength, rel.strength),
        reason=richer.reason,
        context=richer.context,
        entities=list(dict.fromkeys([*current.entities, *rel.entities])),
    )


def _group_by_target(relationships: Iterable[Relationship]) -> dict[str, list[Relationship]]:
    groups: dict[str, list[Relationship]] = {}
    for rel in relationships:
        if rel.target_memory_id:
            groups.setdefault(rel.target_memory_id, []).append(rel)
    return groups


@dataclass
class RelationshipConflict:
    """One problem found in a memory's edge list."""

    type: str
    description: str
    target_memory_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "target_memory_id": self.target_memory_id,
        }


def detect_relationship_conflicts(
    relationships: Iterable[Relationship],
) -> list[RelationshipConflict]:
    """Find contradictory, repeated-supersedes and high-variance edge groups.

    Edges are grouped by target; groups of one edge never conflict.
    """
    conflicts: list[RelationshipConflict] = []
    for target, rels in _group_by_target(relationships).items():
        if len(rels) < 2:
            continue
        types = {r.type for r in rels}
        if "contradiction" in types and "continuation" in types:
            conflicts.append(
                RelationshipConflict(
                    "contradictory_types",
                    f"Memory has both CONTRADICTION and CONTINUATION relationships with {target}",
                    target,
                )
            )
        if sum(1 for r in rels if r.is_superseding) > 1:
            conflicts.append(
                RelationshipConflict(
                    "multiple_superseding",
                    f"Memory has multiple SUPERSEDES relationships with {target}",
                    target,
                )
            )
        confidences = [r.confidence for r in rels]
        low, high = min(confidences), max(confidences)
        if high - low > _CONFIDENCE_VARIANCE_LIMIT:
            conflicts.append(
                RelationshipConflict(
                    "confidence_variance",
                    f"High confidence variance ({low:.2f}-{high:.2f}) "
                    f"for relationships with {target}",
                    target,
                )
            )
    return conflicts


def resolve_conflicts_by_quality(
    relationships: Iterable[Relationship],
) -> tuple[list[Relationship], list[Relationship]]:
    """Keep the two best edges per target, ranked by :attr:`Relationship.quality`.

    Ties keep their original order.  Edges without a target are always
    kept.

    Returns
    -------
    tuple[list[Relationship], list[Relationship]]
        ``(kept, discarded)``.
    """
    relationships = list(relationships)
    dropped: set[int] = set()
    positions: dict[str, list[int]] = {}
    for i, rel in enumerate(relationships):
        if rel.target_memory_id:
            positions.setdefault(rel.target_memory_id, []).append(i)
    for members in positions.values():
        ranked = sorted(members, key=lambda i: -relationships[i].quality)
        dropped.update(ranked[_KEEP_PER_TARGET:])
    kept = [rel for i, rel in enumerate(relationships) if i not in dropped]
    discarded = [rel for i, rel in enumerate(relationships) if i in dropped]
    return kept, discarded


def _partition(relationships: Iterable[Relationship]) -> tuple[list[Relationship], list[Relationship]]:
    general: list[Relationship] = []
    superseding: list[Relationship] = []
    for rel in relationships:
        (superseding if rel.is_superseding else general).append(rel)
    return general, superseding


def _matches(
    rel: Relationship,
    relationship_type: str | None = None,
    target_memory_id: str | None = None,
    min_confidence: float | None = None,
    min_strength: float | None = None,
) -> bool:
    if relationship_type is not None and rel.type != relationship_type.lower():
        return False
    if target_memory_id is not None and rel.target_memory_id != target_memory_id:
        return False
    if min_confidence is not None and rel.confidence < min_confidence:
        return False
    if min_strength is not None and rel.strength < min_strength:
        return False
    return True


# ---------------------------------------------------------------------------
# Request and result types
# ---------------------------------------------------------------------------


@dataclass
class RelationshipUpdate:
    """One edit for :meth:`RelationshipManager.update_relationships`."""

    relationship: Relationship
    operation: str = "add"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RelationshipUpdate:
        return cls(
            relationship=Relationship.from_dict(data.get("relationship")),
            operation=str(data.get("operation", "add")).lower(),
        )


@dataclass
class StoreResult:
    stored: int = 0
    errors: list[str] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"stored": self.stored, "errors": self.errors, "invalid": self.invalid}


@dataclass
class UpdateResult:
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "errors": self.errors}


@dataclass
class RelatedMemory:
    """A memory reached through one edge, seen from the queried memory."""

    memory: MemoryRecord
    relationship: Relationship
    direction: str

    @property
    def score(self) -> float:
        return (self.relationship.strength + self.relationship.confidence) / 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory.id,
            "content": self.memory.content,
            "summary": self.memory.summary,
            "relationship": self.relationship.to_dict(),
            "direction": self.direction,
            "score": round(self.score, 4),
        }


@dataclass
class RelationshipQuery:
    """Filters for a namespace-wide relationship scan."""

    namespace: str = "default"
    relationship_type: str | None = None
    source_memory_id: str | None = None
    target_memory_id: str | None = None
    min_confidence: float | None = None
    min_strength: float | None = None
    limit: int | None = None


@dataclass
class RelationshipMatch:
    memory: MemoryRecord
    relationships: list[Relationship]
    match_reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory.id,
            "content": self.memory.content,
            "relationships": [r.to_dict() for r in self.relationships],
            "match_reason": self.match_reason,
        }


@dataclass
class ConflictResolution:
    """Outcome of :meth:`RelationshipManager.resolve_relationship_conflicts`.

    ``resolved`` counts the conflicts detected; ``conflicts`` lists them
    followed by one ``discarded_relationship`` entry per dropped edge.
    """

    resolved: int = 0
    conflicts: list[RelationshipConflict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolved": self.resolved,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass
class NetworkEdge:
    source_memory_id: str
    relationship: Relationship
    direction: str
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_memory_id": self.source_memory_id,
            "relationship": self.relationship.to_dict(),
            "direction": self.direction,
            "depth": self.depth,
        }


@dataclass
class RelationshipNetwork:
    memory_id: str
    edges: list[NetworkEdge] = field(default_factory=list)
    max_depth_reached: int = 0
    unique_types: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "edges": [e.to_dict() for e in self.edges],
            "total_relationships": len(self.edges),
            "max_depth_reached": self.max_depth_reached,
            "unique_types": self.unique_types,
        }


@dataclass
class RelationshipStatistics:
    namespace: str
    total_relationships: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    average_strength: float = 0.0
    top_entities: list[tuple[str, int]] = field(default_factory=list)
    recent_relationships: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "total_relationships": self.total_relationships,
            "by_type": self.by_type,
            "average_confidence": self.average_confidence,
            "average_strength": self.average_strength,
            "top_entities": [{"entity": e, "count": c} for e, c in self.top_entities],
            "recent_relationships": self.recent_relationships,
        }


@dataclass
class ConsistencyReport:
    memory_id: str
    is_valid: bool
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"memory_id": self.memory_id, "is_valid": self.is_valid, "issues": self.issues}


# ---------------------------------------------------------------------------
# RelationshipManager
# ---------------------------------------------------------------------------


class RelationshipManager:
    """Store, query and maintain relationship edges.

    Parameters
    ----------
    repository:
        Record access; its storage provides the write transactions.
    """

    def __init__(self, repository: MemoryRepository) -> None:
        self._repository = repository
        self._storage = repository.storage
        self._cfg = get_config().relationships

    def _write_edges(
        self,
        conn: sqlite3.Connection,
        record: MemoryRecord,
        edges: list[Relationship],
        extra_metadata: dict[str, str] | None = None,
    ) -> None:
        general, superseding = _partition(edges)
        metadata = {
            **record.metadata,
            **(extra_metadata or {}),
            "relationship_count": str(len(general)),
            "superseding_count": str(len(superseding)),
            "last_relationship_update": now_iso(),
        }
        write_fields(
            conn,
            record.id,
            {
                "general_relationships": [r.to_dict() for r in general],
                "superseding_relationships": [r.to_dict() for r in superseding],
                "metadata": metadata,
            },
        )

    def _cap(self, memory_id: str, edges: list[Relationship], errors: list[str]) -> list[Relationship]:
        limit = self._cfg.max_per_memory
        if len(edges) <= limit:
            return edges
        ranked = sorted(range(len(edges)), key=lambda i: -edges[i].quality)
        keep = set(ranked[:limit])
        errors.append(
            f"Relationship limit of {limit} reached for memory {memory_id}; "
            f"dropped {len(edges) - limit} lowest-quality relationship(s)"
        )
        return [rel for i, rel in enumerate(edges) if i in keep]

    # ------------------------------------------------------------------
    # Store and update
    # ------------------------------------------------------------------

    async def store_relationships(
        self,
        memory_id: str,
        relationships: Iterable[Relationship | Mapping[str, Any]],
        namespace: str = "default",
    ) -> StoreResult:
        """Validate and merge *relationships* into a memory's edge lists.

        Invalid edges are reported in ``invalid`` and never written; the
        valid ones are still stored.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* is not in *namespace*.
        """
        edges, malformed = _coerce(relationships)
        valid, invalid = validate_relationships(edges)
        result = StoreResult(invalid=malformed + invalid)
        log.info(
            "Storing %d relationships for memory %s (%d invalid)",
            len(valid),
            memory_id,
            len(result.invalid),
        )
        if not valid:
            return result

        def _store(conn: sqlite3.Connection) -> None:
            record = fetch_record(conn, memory_id, namespace)
            if record is None:
                raise MemoryNotFoundError(memory_id, namespace)
            incoming_general, incoming_superseding = _partition(valid)
            merged = merge_relationships(record.general_relationships, incoming_general)
            merged += merge_relationships(record.superseding_relationships, incoming_superseding)
            self._write_edges(conn, record, self._cap(memory_id, merged, result.errors))

        await self._storage.execute_transaction(_store)
        result.stored = len(valid)
        log.info("Stored %d relationships for memory %s", result.stored, memory_id)
        return result

    async def update_relationships(
        self,
        memory_id: str,
        updates: Iterable[RelationshipUpdate],
        namespace: str = "default",
    ) -> UpdateResult:
        """Apply ``add``, ``update`` and ``remove`` edits in one transaction.

        ``add`` merges with an existing edge keeping the higher confidence
        and strength.  ``update`` replaces an existing edge and is an error
        if there is none.  ``remove`` of a missing edge is a no-op.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* is not in *namespace*.
        """
        updates = list(updates)
        result = UpdateResult()
        log.info("Updating %d relationships for memory %s", len(updates), memory_id)

        def _apply(conn: sqlite3.Connection) -> None:
            record = fetch_record(conn, memory_id, namespace)
            if record is None:
                raise MemoryNotFoundError(memory_id, namespace)
            edges = record.relationships
            index = {rel.key: i for i, rel in enumerate(edges)}
            removed: set[int] = set()
            changed = 0

            for update in updates:
                rel = update.relationship
                operation = update.operation.lower()
                label = f"{rel.type} -> {rel.target_memory_id}"
                if operation not in UPDATE_OPERATIONS:
                    result.errors.append(f"Unknown relationship operation: {update.operation}")
                    continue
                position = index.get(rel.key)
                if position in removed:
                    position = None

                if operation == "remove":
                    if position is None:
                        log.info("Relationship %s not present on %s; nothing to remove", label, memory_id)
                        continue
                    removed.add(position)
                    del index[rel.key]
                    changed += 1
                    continue

                reason = validate_relationship(rel)
                if reason is not None:
                    result.errors.append(f"Invalid relationship {label}: {reason}")
                    continue
                if operation == "update":
                    if position is None:
                        result.errors.append(f"Relationship not found for update: {label}")
                        continue
                    edges[position] = rel
                elif position is None:
                    index[rel.key] = len(edges)
                    edges.append(rel)
                else:
                    edges[position] = _combine_max(edges[position], rel)
                changed += 1

            if changed:
                kept = [rel for i, rel in enumerate(edges) if i not in removed]
                self._write_edges(conn, record, self._cap(memory_id, kept, result.errors))
            result.updated = changed

        await self._storage.execute_transaction(_apply)
        log.info(
            "Updated %d relationships for memory %s (%d errors)",
            result.updated,
            memory_id,
            len(result.errors),
        )
        return result

    async def bulk_update_relationships(
        self,
        updates: Mapping[str, Iterable[RelationshipUpdate]],
        namespace: str = "default",
    ) -> UpdateResult:
        """Run :meth:`update_relationships` per memory, collecting failures."""
        total = UpdateResult()
        log.info("Bulk updating relationships for %d memories", len(updates))
        for memory_id, edits in updates.items():
            try:
                outcome = await self.update_relationships(memory_id, edits, namespace)
            except Exception as exc:
                log.warning("Relationship update failed for memory %s: %s", memory_id, exc)
                total.errors.append(
                    f"Failed to update relationships for memory {memory_id}: {exc}"
                )
                continue
            total.updated += outcome.updated
            total.errors.extend(outcome.errors)
        log.info(
            "Bulk relationship update finished: updated=%d errors=%d",
            total.updated,
            len(total.errors),
        )
        return total

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_related_memories(
        self,
        memory_id: str,
        namespace: str = "default",
        relationship_type: str | None = None,
        min_confidence: float | None = None,
        min_strength: float | None = None,
        limit: int | None = None,
    ) -> list[RelatedMemory]:
        """Memories linked to *memory_id* by outgoing or incoming edges.

        Returns
        -------
        list[RelatedMemory]
            Sorted by ``(strength + confidence) / 2`` descending, at most
            *limit* entries.  Empty when the memory lives in another
            namespace.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* does not exist at all.
        """
        limit = self._cfg.default_limit if limit is None else limit
        record = await self._repository.get(memory_id)
        if record is None:
            raise MemoryNotFoundError(memory_id)
        if record.namespace != namespace:
            return []

        filters = dict(
            relationship_type=relationship_type,
            min_confidence=min_confidence,
            min_strength=min_strength,
        )
        outgoing = [rel for rel in record.relationships if rel.target_memory_id and _matches(rel, **filters)]
        targets = await self._repository.get_many(
            [rel.target_memory_id for rel in outgoing if rel.target_memory_id], namespace
        )

        related: list[RelatedMemory] = []
        for rel in outgoing:
            target = targets.get(rel.target_memory_id or "")
            if target is not None:
                related.append(RelatedMemory(target, rel, "outgoing"))

        for other in await self._repository.list_namespace(namespace):
            if other.id == memory_id:
                continue
            for rel in other.relationships:
                if rel.target_memory_id == memory_id and _matches(rel, **filters):
                    related.append(RelatedMemory(other, rel, "incoming"))

        related.sort(key=lambda r: -r.score)
        return related[:limit]

    async def get_memories_by_relationship(
        self,
        query: RelationshipQuery,
    ) -> list[RelationshipMatch]:
        """Scan a namespace for memories owning edges that match *query*."""
        limit = self._cfg.query_limit if query.limit is None else query.limit
        if query.source_memory_id is not None:
            source = await self._repository.get(query.source_memory_id, query.namespace)
            records = [source] if source is not None else []
        else:
            records = await self._repository.list_namespace(query.namespace)

        matches: list[RelationshipMatch] = []
        for record in records:
            found = [
                rel
                for rel in record.relationships
                if _matches(
                    rel,
                    query.relationship_type,
                    query.target_memory_id,
                    query.min_confidence,
                    query.min_strength,
                )
            ]
            if found:
                matches.append(
                    RelationshipMatch(
                        memory=record,
                        relationships=found,
                        match_reason=f"Found {len(found)} matching relationship(s)",
                    )
                )
            if len(matches) >= limit:
                break
        log.info("Relationship query in %s matched %d memories", query.namespace, len(matches))
        return matches

    async def get_relationship_network(
        self,
        memory_id: str,
        max_depth: int | None = None,
        namespace: str = "default",
    ) -> RelationshipNetwork:
        """Breadth-first walk of the graph around *memory_id*.

        Direct neighbours are depth 1.  Each memory is expanded once, so
        cycles terminate.
        """
        max_depth = self._cfg.network_max_depth if max_depth is None else max_depth
        network = RelationshipNetwork(memory_id=memory_id)
        seen_edges: set[tuple[str, str, str | None]] = set()
        visited = {memory_id}
        queue: deque[tuple[str, int]] = deque([(memory_id, 1)])
        types: dict[str, None] = {}

        while queue:
            current, depth = queue.popleft()
            if depth > max_depth:
                continue
            try:
                neighbours = await self.get_related_memories(
                    current, namespace, limit=_NETWORK_FANOUT
                )
            except MemoryNotFoundError:
                if current == memory_id:
                    raise
                log.warning("Memory %s vanished during network traversal", current)
                continue
            for related in neighbours:
                source = current if related.direction == "outgoing" else related.memory.id
                edge_key = (source, related.relationship.type, related.relationship.target_memory_id)
                if edge_key not in seen_edges:
                    seen_edges.add(edge_key)
                    network.edges.append(
                        NetworkEdge(source, related.relationship, related.direction, depth)
                    )
                    types[related.relationship.type] = None
                    network.max_depth_reached = max(network.max_depth_reached, depth)
                if related.memory.id not in visited:
                    visited.add(related.memory.id)
                    queue.append((related.memory.id, depth + 1))

        network.unique_types = list(types)
        log.info(
            "Relationship network of %s: %d edges, depth %d",
            memory_id,
            len(network.edges),
            network.max_depth_reached,
        )
        return network

    async def get_relationship_statistics(self, namespace: str = "default") -> RelationshipStatistics:
        """Totals by type, average scores and the most common entities."""
        stats = RelationshipStatistics(
            namespace=namespace, by_type={t: 0 for t in RELATIONSHIP_TYPES}
        )
        recent_cutoff = datetime.now(tz=timezone.utc) - timedelta(days=_RECENT_DAYS)
        entity_counts: Counter[str] = Counter()
        confidence_total = strength_total = 0.0

        for record in await self._repository.list_namespace(namespace):
            created = parse_iso(record.created_at)
            is_recent = created is not None and created >= recent_cutoff
            for rel in record.relationships:
                stats.total_relationships += 1
                stats.by_type[rel.type] = stats.by_type.get(rel.type, 0) + 1
                confidence_total += rel.confidence
                strength_total += rel.strength
                entity_counts.update(e for e in rel.entities if isinstance(e, str))
                if is_recent:
                    stats.recent_relationships += 1

        if stats.total_relationships:
            stats.average_confidence = round(confidence_total / stats.total_relationships, 2)
            stats.average_strength = round(strength_total / stats.total_relationships, 2)
        stats.top_entities = entity_counts.most_common(_TOP_ENTITIES)
        return stats

    # ------------------------------------------------------------------
    # Conflicts and consistency
    # ------------------------------------------------------------------

    async def resolve_relationship_conflicts(
        self,
        memory_id: str,
        namespace: str = "default",
    ) -> ConflictResolution:
        """Detect conflicts on one memory and keep the best edges per target.

        Nothing is written when no conflict is found.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* is not in *namespace*.
        """
        log.info("Resolving relationship conflicts for memory %s", memory_id)

        def _resolve(conn: sqlite3.Connection) -> ConflictResolution:
            record = fetch_record(conn, memory_id, namespace)
            if record is None:
                raise MemoryNotFoundError(memory_id, namespace)
            edges = record.relationships
            conflicts = detect_relationship_conflicts(edges)
            if not conflicts:
                return ConflictResolution()

            kept, discarded = resolve_conflicts_by_quality(edges)
            count = int(record.metadata.get("conflict_resolution_count", "0") or 0) + 1
            self._write_edges(
                conn,
                record,
                kept,
                {
                    "conflict_resolution_count": str(count),
                    "last_conflict_resolution": now_iso(),
                },
            )
            audit = [
                RelationshipConflict(
                    "discarded_relationship",
                    f"Discarded {rel.type} relationship with {rel.target_memory_id} "
                    f"(quality {rel.quality:.2f})",
                    rel.target_memory_id,
                )
                for rel in discarded
            ]
            return ConflictResolution(resolved=len(conflicts), conflicts=conflicts + audit)

        resolution = await self._storage.execute_transaction(_resolve)
        log.info(
            "Resolved %d relationship conflicts for memory %s", resolution.resolved, memory_id
        )
        return resolution

    async def validate_relationship_consistency(
        self,
        memory_id: str,
        namespace: str = "default",
    ) -> ConsistencyReport:
        """Check edge validity, target existence and reciprocal ``related`` edges."""
        record = await self._repository.get(memory_id)
        if record is None:
            return ConsistencyReport(memory_id, False, [f"Memory {memory_id} not found"])

        issues: list[str] = []
        if record.namespace != namespace:
            issues.append(f"Memory {memory_id} is not in namespace {namespace}")

        edges = record.relationships
        targets = await self._repository.get_many(
            [r.target_memory_id for r in edges if r.target_memory_id]
        )
        for rel in edges:
            reason = validate_relationship(rel)
            if reason is not None:
                issues.append(f"Invalid relationship {rel.type} -> {rel.target_memory_id}: {reason}")
            if not rel.target_memory_id:
                continue
            target = targets.get(rel.target_memory_id)
            if target is None:
                issues.append(
                    f"Target memory {rel.target_memory_id} not found for relationship {rel.type}"
                )
                continue
            if target.namespace != namespace:
                issues.append(f"Target memory {rel.target_memory_id} is not in the same namespace")
            if rel.type == "related" and not any(
                back.target_memory_id == memory_id for back in target.relationships
            ):
                issues.append(
                    f"Missing reciprocal relationship: {rel.target_memory_id} "
                    f"should reference {memory_id}"
                )

        report = ConsistencyReport(memory_id, not issues, issues)
        log.info(
            "Relationship consistency for %s: %s (%d issues)",
            memory_id,
            "passed" if report.is_valid else "failed",
            len(issues),
        )
        return report

    async def cleanup_invalid_relationships(
        self,
        namespace: str = "default",
        min_confidence: float | None = None,
        max_age_days: int | None = None,
        dry_run: bool = False,
    ) -> CleanupResult:
        """Drop invalid and low-confidence edges from memories older than *max_age_days*.

        ``cleaned`` counts edges removed (or that would be, for a dry run);
        ``skipped`` counts memories that needed no change.
        """
        min_confidence = self._cfg.cleanup_min_confidence if min_confidence is None else min_confidence
        max_age_days = self._cfg.cleanup_max_age_days if max_age_days is None else max_age_days
        cutoff = datetime.now(tz=timezone.utc) - timedelta(days=max_age_days)
        result = CleanupResult(dry_run=dry_run)
        log.info(
            "Cleaning relationships in %s (min_confidence=%.2f, older than %d days%s)",
            namespace,
            min_confidence,
            max_age_days,
            ", dry-run" if dry_run else "",
        )

        def _keep(edges: list[Relationship]) -> list[Relationship]:
            return [
                r for r in edges
                if validate_relationship(r) is None and r.confidence >= min_confidence
            ]

        for record in await self._repository.list_namespace(namespace):
            created = parse_iso(record.created_at)
            if created is None or created >= cutoff:
                continue
            edges = record.relationships
            removed = len(edges) - len(_keep(edges))
            if not removed:
                result.skipped += 1
                continue
            if dry_run:
                log.info("Would remove %d relationships from memory %s", removed, record.id)
                result.cleaned += removed
                continue

            def _clean(conn: sqlite3.Connection, memory_id: str = record.id) -> int:
                current = fetch_record(conn, memory_id, namespace)
                if current is None:
                    raise MemoryNotFoundError(memory_id, namespace)
                current_edges = current.relationships
                kept = _keep(current_edges)
                count = int(current.metadata.get("relationship_cleanup_count", "0") or 0) + 1
                self._write_edges(
                    conn,
                    current,
                    kept,
                    {
                        "relationship_cleanup_count": str(count),
                        "last_relationship_cleanup": now_iso(),
                    },
                )
                return len(current_edges) - len(kept)

            try:
                result.cleaned += await self._storage.execute_transaction(_clean)
            except Exception as exc:
                log.warning("Relationship cleanup failed for memory %s: %s", record.id, exc)
                result.errors.append(
                    f"Failed to cleanup relationships for memory {record.id}: {exc}"
                )

        log.info(
            "Relationship cleanup in %s: cleaned=%d skipped=%d errors=%d",
            namespace,
            result.cleaned,
            result.skipped,
            len(result.errors),
        )
        return result
