"""Memory records, relationship edges and the repository that persists them.

A **memory record** is one stored unit of long-term knowledge, scoped to a
namespace.  Besides its text it carries extraction output (entities,
keywords, classification), consolidation bookkeeping and two lists of
outgoing relationship edges.

This module provides:

* :class:`MemoryRecord`, :class:`Relationship` and
  :class:`ConsolidationEvent` dataclasses with row / dict converters.
* :class:`MemoryRepository` -- async CRUD, batch reads and namespace scans
  over the ``memories`` table, plus synchronous helpers that run inside a
  :meth:`~memstore.storage.Storage.execute_transaction` callback.

Usage::

    from memstore.records import MemoryRepository

    repo = MemoryRepository(storage)
    record = await repo.create("Postgres VACUUM reclaims dead tuples", namespace="ops")
    same = await repo.get(record.id, "ops")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from memstore.errors import RelationshipValidationError, ValidationError
from memstore.storage import Storage

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CLASSIFICATIONS: tuple[str, ...] = (
    "essential",
    "contextual",
    "conversational",
    "reference",
    "personal",
    "conscious-info",
)
"""Allowed values for ``memories.classification``."""

IMPORTANCE_LEVELS: tuple[str, ...] = (
    "critical",
    "high",
    "medium",
    "low",
)
"""Allowed values for ``memories.importance``."""

IMPORTANCE_WEIGHTS: dict[str, float] = {
    "critical": 0.9,
    "high": 0.7,
    "medium": 0.5,
    "low": 0.3,
}

RELATIONSHIP_TYPES: tuple[str, ...] = (
    "continuation",
    "reference",
    "related",
    "supersedes",
    "contradiction",
)
"""Allowed relationship edge types.  ``supersedes`` edges are stored apart
from every other type."""

_JSON_FIELDS: frozenset[str] = frozenset({
    "entities",
    "keywords",
    "consolidation_history",
    "general_relationships",
    "superseding_relationships",
    "metadata",
})

_BOOL_FIELDS: frozenset[str] = frozenset({"is_duplicate", "is_consolidated"})

_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "content",
    "summary",
    "topic",
    "classification",
    "importance",
    "entities",
    "keywords",
    "confidence_score",
    "classification_reason",
    "is_duplicate",
    "duplicate_of",
    "is_consolidated",
    "consolidated_into",
    "consolidated_at",
    "consolidation_history",
    "general_relationships",
    "superseding_relationships",
    "processing_state",
    "metadata",
    "extraction_timestamp",
})


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(tz=timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def importance_weight(level: str | None) -> float:
    """Map an importance level to its numeric weight (unknown levels → 0.5)."""
    return IMPORTANCE_WEIGHTS.get(level or "medium", 0.5)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default
    return value if isinstance(value, type(default)) else default


def _to_json(value: Any) -> str:
    return json.dumps(value, default=lambda obj: obj.to_dict())


# ---------------------------------------------------------------------------
# Relationship dataclass
# ---------------------------------------------------------------------------


@dataclass
class Relationship:
    """A typed, directed, weighted edge owned by its source memory.

    Parameters
    ----------
    type:
        One of :data:`RELATIONSHIP_TYPES`.
    target_memory_id:
        The memory this edge points at.  ``None`` only while an edge is
        still being extracted.
    confidence:
        How certain the extractor is that the edge exists, in ``[0, 1]``.
    strength:
        How strongly the two memories are related, in ``[0, 1]``.
    reason:
        Free-text justification (at least 10 characters).
    context:
        Surrounding context (at least 5 characters).
    entities:
        Entities shared across the edge.
    """

    type: str
    target_memory_id: str | None
    confidence: float
    strength: float
    reason: str = ""
    context: str = ""
    entities: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str | None]:
        """Uniqueness key of the edge within its owning memory."""
        return (self.type, self.target_memory_id)

    @property
    def quality(self) -> float:
        """Weighted quality score used when resolving conflicts."""
        return self.confidence * 0.6 + self.strength * 0.4

    @property
    def is_superseding(self) -> bool:
        return self.type == "supersedes"

    @classmethod
    def from_dict(cls, data: Any) -> Relationship:
        """Build a :class:`Relationship` from a stored or caller-supplied dict.

        Range and content checks are left to
        :func:`memstore.relationships.validate_relationship`; only structural
        problems raise here.

        Raises
        ------
        RelationshipValidationError
            If *data* is not a mapping or a numeric field is not a number.
        """
        if isinstance(data, Relationship):
            return data
        if not isinstance(data, dict):
            raise RelationshipValidationError("Relationship must be a mapping", data)
        try:
            confidence = float(data.get("confidence", 0.0))
            strength = float(data.get("strength", 0.0))
        except (TypeError, ValueError) as exc:
            raise RelationshipValidationError(
                "Relationship confidence and strength must be numbers", data
            ) from exc
        raw_type = data.get("type") or ""
        entities = data.get("entities") or []
        return cls(
            type=str(raw_type).lower(),
            target_memory_id=data.get("target_memory_id"),
            confidence=confidence,
            strength=strength,
            reason=data.get("reason") or "",
            context=data.get("context") or "",
            entities=list(entities) if isinstance(entities, (list, tuple)) else [entities],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# ConsolidationEvent dataclass
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationEvent:
    """Audit entry appended to a primary's ``consolidation_history``."""

    timestamp: str
    consolidated_ids: list[str]
    data_integrity_hash: str
    original_classification: str
    original_importance: str
    duplicate_count: int
    reason: str = "duplicate_consolidation"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConsolidationEvent:
        return cls(
            timestamp=data.get("timestamp", ""),
            consolidated_ids=list(data.get("consolidated_ids", [])),
            data_integrity_hash=data.get("data_integrity_hash", ""),
            original_classification=data.get("original_classification", ""),
            original_importance=data.get("original_importance", ""),
            duplicate_count=int(data.get("duplicate_count", 0)),
            reason=data.get("reason", "duplicate_consolidation"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# MemoryRecord dataclass
# ---------------------------------------------------------------------------


@dataclass
class MemoryRecord:
    """In-memory representation of a single ``memories`` row.

    JSON columns are decoded into Python lists, dicts and dataclasses, and
    integer flags into bools.
    """

    id: str
    content: str
    namespace: str = "default"
    summary: str = ""
    topic: str | None = None
    classification: str = "contextual"
    importance: str = "medium"
    entities: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    confidence_score: float = 0.5
    classification_reason: str = ""
    is_duplicate: bool = False
    duplicate_of: str | None = None
    is_consolidated: bool = False
    consolidated_into: str | None = None
    consolidated_at: str | None = None
    consolidation_history: list[ConsolidationEvent] = field(default_factory=list)
    general_relationships: list[Relationship] = field(default_factory=list)
    superseding_relationships: list[Relationship] = field(default_factory=list)
    processing_state: str = "PENDING"
    metadata: dict[str, str] = field(default_factory=dict)
    extraction_timestamp: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def searchable_text(self) -> str:
        """Content and summary joined, as compared by duplicate detection."""
        return f"{self.content} {self.summary}".strip()

    @property
    def relationships(self) -> list[Relationship]:
        """Both edge partitions, general edges first."""
        return self.general_relationships + self.superseding_relationships

    @classmethod
    def from_row(cls, row: Any) -> MemoryRecord:
        """Create a :class:`MemoryRecord` from a :class:`sqlite3.Row`.

        Malformed relationship entries are skipped with a warning rather
        than failing the whole read.
        """
        return cls(
            id=row["id"],
            content=row["content"],
            namespace=row["namespace"],
            summary=row["summary"] or "",
            topic=row["topic"],
            classification=row["classification"],
            importance=row["importance"],
            entities=_load_json(row["entities"], []),
            keywords=_load_json(row["keywords"], []),
            confidence_score=float(row["confidence_score"]),
            classification_reason=row["classification_reason"] or "",
            is_duplicate=bool(row["is_duplicate"]),
            duplicate_of=row["duplicate_of"],
            is_consolidated=bool(row["is_consolidated"]),
            consolidated_into=row["consolidated_into"],
            consolidated_at=row["consolidated_at"],
            consolidation_history=[
                ConsolidationEvent.from_dict(e)
                for e in _load_json(row["consolidation_history"], [])
                if isinstance(e, dict)
            ],
            general_relationships=_decode_relationships(
                row["general_relationships"], row["id"]
            ),
            superseding_relationships=_decode_relationships(
                row["superseding_relationships"], row["id"]
            ),
            processing_state=row["processing_state"],
            metadata=_load_json(row["metadata"], {}),
            extraction_timestamp=row["extraction_timestamp"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the record to a plain dict suitable for tool responses."""
        return asdict(self)


def _decode_relationships(raw: str | None, memory_id: str) -> list[Relationship]:
    edges: list[Relationship] = []
    for item in _load_json(raw, []):
        try:
            edges.append(Relationship.from_dict(item))
        except RelationshipValidationError as exc:
            log.warning("Skipping malformed relationship on memory %s: %s", memory_id, exc)
    return edges


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_classification(classification: str) -> None:
    if classification not in CLASSIFICATIONS:
        raise ValidationError(
            f"Invalid classification {classification!r}. "
            f"Must be one of: {', '.join(CLASSIFICATIONS)}"
        )


def _validate_importance(importance: str) -> None:
    if importance not in IMPORTANCE_LEVELS:
        raise ValidationError(
            f"Invalid importance {importance!r}. "
            f"Must be one of: {', '.join(IMPORTANCE_LEVELS)}"
        )


def _validate_confidence(confidence: float) -> None:
    if not 0.0 <= confidence <= 1.0:
        raise ValidationError(
            f"Confidence must be between 0.0 and 1.0, got {confidence}"
        )


def _encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Turn Python field values into column values for an UPDATE."""
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown memory fields: {', '.join(sorted(unknown))}")
    encoded: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _JSON_FIELDS:
            encoded[name] = _to_json(value)
        elif name in _BOOL_FIELDS:
            encoded[name] = int(bool(value))
        else:
            encoded[name] = value
    return encoded


# ---------------------------------------------------------------------------
# Synchronous helpers for use inside execute_transaction callbacks
# ---------------------------------------------------------------------------


def fetch_record(
    conn: sqlite3.Connection,
    memory_id: str,
    namespace: str | None = None,
) -> MemoryRecord | None:
    """Read one record through an open transaction connection."""
    if namespace is None:
        row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM memories WHERE id = ? AND namespace = ?",
            (memory_id, namespace),
        ).fetchone()
    return MemoryRecord.from_row(row) if row else None


def write_fields(conn: sqlite3.Connection, memory_id: str, fields: dict[str, Any]) -> bool:
    """Update *fields* on one record through an open transaction connection.

    ``updated_at`` is always refreshed.  Returns ``True`` when a row changed.
    """
    encoded = _encode_fields(fields)
    encoded["updated_at"] = now_iso()
    assignments = ", ".join(f"{name} = :{name}" for name in encoded)
    cursor = conn.execute(
        f"UPDATE memories SET {assignments} WHERE id = :_id",
        {**encoded, "_id": memory_id},
    )
    return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class MemoryRepository:
    """Async CRUD and scan operations over the ``memories`` table.

    Parameters
    ----------
    storage:
        An initialised :class:`~memstore.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        content: str,
        namespace: str = "default",
        summary: str = "",
        topic: str | None = None,
        classification: str = "contextual",
        importance: str = "medium",
        entities: Iterable[str] | None = None,
        keywords: Iterable[str] | None = None,
        confidence_score: float = 0.5,
        classification_reason: str = "",
        metadata: dict[str, str] | None = None,
        memory_id: str | None = None,
        created_at: str | None = None,
    ) -> MemoryRecord:
        """Insert a new record in the ``PENDING`` processing state.

        Parameters
        ----------
        content:
            The searchable text.  Must be non-empty.
        namespace:
            Isolation key.
        entities, keywords:
            Ordered; repeated values are dropped.
        memory_id:
            Explicit id, mostly for imports and tests.  A uuid4 hex string
            is generated when omitted.

        Returns
        -------
        MemoryRecord
            The stored record.

        Raises
        ------
        ValidationError
            On empty content or an invalid classification, importance or
            confidence.
        """
        if not content or not content.strip():
            raise ValidationError("Memory content must not be empty")
        _validate_classification(classification)
        _validate_importance(importance)
        _validate_confidence(confidence_score)

        now = now_iso()
        record = MemoryRecord(
            id=memory_id or uuid.uuid4().hex,
            content=content,
            namespace=namespace,
            summary=summary,
            topic=topic,
            classification=classification,
            importance=importance,
            entities=list(dict.fromkeys(entities or [])),
            keywords=list(dict.fromkeys(keywords or [])),
            confidence_score=confidence_score,
            classification_reason=classification_reason,
            metadata=dict(metadata or {}),
            extraction_timestamp=now,
            created_at=created_at or now,
            updated_at=now,
        )

        await self._storage.execute_write(
            """
            INSERT INTO memories
                (id, namespace, content, summary, topic, classification,
                 importance, entities, keywords, confidence_score,
                 classification_reason, metadata, extraction_timestamp,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.namespace,
                record.content,
                record.summary,
                record.topic,
                record.classification,
                record.importance,
                _to_json(record.entities),
                _to_json(record.keywords),
                record.confidence_score,
                record.classification_reason,
                _to_json(record.metadata),
                record.extraction_timestamp,
                record.created_at,
                record.updated_at,
            ),
        )
        log.info("Created memory %s in namespace %s", record.id, namespace)
        return record

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, memory_id: str, namespace: str | None = None) -> MemoryRecord | None:
        """Fetch one record, optionally restricted to *namespace*."""
        if namespace is None:
            rows = await self._storage.execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            )
        else:
            rows = await self._storage.execute(
                "SELECT * FROM memories WHERE id = ? AND namespace = ?",
                (memory_id, namespace),
            )
        return MemoryRecord.from_row(rows[0]) if rows else None

    async def get_many(
        self,
        memory_ids: Iterable[str],
        namespace: str | None = None,
    ) -> dict[str, MemoryRecord]:
        """Fetch several records in one query, keyed by id.

        Ids that do not resolve (or live in another namespace) are simply
        absent from the result.
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        sql = f"SELECT * FROM memories WHERE id IN ({placeholders})"
        params: list[Any] = list(ids)
        if namespace is not None:
            sql += " AND namespace = ?"
            params.append(namespace)
        rows = await self._storage.execute(sql, tuple(params))
        return {row["id"]: MemoryRecord.from_row(row) for row in rows}

    async def list_namespace(
        self,
        namespace: str = "default",
        classifications: Iterable[str] | None = None,
        states: Iterable[str] | None = None,
        include_consolidated: bool = True,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Scan a namespace in ``(created_at, id)`` order.

        Parameters
        ----------
        classifications:
            Restrict to these classifications.
        states:
            Restrict to these processing states.
        include_consolidated:
            When ``False``, records already merged into another are skipped.
        limit:
            Maximum number of rows.
        """
        clauses = ["namespace = ?"]
        params: list[Any] = [namespace]
        if classifications is not None:
            values = list(classifications)
            clauses.append(f"classification IN ({','.join('?' for _ in values) or 'NULL'})")
            params.extend(values)
        if states is not None:
            values = list(states)
            clauses.append(f"processing_state IN ({','.join('?' for _ in values) or 'NULL'})")
            params.extend(values)
        if not include_consolidated:
            clauses.append("consolidated_into IS NULL")
        sql = f"SELECT * FROM memories WHERE {' AND '.join(clauses)} ORDER BY created_at, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._storage.execute(sql, tuple(params))
        return [MemoryRecord.from_row(row) for row in rows]

    async def count(
        self,
        namespace: str = "default",
        is_duplicate: bool | None = None,
        is_consolidated: bool | None = None,
    ) -> int:
        """Count records in a namespace, optionally filtered by flags."""
        clauses = ["namespace = ?"]
        params: list[Any] = [namespace]
        if is_duplicate is not None:
            clauses.append("is_duplicate = ?")
            params.append(int(is_duplicate))
        if is_consolidated is not None:
            clauses.append("is_consolidated = ?")
            params.append(int(is_consolidated))
        rows = await self._storage.execute(
            f"SELECT COUNT(*) AS cnt FROM memories WHERE {' AND '.join(clauses)}",
            tuple(params),
        )
        return rows[0]["cnt"]

    async def find_referencing(self, memory_id: str, namespace: str = "default") -> list[str]:
        """Ids of records whose ``duplicate_of`` points at *memory_id*."""
        rows = await self._storage.execute(
            "SELECT id FROM memories WHERE duplicate_of = ? AND namespace = ? ORDER BY id",
            (memory_id, namespace),
        )
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_fields(self, memory_id: str, fields: dict[str, Any]) -> bool:
        """Update selected fields of one record in its own transaction.

        Returns ``True`` if the record existed.
        """
        return await self._storage.execute_transaction(
            lambda conn: write_fields(conn, memory_id, fields)
        )

    async def set_processing_state(self, memory_id: str, state: str) -> bool:
        """Persist the processing state of one record."""
        return await self.update_fields(memory_id, {"processing_state": state})
