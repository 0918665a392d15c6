"""Field-level snapshots taken before a consolidation and replayed on failure.

A :class:`BackupSnapshot` lives only in memory for the duration of one
consolidation.  It records every field a merge can write on each affected
record, so :meth:`BackupManager.rollback` can put the records back exactly
as they were and tag them with a ``rollback_reason`` marker.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from memstore.errors import RollbackError
from memstore.records import (
    ConsolidationEvent,
    MemoryRecord,
    MemoryRepository,
    now_iso,
    write_fields,
)

log = logging.getLogger(__name__)

ROLLBACK_REASON = "consolidation_failure"


@dataclass
class MemoryFieldsBackup:
    """Every mutable field consolidation may touch on one record."""

    content: str
    summary: str
    entities: list[str]
    keywords: list[str]
    topic: str | None
    confidence_score: float
    classification_reason: str
    extraction_timestamp: str | None
    is_duplicate: bool
    duplicate_of: str | None
    is_consolidated: bool
    consolidated_into: str | None
    consolidated_at: str | None
    consolidation_history: list[ConsolidationEvent]
    metadata: dict[str, str]

    @classmethod
    def from_record(cls, record: MemoryRecord) -> MemoryFieldsBackup:
        return cls(
            content=record.content,
            summary=record.summary,
            entities=list(record.entities),
            keywords=list(record.keywords),
            topic=record.topic,
            confidence_score=record.confidence_score,
            classification_reason=record.classification_reason,
            extraction_timestamp=record.extraction_timestamp,
            is_duplicate=record.is_duplicate,
            duplicate_of=record.duplicate_of,
            is_consolidated=record.is_consolidated,
            consolidated_into=record.consolidated_into,
            consolidated_at=record.consolidated_at,
            consolidation_history=copy.deepcopy(record.consolidation_history),
            metadata=dict(record.metadata),
        )

    def to_fields(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "summary": self.summary,
            "entities": self.entities,
            "keywords": self.keywords,
            "topic": self.topic,
            "confidence_score": self.confidence_score,
            "classification_reason": self.classification_reason,
            "extraction_timestamp": self.extraction_timestamp,
            "is_duplicate": self.is_duplicate,
            "duplicate_of": self.duplicate_of,
            "is_consolidated": self.is_consolidated,
            "consolidated_into": self.consolidated_into,
            "consolidated_at": self.consolidated_at,
            "consolidation_history": self.consolidation_history,
            "metadata": self.metadata,
        }


@dataclass
class BackupSnapshot:
    """Per-id field backups for one consolidation."""

    namespace: str
    created_at: str
    records: dict[str, MemoryFieldsBackup] = field(default_factory=dict)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self.records

    def __len__(self) -> int:
        return len(self.records)


class BackupManager:
    """Create and replay :class:`BackupSnapshot` objects.

    Parameters
    ----------
    repository:
        The repository whose records are backed up and restored.
    """

    def __init__(self, repository: MemoryRepository) -> None:
        self._repository = repository

    async def backup(self, memory_ids: Iterable[str], namespace: str = "default") -> BackupSnapshot:
        """Capture the mutable fields of every id that exists in *namespace*."""
        ids = list(memory_ids)
        records = await self._repository.get_many(ids, namespace)
        snapshot = BackupSnapshot(namespace=namespace, created_at=now_iso())
        for memory_id in ids:
            record = records.get(memory_id)
            if record is not None:
                snapshot.records[memory_id] = MemoryFieldsBackup.from_record(record)
        log.info(
            "Backed up %d of %d memories in namespace %s", len(snapshot), len(ids), namespace
        )
        return snapshot

    async def rollback(
        self,
        primary_id: str,
        duplicate_ids: Iterable[str],
        snapshot: BackupSnapshot,
        namespace: str = "default",
    ) -> int:
        """Write every backed-up record back in a single transaction.

        Each restored record gets ``rollback_reason`` and
        ``rollback_timestamp`` metadata markers.

        Returns
        -------
        int
            Number of records restored.

        Raises
        ------
        RollbackError
            If the restore transaction fails.  Nothing is retried.
        """
        ids = [memory_id for memory_id in [primary_id, *duplicate_ids] if memory_id in snapshot]
        timestamp = now_iso()

        def _restore(conn: sqlite3.Connection) -> int:
            restored = 0
            for memory_id in ids:
                fields = snapshot.records[memory_id].to_fields()
                fields["metadata"] = {
                    **fields["metadata"],
                    "rollback_reason": ROLLBACK_REASON,
                    "rollback_timestamp": timestamp,
                }
                if write_fields(conn, memory_id, fields):
                    restored += 1
            return restored

        try:
            restored = await self._repository.storage.execute_transaction(_restore)
        except Exception as exc:
            log.error(
                "Rollback failed for primary %s in namespace %s: %s", primary_id, namespace, exc
            )
            raise RollbackError(
                f"Rollback failed for primary memory {primary_id}: {exc}"
            ) from exc

        log.info(
            "Rolled back %d memories for primary %s in namespace %s",
            restored,
            primary_id,
            namespace,
        )
        return restored
