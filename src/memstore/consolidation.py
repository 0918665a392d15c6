"""Duplicate consolidation: validation, transactional merge and cleanup.

:meth:`ConsolidationEngine.consolidate` folds one or more duplicate
records into a primary record:

1. **Reject** trivially invalid input without touching storage.
2. **Lock** the primary and every duplicate with advisory ``locks`` rows,
   all or nothing, so no two consolidations sharing a record interleave.
3. **Validate** with :class:`ConsolidationValidator` (namespace, existence,
   circular consolidation, recency and batch-size guards) under those locks.
4. **Back up** every affected record.
5. **Merge and write** inside one ``BEGIN IMMEDIATE`` transaction with a
   time budget: the primary receives the merged payload and a
   :class:`~memstore.records.ConsolidationEvent`; each duplicate is marked
   as consolidated into the primary.
6. **Transition** the records to ``CONSOLIDATED`` on success, or **roll
   back** from the backup on failure.

Expected failures come back as :class:`ConsolidationResult` errors rather
than exceptions.  Every consolidation is written to the
``consolidation_log`` table for auditability.

Usage::

    engine = ConsolidationEngine(repository, backups, states, detector)
    result = await engine.consolidate(primary_id, [dup_a, dup_b], namespace="ops")
    if result.errors:
        ...
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import anyio

from memstore.backup import BackupManager
from memstore.config import get_config
from memstore.duplicates import DuplicateDetector
from memstore.errors import (
    MemoryNotFoundError,
    RollbackError,
    TransactionError,
    ValidationError,
)
from memstore.merge import data_integrity_hash, merge_duplicate_data
from memstore.records import (
    ConsolidationEvent,
    MemoryRecord,
    MemoryRepository,
    fetch_record,
    now_iso,
    parse_iso,
    write_fields,
)
from memstore.state import ARCHIVED, CONSOLIDATED, ProcessingStateManager
from memstore.storage import Storage

logger = logging.getLogger(__name__)

CONSOLIDATED_PREFIX = "[CONSOLIDATED:{timestamp}] "
CLEANED_PREFIX = "[CLEANED] "


def _record_payload(record: MemoryRecord) -> dict[str, Any]:
    """Fields covered by a record's pre-merge integrity hash."""
    return {
        "content": record.content,
        "summary": record.summary,
        "entities": record.entities,
        "keywords": record.keywords,
        "topic": record.topic,
        "confidence_score": record.confidence_score,
        "classification_reason": record.classification_reason,
    }


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """Outcome of pre-flight consolidation checks."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


@dataclass
class ConsolidationResult:
    """Summary of a single consolidation.

    Attributes
    ----------
    consolidated:
        Number of duplicates merged into the primary (``0`` on failure).
    errors:
        Human-readable failure reasons; empty on success.
    warnings:
        Non-fatal observations from validation or post-commit steps.
    rolled_back:
        Whether a failed transaction was successfully restored.
    data_integrity_hash:
        Hash of the merged payload written onto the primary.
    """

    primary_id: str
    consolidated: int = 0
    duplicate_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rolled_back: bool = False
    data_integrity_hash: str | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_id": self.primary_id,
            "consolidated": self.consolidated,
            "duplicate_ids": self.duplicate_ids,
            "errors": self.errors,
            "warnings": self.warnings,
            "rolled_back": self.rolled_back,
            "data_integrity_hash": self.data_integrity_hash,
        }


@dataclass
class DuplicateTrackingUpdate:
    """Requested change to one record's duplicate bookkeeping."""

    memory_id: str
    is_duplicate: bool | None = None
    duplicate_of: str | None = None
    is_consolidated: bool | None = None
    consolidated_into: str | None = None
    reason: str | None = None


@dataclass
class TrackingResult:
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "errors": self.errors}


@dataclass
class CleanupResult:
    """Partial-success report of a cleanup sweep."""

    cleaned: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleaned": self.cleaned,
            "skipped": self.skipped,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


@dataclass
class ConsolidationStats:
    namespace: str
    total_memories: int = 0
    duplicate_count: int = 0
    consolidated_memories: int = 0
    potential_duplicates: int = 0
    consolidation_ratio: float = 0.0
    last_consolidation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "total_memories": self.total_memories,
            "duplicate_count": self.duplicate_count,
            "consolidated_memories": self.consolidated_memories,
            "potential_duplicates": self.potential_duplicates,
            "consolidation_ratio": self.consolidation_ratio,
            "last_consolidation": self.last_consolidation,
        }


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class ConsolidationValidator:
    """Pre-flight checks run before any consolidation mutates storage.

    Never raises for expected violations; every problem is reported in the
    returned :class:`ValidationResult`.
    """

    def __init__(self, repository: MemoryRepository) -> None:
        self._repository = repository
        self._cfg = get_config().consolidation

    async def validate(
        self,
        primary_id: str,
        duplicate_ids: Iterable[str],
        namespace: str = "default",
    ) -> ValidationResult:
        duplicate_ids = list(duplicate_ids)
        errors: list[str] = []
        warnings: list[str] = []

        if not primary_id:
            errors.append("Primary memory id is required")
        if not duplicate_ids:
            errors.append("At least one duplicate memory id is required")
        if primary_id and primary_id in duplicate_ids:
            errors.append("Primary memory cannot be in the duplicate list")
        if len(duplicate_ids) > self._cfg.max_duplicates:
            errors.append(
                f"Too many duplicates ({len(duplicate_ids)}) - "
                f"maximum recommended is {self._cfg.max_duplicates}"
            )
        elif len(duplicate_ids) > self._cfg.warn_duplicates:
            warnings.append(
                f"Large consolidation ({len(duplicate_ids)} duplicates) may be slow"
            )
        unique_ids = list(dict.fromkeys(d for d in duplicate_ids if d != primary_id))
        if len(unique_ids) < len([d for d in duplicate_ids if d != primary_id]):
            warnings.append("Duplicate list contains repeated ids")

        if not primary_id:
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        primary = await self._repository.get(primary_id)
        if primary is None:
            errors.append(f"Primary memory {primary_id} not found")
        elif primary.namespace != namespace:
            errors.append(f"Primary memory {primary_id} is not in namespace {namespace}")
        else:
            if primary.consolidated_into:
                errors.append(
                    f"Primary memory {primary_id} is itself consolidated into "
                    f"{primary.consolidated_into}"
                )
            consolidated_at = parse_iso(primary.consolidated_at)
            if consolidated_at is not None:
                hours = (datetime.now(tz=timezone.utc) - consolidated_at).total_seconds() / 3600
                if hours < self._cfg.recency_guard_hours:
                    errors.append(
                        f"Primary memory {primary_id} was consolidated recently "
                        f"({hours:.1f} hours ago)"
                    )

        found: dict[str, MemoryRecord | None] = {}

        async def _load(memory_id: str) -> None:
            found[memory_id] = await self._repository.get(memory_id, namespace)

        async with anyio.create_task_group() as tg:
            for memory_id in unique_ids:
                tg.start_soon(_load, memory_id)

        missing = [d for d in unique_ids if found.get(d) is None]
        if missing:
            errors.append(
                f"Some duplicate memories not found in namespace {namespace}: "
                f"{', '.join(missing)}"
            )
        for memory_id in unique_ids:
            record = found.get(memory_id)
            if record is None or not record.consolidated_into:
                continue
            if record.consolidated_into == primary_id:
                errors.append(
                    f"Circular consolidation detected: duplicate {memory_id} "
                    f"is already consolidated into primary {primary_id}"
                )
            else:
                warnings.append(
                    f"Duplicate {memory_id} is already consolidated into "
                    f"{record.consolidated_into}"
                )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Transactional duplicate consolidation plus bookkeeping sweeps.

    Parameters
    ----------
    repository:
        Record access and the underlying :class:`~memstore.storage.Storage`.
    backups:
        Snapshots taken before each consolidation.
    states:
        Processing-state tracker; records move to ``CONSOLIDATED`` after a
        successful merge and to ``ARCHIVED`` when cleaned up.
    detector:
        Used for the potential-duplicate statistic.  Optional.
    """

    def __init__(
        self,
        repository: MemoryRepository,
        backups: BackupManager,
        states: ProcessingStateManager,
        detector: DuplicateDetector | None = None,
    ) -> None:
        self._repository = repository
        self._storage = repository.storage
        self._backups = backups
        self._states = states
        self._detector = detector
        self._validator = ConsolidationValidator(repository)
        self._cfg = get_config().consolidation
        self._merge_cfg = get_config().merge

    @property
    def validator(self) -> ConsolidationValidator:
        return self._validator

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(
        self,
        primary_id: str,
        duplicate_ids: Iterable[str],
        namespace: str = "default",
    ) -> ConsolidationResult:
        """Merge *duplicate_ids* into *primary_id*.

        An empty duplicate list is a no-op.  Validation failures, a held
        lock and a failed transaction are all reported through
        :attr:`ConsolidationResult.errors`; the transaction case also
        restores every record from its backup first.

        Returns
        -------
        ConsolidationResult
            ``consolidated`` is the number of duplicates merged.
        """
        duplicate_ids = list(dict.fromkeys(duplicate_ids))
        result = ConsolidationResult(primary_id=primary_id, duplicate_ids=duplicate_ids)
        if not duplicate_ids:
            return result
        if primary_id in duplicate_ids:
            result.errors.append("Primary memory cannot be in the duplicate list")
            return result

        logger.info(
            "Consolidating %d duplicates into %s (namespace=%s)",
            len(duplicate_ids),
            primary_id,
            namespace,
        )
        involved = sorted({primary_id, *duplicate_ids})
        holder = uuid.uuid4().hex

        def _lock_name(memory_id: str) -> str:
            return f"consolidate:{namespace}:{memory_id}"

        def _try_lock(conn: sqlite3.Connection) -> str | None:
            # All or nothing: a busy record releases what was taken so far.
            taken: list[str] = []
            for memory_id in involved:
                if not Storage.try_acquire_lock(conn, _lock_name(memory_id), holder):
                    for name in taken:
                        Storage.release_lock(conn, name, holder)
                    return memory_id
                taken.append(_lock_name(memory_id))
            return None

        busy = await self._storage.execute_transaction(_try_lock)
        if busy is not None:
            logger.warning(
                "Consolidation touching %s already in progress; skipping %s", busy, primary_id
            )
            role = "primary memory" if busy == primary_id else "memory"
            result.errors.append(f"Consolidation already in progress for {role} {busy}")
            return result

        try:
            validation = await self._validator.validate(primary_id, duplicate_ids, namespace)
            result.warnings.extend(validation.warnings)
            if not validation.is_valid:
                logger.warning(
                    "Consolidation of %s rejected: %s", primary_id, "; ".join(validation.errors)
                )
                result.errors.extend(validation.errors)
                return result

            snapshot = await self._backups.backup([primary_id, *duplicate_ids], namespace)
            try:
                event = await self._storage.execute_transaction(
                    lambda conn: self._apply_consolidation(
                        conn, primary_id, duplicate_ids, namespace
                    ),
                    timeout=self._cfg.transaction_timeout_seconds,
                )
            except Exception as exc:
                reason = (
                    f"Enhanced consolidation failed for primary memory {primary_id}: {exc}"
                )
                logger.exception(reason)
                result.errors.append(reason)
                try:
                    await self._backups.rollback(primary_id, duplicate_ids, snapshot, namespace)
                    result.rolled_back = True
                except RollbackError:
                    logger.exception(
                        "Records of consolidation %s need manual reconciliation", primary_id
                    )
                return result
        finally:

            def _release(conn: sqlite3.Connection) -> None:
                for memory_id in involved:
                    Storage.release_lock(conn, _lock_name(memory_id), holder)

            await self._storage.execute_transaction(_release)

        result.consolidated = len(duplicate_ids)
        result.data_integrity_hash = event.data_integrity_hash
        await self._mark_consolidated(primary_id, duplicate_ids, result)

        logger.info(
            "Consolidated %d duplicates into %s (hash=%s)",
            result.consolidated,
            primary_id,
            event.data_integrity_hash,
        )
        return result

    def _apply_consolidation(
        self,
        conn: sqlite3.Connection,
        primary_id: str,
        duplicate_ids: list[str],
        namespace: str,
    ) -> ConsolidationEvent:
        """Load, merge and write every record.  Runs inside the transaction."""
        primary = fetch_record(conn, primary_id, namespace)
        if primary is None:
            raise TransactionError(f"Primary memory {primary_id} not found")

        duplicates: list[MemoryRecord] = []
        missing: list[str] = []
        for memory_id in duplicate_ids:
            record = fetch_record(conn, memory_id, namespace)
            if record is None:
                missing.append(memory_id)
            else:
                duplicates.append(record)
        if missing:
            raise TransactionError(f"Some duplicate memories not found: {', '.join(missing)}")
        if primary.consolidated_into:
            raise TransactionError(
                f"Primary memory {primary_id} was consolidated into "
                f"{primary.consolidated_into} concurrently"
            )
        circular = [d.id for d in duplicates if d.consolidated_into == primary_id]
        if circular:
            raise TransactionError(
                f"Duplicates already consolidated into {primary_id}: {', '.join(circular)}"
            )

        merged = merge_duplicate_data(primary, duplicates, self._merge_cfg)
        timestamp = now_iso()
        event = ConsolidationEvent(
            timestamp=timestamp,
            consolidated_ids=list(duplicate_ids),
            data_integrity_hash=merged.integrity_hash(),
            original_classification=primary.classification,
            original_importance=primary.importance,
            duplicate_count=len(duplicates),
        )

        write_fields(
            conn,
            primary_id,
            {
                **merged.to_dict(),
                "consolidation_history": [*primary.consolidation_history, event],
                "consolidated_at": timestamp,
            },
        )

        prefix = CONSOLIDATED_PREFIX.format(timestamp=timestamp)
        for record in duplicates:
            write_fields(
                conn,
                record.id,
                {
                    "is_duplicate": True,
                    "duplicate_of": primary_id,
                    "is_consolidated": True,
                    "consolidated_into": primary_id,
                    "consolidated_at": timestamp,
                    "content": prefix + record.content,
                    "metadata": {
                        **record.metadata,
                        "original_data_hash": data_integrity_hash(_record_payload(record)),
                        "consolidation_reason": event.reason,
                    },
                },
            )

        conn.execute(
            """
            INSERT INTO consolidation_log
                (action, namespace, details, memories_affected, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                "consolidate",
                namespace,
                json.dumps({
                    "primary_id": primary_id,
                    "duplicate_count": len(duplicates),
                    "data_integrity_hash": event.data_integrity_hash,
                }),
                json.dumps([primary_id, *duplicate_ids]),
                timestamp,
            ),
        )
        return event

    async def _mark_consolidated(
        self,
        primary_id: str,
        duplicate_ids: list[str],
        result: ConsolidationResult,
    ) -> None:
        """Move every merged record to CONSOLIDATED after commit."""
        for memory_id in [primary_id, *duplicate_ids]:
            try:
                await self._states.transition_to(
                    memory_id,
                    CONSOLIDATED,
                    reason="duplicate_consolidation",
                    force=True,
                    metadata={"primary_id": primary_id},
                )
            except (sqlite3.Error, TransactionError) as exc:
                logger.exception("State transition after consolidation failed for %s", memory_id)
                result.warnings.append(
                    f"Memory {memory_id} consolidated but state update failed: {exc}"
                )

    # ------------------------------------------------------------------
    # Duplicate bookkeeping
    # ------------------------------------------------------------------

    async def mark_as_duplicate(
        self,
        duplicate_id: str,
        original_id: str,
        reason: str = "manual",
        namespace: str = "default",
    ) -> None:
        """Flag *duplicate_id* as a duplicate of *original_id*.

        Raises
        ------
        ValidationError
            If both ids are the same.
        MemoryNotFoundError
            If either memory is missing from *namespace*.
        """
        if duplicate_id == original_id:
            raise ValidationError("A memory cannot be marked as a duplicate of itself")

        def _mark(conn: sqlite3.Connection) -> None:
            duplicate = fetch_record(conn, duplicate_id, namespace)
            if duplicate is None:
                raise MemoryNotFoundError(duplicate_id, namespace)
            if fetch_record(conn, original_id, namespace) is None:
                raise MemoryNotFoundError(original_id, namespace)
            write_fields(
                conn,
                duplicate_id,
                {
                    "is_duplicate": True,
                    "duplicate_of": original_id,
                    "metadata": {
                        **duplicate.metadata,
                        "duplicate_reason": reason,
                        "marked_as_duplicate_at": now_iso(),
                    },
                },
            )

        await self._storage.execute_transaction(_mark)
        logger.info("Marked %s as duplicate of %s (%s)", duplicate_id, original_id, reason)

    async def update_duplicate_tracking(
        self,
        updates: Iterable[DuplicateTrackingUpdate],
        namespace: str = "default",
    ) -> TrackingResult:
        """Apply tracking updates, one independent transaction per record.

        A failing record is reported in ``errors`` and does not block the
        others.
        """
        updates = list(updates)
        result = TrackingResult()
        logger.info("Updating duplicate tracking for %d memories", len(updates))

        def _apply(conn: sqlite3.Connection, update: DuplicateTrackingUpdate) -> None:
            record = fetch_record(conn, update.memory_id, namespace)
            if record is None:
                raise MemoryNotFoundError(update.memory_id, namespace)
            fields: dict[str, Any] = {}
            for name in ("duplicate_of", "consolidated_into"):
                target = getattr(update, name)
                if target is None:
                    continue
                if target == update.memory_id:
                    raise ValidationError(f"Memory {target} cannot reference itself")
                if fetch_record(conn, target, namespace) is None:
                    raise MemoryNotFoundError(target, namespace)
                fields[name] = target
            if update.is_duplicate is not None:
                fields["is_duplicate"] = update.is_duplicate
            if update.is_consolidated is not None:
                fields["is_consolidated"] = update.is_consolidated
            if update.reason:
                fields["metadata"] = {**record.metadata, "tracking_reason": update.reason}
            if fields:
                write_fields(conn, update.memory_id, fields)

        async def _run(update: DuplicateTrackingUpdate) -> None:
            try:
                await self._storage.execute_transaction(lambda conn: _apply(conn, update))
                result.updated += 1
            except Exception as exc:
                logger.warning("Duplicate tracking update failed for %s: %s", update.memory_id, exc)
                result.errors.append(
                    f"Failed to update duplicate tracking for memory {update.memory_id}: {exc}"
                )

        async with anyio.create_task_group() as tg:
            for update in updates:
                tg.start_soon(_run, update)

        logger.info(
            "Duplicate tracking updated=%d errors=%d", result.updated, len(result.errors)
        )
        return result

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup_consolidated_memories(
        self,
        older_than_days: int | None = None,
        dry_run: bool = False,
        namespace: str = "default",
    ) -> CleanupResult:
        """Soft-clean duplicates merged away more than *older_than_days* ago.

        Records still referenced through another record's ``duplicate_of``
        are skipped.  Cleaned records get a ``[CLEANED] `` content prefix,
        cleanup metadata and the ``ARCHIVED`` state.
        """
        days = self._cfg.cleanup_after_days if older_than_days is None else older_than_days
        cutoff = (datetime.now(tz=timezone.utc) - timedelta(days=days)).isoformat()
        result = CleanupResult(dry_run=dry_run)

        rows = await self._storage.execute(
            """
            SELECT id FROM memories
            WHERE namespace = ?
              AND is_consolidated = 1
              AND consolidated_into IS NOT NULL
              AND consolidated_at < ?
              AND processing_state != 'ARCHIVED'
            ORDER BY id
            """,
            (namespace, cutoff),
        )
        candidates = [row["id"] for row in rows]
        logger.info(
            "Cleanup of consolidated memories in %s: %d candidates older than %d days%s",
            namespace,
            len(candidates),
            days,
            " (dry-run)" if dry_run else "",
        )

        async def _clean(memory_id: str) -> None:
            try:
                if await self._repository.find_referencing(memory_id, namespace):
                    result.skipped += 1
                    return
                if dry_run:
                    result.cleaned += 1
                    return
                cleaned_at = now_iso()

                def _apply(conn: sqlite3.Connection) -> None:
                    record = fetch_record(conn, memory_id, namespace)
                    if record is None:
                        raise MemoryNotFoundError(memory_id, namespace)
                    write_fields(
                        conn,
                        memory_id,
                        {
                            "content": CLEANED_PREFIX + record.content,
                            "metadata": {
                                **record.metadata,
                                "cleaned_at": cleaned_at,
                                "cleanup_reason": "consolidated_memory_cleanup",
                            },
                        },
                    )

                await self._storage.execute_transaction(_apply)
                await self._states.transition_to(
                    memory_id, ARCHIVED, reason="consolidated_memory_cleanup", force=True
                )
                result.cleaned += 1
            except Exception as exc:
                logger.warning("Cleanup failed for memory %s: %s", memory_id, exc)
                result.errors.append(f"Failed to clean memory {memory_id}: {exc}")

        async with anyio.create_task_group() as tg:
            for memory_id in candidates:
                tg.start_soon(_clean, memory_id)

        logger.info(
            "Cleanup finished: cleaned=%d skipped=%d errors=%d",
            result.cleaned,
            result.skipped,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Statistics and history
    # ------------------------------------------------------------------

    async def get_consolidation_stats(self, namespace: str = "default") -> ConsolidationStats:
        """Aggregate consolidation counters for *namespace*.

        The independent counts are fetched concurrently.
        """
        stats = ConsolidationStats(namespace=namespace)

        async def _total() -> None:
            stats.total_memories = await self._repository.count(namespace)

        async def _duplicates() -> None:
            stats.duplicate_count = await self._repository.count(namespace, is_duplicate=True)

        async def _consolidated() -> None:
            stats.consolidated_memories = await self._repository.count(
                namespace, is_consolidated=True
            )

        async def _potential() -> None:
            if self._detector is not None:
                stats.potential_duplicates = await self._detector.count_potential_duplicates(
                    namespace
                )

        async def _last() -> None:
            rows = await self._storage.execute(
                "SELECT MAX(created_at) AS last FROM consolidation_log "
                "WHERE action = 'consolidate' AND namespace = ?",
                (namespace,),
            )
            stats.last_consolidation = rows[0]["last"] if rows else None

        async with anyio.create_task_group() as tg:
            for fn in (_total, _duplicates, _consolidated, _potential, _last):
                tg.start_soon(fn)

        if stats.total_memories:
            stats.consolidation_ratio = round(
                stats.consolidated_memories / stats.total_memories, 4
            )
        return stats

    async def get_history(
        self,
        limit: int = 20,
        namespace: str | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent ``consolidation_log`` entries, newest first."""
        if namespace is None:
            rows = await self._storage.execute(
                """
                SELECT id, action, namespace, details, memories_affected, created_at
                FROM consolidation_log
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
        else:
            rows = await self._storage.execute(
                """
                SELECT id, action, namespace, details, memories_affected, created_at
                FROM consolidation_log
                WHERE namespace = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (namespace, limit),
            )

        entries: list[dict[str, Any]] = []
        for row in rows:
            entry: dict[str, Any] = {
                "id": row["id"],
                "action": row["action"],
                "namespace": row["namespace"],
                "created_at": row["created_at"],
            }
            for column in ("details", "memories_affected"):
                raw = row[column]
                try:
                    entry[column] = json.loads(raw) if raw else None
                except (json.JSONDecodeError, TypeError):
                    entry[column] = raw
            entries.append(entry)
        return entries
