"""Exception types raised by the memstore engine.

Expected, recoverable failures (validation problems, a relationship that
does not pass its checks, an illegal state transition) are reported as
data in result objects.  The exceptions below are reserved for conditions
the caller cannot simply branch on: missing records in point operations,
failed atomic writes, failed restores, and malformed input objects.
"""

from __future__ import annotations

from typing import Any


class MemstoreError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(MemstoreError, ValueError):
    """Input violates an invariant of the record model.

    Raised for malformed arguments such as empty content, an unknown
    classification or a self reference.  Consolidation pre-flight checks
    return :class:`~memstore.consolidation.ValidationResult` instead.
    """

    def __init__(self, *errors: str) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class MemoryNotFoundError(MemstoreError):
    """A memory id did not resolve inside the requested namespace."""

    def __init__(self, memory_id: str, namespace: str | None = None) -> None:
        self.memory_id = memory_id
        self.namespace = namespace
        where = f" in namespace {namespace!r}" if namespace else ""
        super().__init__(f"Memory {memory_id} not found{where}")


class TransactionError(MemstoreError):
    """The atomic multi-record write failed or exceeded its time budget."""


class RollbackError(MemstoreError):
    """Restoring a backup snapshot failed.

    Records are left in whatever state the failed transaction produced and
    need manual reconciliation.
    """


class RelationshipValidationError(MemstoreError):
    """A single relationship payload is malformed."""

    def __init__(self, reason: str, payload: Any = None) -> None:
        self.reason = reason
        self.payload = payload
        super().__init__(reason)


class InvalidTransitionError(MemstoreError):
    """A processing-state request names an unknown state or memory."""
