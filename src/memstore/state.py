"""Processing lifecycle of memory records.

Every memory moves through a small state machine:

- **PENDING** -- created, not yet processed.
- **PROCESSING** -- an agent is extracting structured data.
- **PROCESSED** -- extraction finished and the record is stored.
- **FAILED** -- extraction failed; may be retried (back to PROCESSING).
- **CONSOLIDATED** -- the record became a consolidation primary or was
  merged into one.
- **ARCHIVED** -- terminal.

:class:`ProcessingStateManager` tracks the current state per memory, keeps
a bounded transition history, counts ``"{from}_TO_{to}"`` metrics, and
(when given a repository) persists every accepted transition onto the
memory row and into the ``state_transitions`` audit table.

An illegal transition is not an exception: :meth:`transition_to` returns
``False`` so callers can branch on it.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

import anyio

from memstore.config import get_config
from memstore.errors import InvalidTransitionError
from memstore.records import MemoryRepository, now_iso

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States and transitions
# ---------------------------------------------------------------------------

PENDING = "PENDING"
PROCESSING = "PROCESSING"
PROCESSED = "PROCESSED"
FAILED = "FAILED"
CONSOLIDATED = "CONSOLIDATED"
ARCHIVED = "ARCHIVED"

PROCESSING_STATES: tuple[str, ...] = (
    PENDING,
    PROCESSING,
    PROCESSED,
    FAILED,
    CONSOLIDATED,
    ARCHIVED,
)
"""Allowed values for ``memories.processing_state``."""

STATE_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROCESSING, ARCHIVED}),
    PROCESSING: frozenset({PROCESSED, FAILED, ARCHIVED}),
    PROCESSED: frozenset({CONSOLIDATED, ARCHIVED}),
    FAILED: frozenset({PROCESSING, ARCHIVED}),
    CONSOLIDATED: frozenset({ARCHIVED}),
    ARCHIVED: frozenset(),
}
"""Allowed target states for each source state.  ARCHIVED is terminal."""

BACKOFF_STRATEGIES: tuple[str, ...] = ("exponential", "fixed")


def _check_state(state: str) -> None:
    if state not in PROCESSING_STATES:
        raise InvalidTransitionError(
            f"Invalid processing state {state!r}. "
            f"Must be one of: {', '.join(PROCESSING_STATES)}"
        )


def is_valid_transition(from_state: str, to_state: str) -> bool:
    """Whether the transition table allows ``from_state → to_state``.

    A self-transition is always allowed.
    """
    if from_state == to_state:
        return True
    return to_state in STATE_TRANSITIONS.get(from_state, frozenset())


@dataclass
class StateTransition:
    """One accepted transition in a memory's history."""

    memory_id: str
    from_state: str
    to_state: str
    timestamp: str
    reason: str | None = None
    agent_id: str | None = None
    forced: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "agent_id": self.agent_id,
            "forced": self.forced,
            "metadata": self.metadata,
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ProcessingStateManager:
    """Track and persist per-memory processing state.

    Parameters
    ----------
    repository:
        Optional.  When set, transitions are written through to the
        ``memories`` row and ``state_transitions`` table, and unknown
        memories are loaded on first use.
    max_history_entries:
        Per-memory history cap; oldest entries are evicted first.
    """

    def __init__(
        self,
        repository: MemoryRepository | None = None,
        max_history_entries: int | None = None,
    ) -> None:
        cfg = get_config().state
        self._repository = repository
        self._cfg = cfg
        self._max_history = max_history_entries or cfg.max_history_entries
        self._states: dict[str, str] = {}
        self._history: dict[str, deque[StateTransition]] = {}
        self._metrics: Counter[str] = Counter()
        self._lock = anyio.Lock()

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize_memory_state(self, memory_id: str, state: str = PENDING) -> str:
        """Start tracking *memory_id*.  Idempotent; returns the tracked state."""
        _check_state(state)
        existing = self._states.get(memory_id)
        if existing is not None:
            return existing
        self._states[memory_id] = state
        self._history.setdefault(memory_id, deque(maxlen=self._max_history))
        if self._repository is not None and state != PENDING:
            await self._repository.set_processing_state(memory_id, state)
        log.debug("Initialised processing state of %s as %s", memory_id, state)
        return state

    async def initialize_existing_memory_state(self, namespace: str = "default") -> int:
        """Load the persisted state of every record in *namespace*.

        Returns the number of memories newly tracked.
        """
        if self._repository is None:
            return 0
        records = await self._repository.list_namespace(namespace)
        loaded = 0
        for record in records:
            if record.id not in self._states:
                self._states[record.id] = record.processing_state
                self._history.setdefault(record.id, deque(maxlen=self._max_history))
                loaded += 1
        log.info("Loaded processing state for %d memories in namespace %s", loaded, namespace)
        return loaded

    async def _resolve_state(self, memory_id: str) -> str | None:
        state = self._states.get(memory_id)
        if state is None and self._repository is not None:
            record = await self._repository.get(memory_id)
            if record is not None:
                state = record.processing_state
                self._states[memory_id] = state
                self._history.setdefault(memory_id, deque(maxlen=self._max_history))
        return state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_current_state(self, memory_id: str) -> str | None:
        """Current state of *memory_id*, or ``None`` if unknown."""
        return await self._resolve_state(memory_id)

    @staticmethod
    def validate_transition(from_state: str, to_state: str) -> bool:
        """Whether the transition table allows ``from_state → to_state``."""
        return is_valid_transition(from_state, to_state)

    async def can_transition_to(self, memory_id: str, to_state: str) -> bool:
        """Whether *memory_id* could move to *to_state* without ``force``."""
        _check_state(to_state)
        current = await self._resolve_state(memory_id)
        return current is not None and is_valid_transition(current, to_state)

    def get_state_history(self, memory_id: str) -> list[StateTransition]:
        """Transitions recorded for *memory_id* in this process, oldest first."""
        return list(self._history.get(memory_id, ()))

    def get_metrics(self) -> dict[str, int]:
        """Transition counters keyed ``"{from}_TO_{to}"``."""
        return dict(self._metrics)

    async def get_memories_by_state(
        self,
        state: str,
        namespace: str = "default",
        limit: int | None = None,
    ) -> list[str]:
        """Ids of memories currently in *state*."""
        _check_state(state)
        if self._repository is not None:
            records = await self._repository.list_namespace(namespace, states=[state], limit=limit)
            return [r.id for r in records]
        ids = sorted(mid for mid, current in self._states.items() if current == state)
        return ids[:limit] if limit is not None else ids

    async def get_state_statistics(self, namespace: str = "default") -> dict[str, Any]:
        """Counts per state (every state present, zero-filled) plus metrics."""
        counts = {state: 0 for state in PROCESSING_STATES}
        if self._repository is not None:
            rows = await self._repository.storage.execute(
                """
                SELECT processing_state, COUNT(*) AS cnt
                FROM memories
                WHERE namespace = ?
                GROUP BY processing_state
                """,
                (namespace,),
            )
            for row in rows:
                counts[row["processing_state"]] = row["cnt"]
        else:
            for state in self._states.values():
                counts[state] += 1
        return {
            "namespace": namespace,
            "total": sum(counts.values()),
            "by_state": counts,
            "transitions": self.get_metrics(),
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition_to(
        self,
        memory_id: str,
        to_state: str,
        reason: str | None = None,
        agent_id: str | None = None,
        force: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move *memory_id* to *to_state*.

        Parameters
        ----------
        memory_id:
            The memory to transition.
        to_state:
            One of :data:`PROCESSING_STATES`.
        reason, agent_id:
            Recorded in the history entry.
        force:
            Bypass the transition table.
        metadata:
            Extra data stored on the history entry.

        Returns
        -------
        bool
            ``True`` when the memory is in *to_state* afterwards, ``False``
            when the transition table refused the move.

        Raises
        ------
        InvalidTransitionError
            If *to_state* is not a known state or the memory is not tracked
            and cannot be loaded.
        """
        _check_state(to_state)
        async with self._lock:
            current = await self._resolve_state(memory_id)
            if current is None:
                raise InvalidTransitionError(
                    f"Memory {memory_id} has no tracked processing state"
                )

            if current == to_state:
                log.warning("Memory %s is already in state %s", memory_id, to_state)
                return True

            if not force and not is_valid_transition(current, to_state):
                log.warning(
                    "Rejected transition %s -> %s for memory %s", current, to_state, memory_id
                )
                return False

            transition = StateTransition(
                memory_id=memory_id,
                from_state=current,
                to_state=to_state,
                timestamp=now_iso(),
                reason=reason,
                agent_id=agent_id,
                forced=force and not is_valid_transition(current, to_state),
                metadata=dict(metadata or {}),
            )
            if self._repository is not None:
                await self._persist(transition)

            self._states[memory_id] = to_state
            self._history.setdefault(memory_id, deque(maxlen=self._max_history)).append(transition)
            self._metrics[f"{current}_TO_{to_state}"] += 1

        log.info(
            "Memory %s transitioned %s -> %s%s",
            memory_id,
            current,
            to_state,
            " (forced)" if transition.forced else "",
        )
        return True

    async def _persist(self, transition: StateTransition) -> None:
        assert self._repository is not None
        storage = self._repository.storage

        def _write(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE memories SET processing_state = ?, updated_at = ? WHERE id = ?",
                (transition.to_state, transition.timestamp, transition.memory_id),
            )
            conn.execute(
                """
                INSERT INTO state_transitions
                    (memory_id, from_state, to_state, reason, agent_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    transition.memory_id,
                    transition.from_state,
                    transition.to_state,
                    transition.reason,
                    transition.agent_id,
                    transition.timestamp,
                ),
            )

        await storage.execute_transaction(_write)

    async def retry_transition(
        self,
        memory_id: str,
        target_state: str,
        max_retries: int | None = None,
        delay_ms: int | None = None,
        backoff: str = "exponential",
        reason: str | None = None,
    ) -> bool:
        """Re-attempt a transition until it succeeds or attempts run out.

        The wait before attempt *n + 1* is ``delay_ms × 2^(n-1)`` with
        exponential backoff, or ``delay_ms`` with fixed backoff.  A
        refused transition or a transient SQLite error both count as a
        failed attempt.

        Returns
        -------
        bool
            ``True`` on success, ``False`` once every attempt failed.
        """
        if backoff not in BACKOFF_STRATEGIES:
            raise ValueError(
                f"Invalid backoff {backoff!r}. Must be one of: {', '.join(BACKOFF_STRATEGIES)}"
            )
        attempts = self._cfg.retry_attempts if max_retries is None else max_retries
        delay = self._cfg.retry_delay_ms if delay_ms is None else delay_ms

        for attempt in range(1, attempts + 1):
            try:
                if await self.transition_to(
                    memory_id,
                    target_state,
                    reason=reason or f"retry attempt {attempt}",
                    metadata={"attempt": attempt},
                ):
                    return True
            except sqlite3.OperationalError as exc:
                log.warning(
                    "Transition attempt %d for memory %s failed: %s", attempt, memory_id, exc
                )
            if attempt < attempts:
                wait_ms = delay * (2 ** (attempt - 1)) if backoff == "exponential" else delay
                await anyio.sleep(wait_ms / 1000)

        log.error(
            "Giving up transition of memory %s to %s after %d attempts",
            memory_id,
            target_state,
            attempts,
        )
        return False

    def clear_memory_state(self, memory_id: str) -> bool:
        """Stop tracking *memory_id*.  Returns ``True`` if it was tracked."""
        self._history.pop(memory_id, None)
        return self._states.pop(memory_id, None) is not None
