"""MCP server exposing the memory store as tools via stdio transport.

Each tool maps onto one :class:`~memstore.store.MemoryStore` method.  The
``mcp`` object is imported by :mod:`memstore.__main__` and launched with
``mcp.run()``.

Architecture notes
------------------
* A single global :pydata:`_store` instance is lazily initialised on the
  first tool call via :func:`_ensure_store`.
* Empty-string parameters from MCP (which lacks first-class optionals) are
  normalised to ``None`` before forwarding to the store.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from memstore.store import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and store instances
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "memstore",
    instructions="Long-term memory store with duplicate consolidation and a relationship graph",
)

_store = MemoryStore()


async def _ensure_store() -> None:
    """Lazily initialise the store on the first tool call."""
    if not _store._initialized:
        await _store.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Structured error dict returned instead of raising."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# MCP Tools
# ===================================================================


@mcp.tool()
async def remember(
    content: str,
    namespace: str = "",
    summary: str = "",
    topic: str = "",
    classification: str = "contextual",
    importance: str = "medium",
    entities: list[str] | None = None,
    keywords: list[str] | None = None,
    confidence_score: float = 0.5,
    classification_reason: str = "",
    relationships: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Store a new memory and report near-duplicates already in the namespace.

    Args:
        content: The memory text. Must be non-empty.
        namespace: Isolation key. Leave empty for the default namespace.
        summary: Short summary of the content.
        topic: Optional topic label.
        classification: One of 'essential', 'contextual', 'conversational',
            'reference', 'personal', 'conscious-info'.
        importance: One of 'critical', 'high', 'medium', 'low'.
        entities: Named entities mentioned in the memory.
        keywords: Keywords for the memory.
        confidence_score: Extraction confidence in [0, 1].
        classification_reason: Why the memory got its classification.
        relationships: Outgoing edges, each a dict with 'type',
            'target_memory_id', 'confidence', 'strength', 'reason',
            'context' and optional 'entities'.

    Returns:
        A dict with keys:
        - memory_id: The id of the new memory
        - memory: The stored record
        - duplicates: Near-duplicate candidates, most similar first
        - relationships: Store result for the supplied edges, or null
    """
    try:
        await _ensure_store()
        return await _store.remember(
            content=content,
            namespace=namespace or None,
            summary=summary,
            topic=topic or None,
            classification=classification,
            importance=importance,
            entities=entities,
            keywords=keywords,
            confidence_score=confidence_score,
            classification_reason=classification_reason,
            relationships=relationships,
        )
    except Exception as exc:
        logger.exception("remember failed")
        return _error_response(exc)


@mcp.tool()
async def find_duplicates(
    memory_id: str = "",
    text: str = "",
    namespace: str = "",
    threshold: float | None = None,
) -> dict[str, Any]:
    """Find near-duplicate memories by Jaccard word overlap.

    Args:
        memory_id: Find duplicates of this stored memory.
        text: Find duplicates of this free text instead.
        namespace: Namespace to search. Leave empty for the default.
        threshold: Minimum similarity in [0, 1]. Leave unset for the
            configured default (0.7).

    Returns:
        A dict with 'candidates' when memory_id or text is given, otherwise
        'groups' covering the whole namespace.
    """
    try:
        await _ensure_store()
        return await _store.find_duplicates(
            memory_id=memory_id or None,
            text=text or None,
            namespace=namespace or None,
            threshold=threshold,
        )
    except Exception as exc:
        logger.exception("find_duplicates failed")
        return _error_response(exc)


@mcp.tool()
async def consolidate(
    primary_id: str,
    duplicate_ids: list[str],
    namespace: str = "",
) -> dict[str, Any]:
    """Merge duplicate memories into a primary memory.

    The merge is atomic: on failure every record is restored from a backup
    taken just before the write.

    Args:
        primary_id: The memory that survives.
        duplicate_ids: Memories folded into the primary.
        namespace: Namespace of all involved memories.

    Returns:
        A dict with 'consolidated', 'errors', 'warnings', 'rolled_back' and
        'data_integrity_hash'.
    """
    try:
        await _ensure_store()
        return await _store.consolidate(primary_id, duplicate_ids, namespace or None)
    except Exception as exc:
        logger.exception("consolidate failed")
        return _error_response(exc)


@mcp.tool()
async def relate(
    memory_id: str,
    relationships: list[dict[str, Any]],
    namespace: str = "",
) -> dict[str, Any]:
    """Store outgoing relationship edges on a memory.

    Args:
        memory_id: The source memory.
        relationships: Edges with 'type' (continuation, reference, related,
            supersedes, contradiction), 'target_memory_id', 'confidence',
            'strength', 'reason' (10+ chars) and 'context' (5+ chars).
        namespace: Namespace of the memory.

    Returns:
        A dict with 'stored', 'errors' and 'invalid' (rejected edges with
        the reason).
    """
    try:
        await _ensure_store()
        return await _store.relate(memory_id, relationships, namespace or None)
    except Exception as exc:
        logger.exception("relate failed")
        return _error_response(exc)


@mcp.tool()
async def update_relationships(
    memory_id: str,
    updates: list[dict[str, Any]],
    namespace: str = "",
) -> dict[str, Any]:
    """Add, update or remove relationship edges on a memory.

    Args:
        memory_id: The source memory.
        updates: Items of the form {"relationship": {...}, "operation":
            "add" | "update" | "remove"}.
        namespace: Namespace of the memory.
    """
    try:
        await _ensure_store()
        return await _store.update_relationships(memory_id, updates, namespace or None)
    except Exception as exc:
        logger.exception("update_relationships failed")
        return _error_response(exc)


@mcp.tool()
async def related(
    memory_id: str,
    namespace: str = "",
    relationship_type: str = "",
    min_confidence: float | None = None,
    min_strength: float | None = None,
    limit: int = 20,
) -> dict[str, Any]:
    """List memories linked to a memory by outgoing or incoming edges.

    Args:
        memory_id: The memory to start from.
        namespace: Namespace of the memory.
        relationship_type: Restrict to one edge type.
        min_confidence: Minimum edge confidence.
        min_strength: Minimum edge strength.
        limit: Maximum number of results (default 20).

    Returns:
        A dict with 'related', ordered by the mean of strength and
        confidence.
    """
    try:
        await _ensure_store()
        return await _store.related(
            memory_id,
            namespace=namespace or None,
            relationship_type=relationship_type or None,
            min_confidence=min_confidence,
            min_strength=min_strength,
            limit=limit,
        )
    except Exception as exc:
        logger.exception("related failed")
        return _error_response(exc)


@mcp.tool()
async def relationship_network(
    memory_id: str,
    max_depth: int = 3,
    namespace: str = "",
) -> dict[str, Any]:
    """Walk the relationship graph around a memory up to max_depth hops."""
    try:
        await _ensure_store()
        return await _store.network(memory_id, max_depth, namespace or None)
    except Exception as exc:
        logger.exception("relationship_network failed")
        return _error_response(exc)


@mcp.tool()
async def resolve_conflicts(memory_id: str, namespace: str = "") -> dict[str, Any]:
    """Detect and resolve conflicting relationship edges on a memory.

    Keeps the two highest-quality edges per target memory.

    Returns:
        A dict with 'resolved' (conflicts found) and 'conflicts', including
        one 'discarded_relationship' entry per dropped edge.
    """
    try:
        await _ensure_store()
        return await _store.resolve_conflicts(memory_id, namespace or None)
    except Exception as exc:
        logger.exception("resolve_conflicts failed")
        return _error_response(exc)


@mcp.tool()
async def transition(
    memory_id: str,
    state: str,
    reason: str = "",
    force: bool = False,
) -> dict[str, Any]:
    """Move a memory to another processing state.

    Args:
        memory_id: The memory to transition.
        state: One of PENDING, PROCESSING, PROCESSED, FAILED, CONSOLIDATED,
            ARCHIVED.
        reason: Recorded in the state history.
        force: Bypass the allowed-transition table.

    Returns:
        A dict with 'success' and the resulting 'state'.
    """
    try:
        await _ensure_store()
        return await _store.transition(
            memory_id, state, reason=reason or None, force=force
        )
    except Exception as exc:
        logger.exception("transition failed")
        return _error_response(exc)


@mcp.tool()
async def consolidation_stats(namespace: str = "") -> dict[str, Any]:
    """Consolidation, relationship and processing-state statistics."""
    try:
        await _ensure_store()
        return await _store.stats(namespace or None)
    except Exception as exc:
        logger.exception("consolidation_stats failed")
        return _error_response(exc)


@mcp.tool()
async def cleanup(
    namespace: str = "",
    older_than_days: int = 30,
    dry_run: bool = True,
) -> dict[str, Any]:
    """Archive old consolidated duplicates and drop stale relationship edges.

    Args:
        namespace: Namespace to clean.
        older_than_days: Only duplicates consolidated before this many days
            ago are cleaned.
        dry_run: Report what would change without writing (default true).
    """
    try:
        await _ensure_store()
        return await _store.cleanup(
            namespace or None, older_than_days=older_than_days, dry_run=dry_run
        )
    except Exception as exc:
        logger.exception("cleanup failed")
        return _error_response(exc)
