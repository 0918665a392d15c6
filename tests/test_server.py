"""Tests for the memstore.server MCP tool layer.

Tests cover:
- Parameter normalization (empty strings -> None)
- _error_response structured error formatting
- Every tool delegating to MemoryStore
- Error handling in every tool (returns error dict, never raises)
- Lazy store initialization via _ensure_store
"""

from __future__ import annotations

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from memstore.errors import MemoryNotFoundError
from memstore.store import MemoryStore
import memstore.server as server_module
from memstore.server import (
    _ensure_store,
    _error_response,
    cleanup,
    consolidate,
    consolidation_stats,
    find_duplicates,
    relate,
    related,
    relationship_network,
    remember,
    resolve_conflicts,
    transition,
    update_relationships,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_store():
    store = MagicMock(spec=MemoryStore)
    store._initialized = True
    store.initialize = AsyncMock()
    store.remember = AsyncMock(
        return_value={"memory_id": "m1", "memory": {}, "duplicates": [], "relationships": None}
    )
    store.find_duplicates = AsyncMock(return_value={"candidates": []})
    store.consolidate = AsyncMock(
        return_value={
            "primary_id": "p",
            "consolidated": 1,
            "duplicate_ids": ["d"],
            "errors": [],
            "warnings": [],
            "rolled_back": False,
            "data_integrity_hash": "abcd",
        }
    )
    store.relate = AsyncMock(return_value={"stored": 1, "errors": [], "invalid": []})
    store.update_relationships = AsyncMock(return_value={"updated": 1, "errors": []})
    store.related = AsyncMock(return_value={"memory_id": "m1", "related": []})
    store.network = AsyncMock(
        return_value={
            "memory_id": "m1",
            "edges": [],
            "total_relationships": 0,
            "max_depth_reached": 0,
            "unique_types": [],
        }
    )
    store.resolve_conflicts = AsyncMock(return_value={"resolved": 0, "conflicts": []})
    store.transition = AsyncMock(
        return_value={"memory_id": "m1", "success": True, "state": "PROCESSING"}
    )
    store.stats = AsyncMock(
        return_value={"namespace": "default", "consolidation": {}, "relationships": {}, "states": {}}
    )
    store.cleanup = AsyncMock(
        return_value={"namespace": "default", "memories": {}, "relationships": {}}
    )
    return store


@pytest.fixture(autouse=True)
def patch_store(mock_store):
    with patch.object(server_module, "_store", mock_store):
        yield mock_store


# ===================================================================
# TestParameterNormalization
# ===================================================================


class TestParameterNormalization:
    """Empty strings sent by MCP clients are converted to None."""

    async def test_remember_empty_optionals_become_none(self, mock_store):
        await remember(content="text", namespace="", topic="")
        _, kwargs = mock_store.remember.call_args
        assert kwargs["namespace"] is None
        assert kwargs["topic"] is None

    async def test_remember_nonempty_values_preserved(self, mock_store):
        await remember(content="text", namespace="ops", topic="db", importance="high")
        _, kwargs = mock_store.remember.call_args
        assert kwargs["namespace"] == "ops"
        assert kwargs["topic"] == "db"
        assert kwargs["importance"] == "high"

    async def test_find_duplicates_empty_strings(self, mock_store):
        await find_duplicates(memory_id="", text="", namespace="")
        _, kwargs = mock_store.find_duplicates.call_args
        assert kwargs == {"memory_id": None, "text": None, "namespace": None, "threshold": None}

    async def test_related_empty_type_becomes_none(self, mock_store):
        await related(memory_id="m1", relationship_type="")
        _, kwargs = mock_store.related.call_args
        assert kwargs["relationship_type"] is None
        assert kwargs["limit"] == 20

    async def test_transition_empty_reason_becomes_none(self, mock_store):
        await transition(memory_id="m1", state="PROCESSING", reason="")
        _, kwargs = mock_store.transition.call_args
        assert kwargs["reason"] is None
        assert kwargs["force"] is False

    async def test_consolidate_empty_namespace(self, mock_store):
        await consolidate(primary_id="p", duplicate_ids=["d"], namespace="")
        mock_store.consolidate.assert_awaited_once_with("p", ["d"], None)


# ===================================================================
# TestErrorResponse
# ===================================================================


class TestErrorResponse:
    def test_error_response_keys(self):
        result = _error_response(ValueError("bad value"))
        assert set(result.keys()) == {"error", "detail", "traceback"}

    def test_error_response_uses_class_name(self):
        result = _error_response(MemoryNotFoundError("m9", "ops"))
        assert result["error"] == "MemoryNotFoundError"
        assert result["detail"] == "Memory m9 not found in namespace 'ops'"

    def test_error_response_traceback_is_string(self):
        result = _error_response(KeyError("missing"))
        assert isinstance(result["traceback"], str)
        assert "KeyError" in result["traceback"]


# ===================================================================
# TestToolEndpoints
# ===================================================================


class TestToolEndpoints:
    """Each tool delegates to the store and turns exceptions into dicts."""

    async def test_remember_delegates(self, mock_store):
        result = await remember(content="text")
        assert result["memory_id"] == "m1"
        mock_store.remember.assert_awaited_once()

    async def test_remember_returns_error_on_exception(self, mock_store):
        mock_store.remember.side_effect = ValueError("Memory content must not be empty")
        result = await remember(content="")
        assert result["error"] == "ValueError"
        assert "empty" in result["detail"]

    async def test_consolidate_delegates(self, mock_store):
        result = await consolidate(primary_id="p", duplicate_ids=["d"], namespace="ops")
        assert result["consolidated"] == 1
        mock_store.consolidate.assert_awaited_once_with("p", ["d"], "ops")

    async def test_consolidate_returns_error_on_exception(self, mock_store):
        mock_store.consolidate.side_effect = RuntimeError("db gone")
        result = await consolidate(primary_id="p", duplicate_ids=["d"])
        assert result["error"] == "RuntimeError"

    async def test_relate_delegates(self, mock_store):
        edges = [{"type": "related", "target_memory_id": "m2"}]
        result = await relate(memory_id="m1", relationships=edges)
        assert result["stored"] == 1
        mock_store.relate.assert_awaited_once_with("m1", edges, None)

    async def test_relate_returns_error_on_exception(self, mock_store):
        mock_store.relate.side_effect = MemoryNotFoundError("m1", "default")
        result = await relate(memory_id="m1", relationships=[])
        assert result["error"] == "MemoryNotFoundError"

    async def test_update_relationships_delegates(self, mock_store):
        updates = [{"relationship": {"type": "related"}, "operation": "remove"}]
        await update_relationships(memory_id="m1", updates=updates, namespace="ops")
        mock_store.update_relationships.assert_awaited_once_with("m1", updates, "ops")

    async def test_network_delegates(self, mock_store):
        result = await relationship_network(memory_id="m1", max_depth=2)
        assert result["total_relationships"] == 0
        mock_store.network.assert_awaited_once_with("m1", 2, None)

    async def test_network_returns_error_on_exception(self, mock_store):
        mock_store.network.side_effect = MemoryNotFoundError("m1")
        result = await relationship_network(memory_id="m1")
        assert result["detail"] == "Memory m1 not found"

    async def test_resolve_conflicts_delegates(self, mock_store):
        await resolve_conflicts(memory_id="m1")
        mock_store.resolve_conflicts.assert_awaited_once_with("m1", None)

    async def test_stats_delegates(self, mock_store):
        result = await consolidation_stats(namespace="ops")
        assert result["namespace"] == "default"
        mock_store.stats.assert_awaited_once_with("ops")

    async def test_stats_returns_error_on_exception(self, mock_store):
        mock_store.stats.side_effect = RuntimeError("locked")
        result = await consolidation_stats()
        assert result["error"] == "RuntimeError"

    async def test_cleanup_defaults_to_dry_run(self, mock_store):
        await cleanup()
        mock_store.cleanup.assert_awaited_once_with(None, older_than_days=30, dry_run=True)

    async def test_cleanup_returns_error_on_exception(self, mock_store):
        mock_store.cleanup.side_effect = RuntimeError("disk full")
        result = await cleanup(dry_run=False)
        assert result["detail"] == "disk full"


# ===================================================================
# TestEnsureStore
# ===================================================================


class TestEnsureStore:
    async def test_initializes_when_not_ready(self, mock_store):
        mock_store._initialized = False
        await _ensure_store()
        mock_store.initialize.assert_awaited_once()

    async def test_noop_when_already_initialized(self, mock_store):
        await _ensure_store()
        mock_store.initialize.assert_not_awaited()

    async def test_called_by_every_tool(self, mock_store):
        mock_store._initialized = False
        await remember(content="x")
        await find_duplicates()
        await related(memory_id="m1")
        assert mock_store.initialize.await_count == 3
