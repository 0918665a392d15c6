"""End-to-end tests for the MemoryStore orchestrator."""

from __future__ import annotations

from pathlib import Path

import pytest

from memstore.store import MemoryStore

from tests.conftest import make_relationship

VACUUM = "Postgres VACUUM reclaims dead tuples and frees space for reuse"


class TestLifecycle:
    async def test_requires_initialize(self, tmp_path: Path) -> None:
        store = MemoryStore(db_path=tmp_path / "fresh.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await store.remember("anything")

    async def test_initialize_idempotent(self, store: MemoryStore) -> None:
        await store.initialize()
        status = await store.status()
        assert status["tables"]["memories"] == 0
        assert status["default_namespace"] == "default"
        assert status["db_path"].endswith("store.db")

    async def test_shutdown_without_initialize(self, tmp_path: Path) -> None:
        await MemoryStore(db_path=tmp_path / "never.db").shutdown()


class TestRemember:
    async def test_stores_and_reports_duplicates(self, store: MemoryStore) -> None:
        first = await store.remember(VACUUM, entities=["postgres"], importance="high")
        second = await store.remember(VACUUM)

        assert first["duplicates"] == []
        assert first["memory"]["importance"] == "high"
        assert first["memory"]["processing_state"] == "PENDING"
        [dup] = second["duplicates"]
        assert dup["id"] == first["memory_id"]
        assert dup["similarity_score"] == 1.0
        assert dup["recommendation"] == "merge"

    async def test_relationships_stored_with_memory(self, store: MemoryStore) -> None:
        target = await store.remember("Autovacuum tuning notes", check_duplicates=False)
        result = await store.remember(
            VACUUM,
            relationships=[
                make_relationship(target["memory_id"]).to_dict(),
                make_relationship(target["memory_id"], type="reference", reason="short").to_dict(),
            ],
        )
        assert result["relationships"]["stored"] == 1
        assert len(result["relationships"]["invalid"]) == 1
        assert len(result["memory"]["general_relationships"]) == 1

    async def test_empty_content_rejected(self, store: MemoryStore) -> None:
        with pytest.raises(ValueError, match="empty"):
            await store.remember("   ")

    async def test_namespace_isolation(self, store: MemoryStore) -> None:
        first = await store.remember(VACUUM, namespace="ops")
        second = await store.remember(VACUUM, namespace="dev")
        assert second["duplicates"] == []
        assert await store.get(first["memory_id"], namespace="dev") is None
        assert (await store.get(first["memory_id"], namespace="ops"))["namespace"] == "ops"


class TestConsolidation:
    async def test_find_duplicates_modes(self, store: MemoryStore) -> None:
        a = await store.remember(VACUUM, check_duplicates=False)
        b = await store.remember(VACUUM, check_duplicates=False)

        by_id = await store.find_duplicates(memory_id=a["memory_id"])
        assert [c["id"] for c in by_id["candidates"]] == [b["memory_id"]]

        by_text = await store.find_duplicates(text=VACUUM)
        assert len(by_text["candidates"]) == 2

        swept = await store.find_duplicates()
        assert swept["groups"][0]["primary_id"] == a["memory_id"]

    async def test_consolidate_and_history(self, store: MemoryStore) -> None:
        a = await store.remember(VACUUM, check_duplicates=False)
        b = await store.remember(VACUUM, check_duplicates=False)

        check = await store.validate_consolidation(a["memory_id"], [b["memory_id"]])
        assert check["is_valid"]

        result = await store.consolidate(a["memory_id"], [b["memory_id"]])
        assert result["consolidated"] == 1
        assert result["errors"] == []

        merged = await store.get(b["memory_id"])
        assert merged["is_consolidated"]
        assert merged["consolidated_into"] == a["memory_id"]
        assert [h["action"] for h in await store.history()] == ["consolidate"]

    async def test_sweep(self, store: MemoryStore) -> None:
        for _ in range(3):
            await store.remember(VACUUM, check_duplicates=False)
        await store.remember("Kafka consumer groups share partitions", check_duplicates=False)

        preview = await store.sweep(dry_run=True)
        assert preview["groups"] == 1
        assert preview["consolidated"] == 0
        assert len(preview["details"][0]["candidates"]) == 2

        applied = await store.sweep()
        assert applied["consolidated"] == 2
        assert applied["errors"] == []
        assert (await store.sweep(dry_run=True))["groups"] == 0

    async def test_mark_duplicate(self, store: MemoryStore) -> None:
        a = await store.remember("original", check_duplicates=False)
        b = await store.remember("copy", check_duplicates=False)
        await store.mark_duplicate(b["memory_id"], a["memory_id"], reason="operator")
        assert (await store.get(b["memory_id"]))["duplicate_of"] == a["memory_id"]


class TestRelationshipsThroughStore:
    async def test_relate_query_and_resolve(self, store: MemoryStore) -> None:
        a = await store.remember("Service A calls service B", check_duplicates=False)
        b = await store.remember("Service B exposes an API", check_duplicates=False)
        a_id, b_id = a["memory_id"], b["memory_id"]

        stored = await store.relate(
            a_id,
            [
                make_relationship(b_id, type="contradiction", confidence=0.9).to_dict(),
                make_relationship(b_id, type="continuation", confidence=0.7, strength=0.5).to_dict(),
            ],
        )
        assert stored["stored"] == 2

        related = await store.related(b_id)
        assert {r["direction"] for r in related["related"]} == {"incoming"}

        network = await store.network(a_id, max_depth=1)
        assert network["total_relationships"] == 2

        resolution = await store.resolve_conflicts(a_id)
        assert resolution["resolved"] == 1

        report = await store.check_consistency(a_id)
        assert report["is_valid"]

    async def test_update_relationships_from_dicts(self, store: MemoryStore) -> None:
        a = await store.remember("one", check_duplicates=False)
        result = await store.update_relationships(
            a["memory_id"],
            [{"relationship": make_relationship("m2").to_dict(), "operation": "add"}],
        )
        assert result == {"updated": 1, "errors": []}


class TestStateAndMaintenance:
    async def test_transitions(self, store: MemoryStore) -> None:
        a = await store.remember("one", check_duplicates=False)
        mid = a["memory_id"]

        assert await store.transition(mid, "PROCESSING", agent_id="worker") == {
            "memory_id": mid,
            "success": True,
            "state": "PROCESSING",
        }
        refused = await store.transition(mid, "CONSOLIDATED")
        assert refused["success"] is False
        assert refused["state"] == "PROCESSING"
        [entry] = await store.state_history(mid)
        assert entry["agent_id"] == "worker"

    async def test_stats(self, store: MemoryStore) -> None:
        await store.remember(VACUUM, check_duplicates=False)
        stats = await store.stats()
        assert stats["namespace"] == "default"
        assert stats["consolidation"]["total_memories"] == 1
        assert stats["relationships"]["total_relationships"] == 0
        assert stats["states"]["by_state"]["PENDING"] == 1

    async def test_cleanup(self, store: MemoryStore) -> None:
        await store.remember(VACUUM, check_duplicates=False)
        result = await store.cleanup(dry_run=True)
        assert result["memories"] == {"cleaned": 0, "skipped": 0, "errors": [], "dry_run": True}
        assert result["relationships"]["dry_run"]

        applied = await store.cleanup(include_relationships=False)
        assert "relationships" not in applied
