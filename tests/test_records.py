"""Tests for memstore.records -- the record model and repository."""

from __future__ import annotations

import pytest

from memstore.errors import RelationshipValidationError, ValidationError
from memstore.records import (
    MemoryRepository,
    Relationship,
    importance_weight,
    parse_iso,
)
from memstore.storage import Storage

from tests.conftest import days_ago, fetch_row, insert_memory, make_relationship


class TestRelationshipModel:
    def test_from_dict_normalises_type(self) -> None:
        rel = Relationship.from_dict(
            {"type": "SUPERSEDES", "target_memory_id": "m2", "confidence": "0.8", "strength": 0.5}
        )
        assert rel.type == "supersedes"
        assert rel.confidence == 0.8
        assert rel.is_superseding

    def test_from_dict_rejects_non_mapping(self) -> None:
        with pytest.raises(RelationshipValidationError, match="mapping"):
            Relationship.from_dict(["related"])

    def test_quality_weights_confidence(self) -> None:
        assert make_relationship(confidence=1.0, strength=0.0).quality == pytest.approx(0.6)
        assert make_relationship(confidence=0.0, strength=1.0).quality == pytest.approx(0.4)


class TestHelpers:
    def test_importance_weight(self) -> None:
        assert importance_weight("critical") == 0.9
        assert importance_weight("unknown") == 0.5
        assert importance_weight(None) == 0.5

    def test_parse_iso(self) -> None:
        assert parse_iso("2024-01-02T03:04:05").tzinfo is not None
        assert parse_iso("not a date") is None
        assert parse_iso(None) is None


class TestRepository:
    async def test_create_and_get(self, repository: MemoryRepository) -> None:
        record = await repository.create(
            "Redis evicts keys with LRU",
            namespace="cache",
            entities=["redis", "redis", "lru"],
            importance="high",
        )
        loaded = await repository.get(record.id, "cache")
        assert loaded is not None
        assert loaded.entities == ["redis", "lru"]
        assert loaded.processing_state == "PENDING"
        assert await repository.get(record.id, "other") is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"classification": "gossip"},
            {"importance": "urgent"},
            {"confidence_score": 1.2},
        ],
    )
    async def test_create_validates(self, repository: MemoryRepository, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            await repository.create("text", **kwargs)

    async def test_empty_content_raises_validation_error(self, repository: MemoryRepository) -> None:
        with pytest.raises(ValidationError) as exc:
            await repository.create("   ")
        assert exc.value.errors == ["Memory content must not be empty"]
        assert isinstance(exc.value, ValueError)

    async def test_malformed_relationship_skipped(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "one", memory_id="m1", relationships=[make_relationship("m2")])
        await storage.execute_write(
            "UPDATE memories SET general_relationships = ? WHERE id = 'm1'",
            ('[{"type": "related", "target_memory_id": "m2", "confidence": 0.8, "strength": 0.7},'
             ' "garbage", {"type": "related", "confidence": "x"}]',),
        )
        record = await repository.get("m1")
        assert [r.target_memory_id for r in record.relationships] == ["m2"]

    async def test_list_namespace_filters(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "a", memory_id="a", created_at=days_ago(3), classification="reference")
        await insert_memory(storage, "b", memory_id="b", created_at=days_ago(2), processing_state="PROCESSED")
        await insert_memory(storage, "c", memory_id="c", created_at=days_ago(1), consolidated_into="a")
        await insert_memory(storage, "d", memory_id="d", namespace="other")

        assert [r.id for r in await repository.list_namespace()] == ["a", "b", "c"]
        assert [r.id for r in await repository.list_namespace(include_consolidated=False)] == ["a", "b"]
        assert [r.id for r in await repository.list_namespace(classifications=["reference"])] == ["a"]
        assert [r.id for r in await repository.list_namespace(states=["PROCESSED"])] == ["b"]
        assert [r.id for r in await repository.list_namespace(limit=1)] == ["a"]

    async def test_counts_and_references(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "a", memory_id="a")
        await insert_memory(storage, "b", memory_id="b", is_duplicate=True, duplicate_of="a")
        await insert_memory(storage, "c", memory_id="c", is_consolidated=True, consolidated_into="a")

        assert await repository.count() == 3
        assert await repository.count(is_duplicate=True) == 1
        assert await repository.count(is_consolidated=True) == 1
        assert await repository.find_referencing("a") == ["b"]

    async def test_get_many_scoped(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "a", memory_id="a")
        await insert_memory(storage, "b", memory_id="b", namespace="other")
        found = await repository.get_many(["a", "b", "missing"], "default")
        assert set(found) == {"a"}
        assert await repository.get_many([]) == {}

    async def test_update_fields(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "a", memory_id="a")
        assert await repository.update_fields("a", {"entities": ["x"], "is_duplicate": True})
        row = await fetch_row(storage, "a")
        assert row["entities"] == ["x"]
        assert row["is_duplicate"] == 1
        assert not await repository.update_fields("missing", {"topic": "t"})

    async def test_update_rejects_unknown_field(self, storage: Storage, repository: MemoryRepository) -> None:
        await insert_memory(storage, "a", memory_id="a")
        with pytest.raises(ValueError, match="Unknown memory fields"):
            await repository.update_fields("a", {"namespace": "elsewhere"})
