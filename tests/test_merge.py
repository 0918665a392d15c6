"""Tests for memstore.merge -- pure merge functions used by consolidation."""

from __future__ import annotations

import pytest

from memstore.config import MergeConfig
from memstore.merge import (
    DEFAULT_SUMMARY,
    EMPTY_CONTENT,
    combine_classification_reasons,
    consolidate_topic,
    consolidated_summary,
    data_integrity_hash,
    merge_content,
    merge_duplicate_data,
    merge_entities,
    merge_keywords,
    weighted_confidence,
)
from memstore.records import MemoryRecord


def _record(
    memory_id: str,
    content: str = "",
    entities: list[str] | None = None,
    keywords: list[str] | None = None,
    importance: str = "medium",
    confidence: float = 0.5,
    **kwargs,
) -> MemoryRecord:
    return MemoryRecord(
        id=memory_id,
        content=content,
        entities=entities or [],
        keywords=keywords or [],
        importance=importance,
        confidence_score=confidence,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Field mergers
# ---------------------------------------------------------------------------


class TestMergeEntities:
    """Frequency ranking with the primary counted twice."""

    def test_primary_weighted_double(self) -> None:
        """Primary entities outrank entities seen once in a duplicate."""
        assert merge_entities(["ts", "web"], [["ts", "react"]]) == ["ts", "web", "react"]

    def test_case_and_whitespace_folded(self) -> None:
        """' TS' and 'ts' count as the same entity."""
        assert merge_entities(["TS"], [[" ts ", "Go"]]) == ["ts", "go"]

    def test_empty_entities_skipped(self) -> None:
        assert merge_entities(["", "  "], [["a"]]) == ["a"]

    def test_limit_applied(self) -> None:
        result = merge_entities([f"e{i}" for i in range(30)], [], limit=20)
        assert len(result) == 20
        assert result[0] == "e0"

    def test_ties_keep_first_appearance(self) -> None:
        """Equal counts stay in the order first seen."""
        assert merge_entities([], [["b", "a"], ["c"]]) == ["b", "a", "c"]

    def test_non_string_entries_ignored(self) -> None:
        """Malformed JSON rows holding numbers or nulls do not break the merge."""
        assert merge_entities(["ts", 7, None], [[{"x": 1}, "web"]]) == ["ts", "web"]


class TestMergeKeywords:
    """Keyword weights scale with each record's importance."""

    def test_importance_scales_weight(self) -> None:
        """A critical duplicate keyword can outrank a low-importance primary one."""
        primary = _record("p", keywords=["alpha"], importance="low")
        duplicate = _record("d", keywords=["beta", "beta2"], importance="critical")
        # low: ceil(0.3 * 2) = 1, critical: ceil(0.9 * 1) = 1 -> tie, first wins
        assert merge_keywords(primary, [duplicate]) == ["alpha", "beta", "beta2"]

    def test_shared_keyword_accumulates(self) -> None:
        primary = _record("p", keywords=["cache", "redis"], importance="high")
        duplicate = _record("d", keywords=["redis"], importance="medium")
        assert merge_keywords(primary, [duplicate])[0] == "redis"

    def test_non_string_keywords_ignored(self) -> None:
        primary = _record("p", keywords=["cache", 42])
        duplicate = _record("d", keywords=[None, "cache", ["nested"]])
        assert merge_keywords(primary, [duplicate]) == ["cache"]


class TestWeightedConfidence:
    """60/40 blend between the primary and the duplicates."""

    def test_single_duplicate(self) -> None:
        assert weighted_confidence(0.9, [0.6]) == pytest.approx(0.78)

    def test_duplicate_share_split_equally(self) -> None:
        # 0.5 * 0.6 + (1.0 + 0.0) * 0.2
        assert weighted_confidence(0.5, [1.0, 0.0]) == pytest.approx(0.5)

    def test_no_duplicates_keeps_primary_share(self) -> None:
        assert weighted_confidence(1.0, []) == pytest.approx(0.6)


class TestClassificationReasons:
    def test_single_reason_returned_as_is(self) -> None:
        assert combine_classification_reasons("infra fact", ["infra fact"]) == "infra fact"

    def test_multiple_reasons_combined(self) -> None:
        result = combine_classification_reasons("infra fact", ["ops note", "", "ops note"])
        assert result == "Primary classification: infra fact. Additional context: ops note"

    def test_no_reasons(self) -> None:
        assert combine_classification_reasons("", [""]) == ""


class TestTopicAndSummary:
    def test_primary_topic_preferred(self) -> None:
        assert consolidate_topic(" databases ", ["caching"]) == "databases"

    def test_most_common_duplicate_topic(self) -> None:
        assert consolidate_topic(None, ["caching", "dns", "caching"]) == "caching"

    def test_no_topic_anywhere(self) -> None:
        assert consolidate_topic("", [None, " "]) is None

    def test_summary_defaults(self) -> None:
        assert consolidated_summary("", []) == DEFAULT_SUMMARY
        assert consolidated_summary("", ["Only duplicate summary"]) == "Only duplicate summary"
        assert consolidated_summary("Primary summary", []) == "Primary summary"

    def test_summary_appends_lead_sentences(self) -> None:
        result = consolidated_summary(
            "Redis caching",
            ["Redis evicts keys with LRU. More detail.", "short"],
        )
        assert result == "Redis caching (Consolidated from 3 memories: Redis evicts keys with LRU)"


# ---------------------------------------------------------------------------
# Content merging
# ---------------------------------------------------------------------------


class TestMergeContent:
    """Sentence-level content consolidation."""

    def test_empty_inputs(self) -> None:
        assert merge_content("", []) == EMPTY_CONTENT

    def test_no_duplicates_returns_primary(self) -> None:
        assert merge_content("Primary text only.", []) == "Primary text only."

    def test_shared_sentence_appears_once(self) -> None:
        primary = "Postgres VACUUM reclaims dead tuples. Autovacuum runs it periodically."
        duplicate = "Postgres VACUUM reclaims dead tuples. It can be run manually too."
        merged = merge_content(primary, [duplicate])
        assert merged.lower().count("postgres vacuum reclaims dead tuples") == 1
        assert merged.endswith("(Consolidated from 2 source memories)")

    def test_key_topics_clause(self) -> None:
        primary = (
            "Kubernetes deployments roll out replicas gradually. "
            "Kubernetes services route traffic to healthy pods."
        )
        merged = merge_content(primary, ["Kubernetes probes decide which pods are healthy."])
        assert "Key topics include: kubernetes" in merged

    def test_length_capped(self) -> None:
        cfg = MergeConfig(max_content_length=120, min_content_length=10)
        sentences = ". ".join(f"Sentence number {i} talks about storage engines" for i in range(20))
        merged = merge_content(sentences, [sentences], cfg)
        body = merged.replace(" (Consolidated from 2 source memories)", "")
        assert len(body) <= 120

    def test_internal_failure_falls_back_to_primary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        import memstore.merge as merge_module

        def _boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(merge_module, "_rank_sentences", _boom)
        assert merge_content("Primary survives.", ["Duplicate text here."]) == "Primary survives."


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class TestMergeDuplicateData:
    """End-to-end payload computation."""

    def test_reference_scenario(self) -> None:
        """High-importance primary with one medium duplicate."""
        primary = _record("p", "Primary", entities=["ts", "web"], importance="high", confidence=0.9)
        duplicate = _record("d", "Duplicate", entities=["ts", "react"], importance="medium", confidence=0.6)

        merged = merge_duplicate_data(primary, [duplicate])

        assert merged.confidence_score == pytest.approx(0.78)
        assert merged.entities == ["ts", "web", "react"]

    def test_empty_duplicates_rejected(self) -> None:
        with pytest.raises(ValueError, match="No duplicate memories"):
            merge_duplicate_data(_record("p", "x"), [])

    def test_deterministic(self) -> None:
        """Repeated merges produce identical payloads and hashes."""
        primary = _record(
            "p",
            "Terraform state must be locked during apply. Use a remote backend.",
            entities=["terraform", "s3"],
            keywords=["state", "locking"],
            summary="Terraform state locking",
            topic="infra",
        )
        duplicates = [
            _record("d1", "Terraform state must be locked during apply. DynamoDB provides locks.",
                    entities=["terraform", "dynamodb"], keywords=["locking"]),
            _record("d2", "Always use a remote backend for Terraform state.",
                    entities=["terraform"], keywords=["backend"]),
        ]
        first = merge_duplicate_data(primary, duplicates)
        second = merge_duplicate_data(primary, duplicates)
        assert first == second
        assert first.integrity_hash() == second.integrity_hash()


class TestDataIntegrityHash:
    def test_key_order_irrelevant(self) -> None:
        assert data_integrity_hash({"a": 1, "b": 2}) == data_integrity_hash({"b": 2, "a": 1})

    def test_short_hex(self) -> None:
        digest = data_integrity_hash({"a": 1})
        assert len(digest) == 16
        int(digest, 16)

    def test_changes_with_payload(self) -> None:
        assert data_integrity_hash({"a": 1}) != data_integrity_hash({"a": 2})
