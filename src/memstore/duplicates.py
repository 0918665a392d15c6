"""Near-duplicate detection over lexical overlap.

Candidates come from a :class:`~memstore.search.SimilaritySource`; each is
then scored with Jaccard similarity over lower-cased whitespace tokens of
``content + " " + summary``.  Output ordering is similarity descending with
ties broken by the lower id, so repeated runs over unchanged data give the
same result.

Usage::

    detector = DuplicateDetector(repository, FtsSimilaritySource(storage))
    candidates = await detector.detect_for_memory(memory_id, namespace="ops")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from memstore.config import get_config
from memstore.errors import MemoryNotFoundError
from memstore.records import MemoryRecord, MemoryRepository, parse_iso
from memstore.search import SimilaritySource

log = logging.getLogger(__name__)

RECOMMENDATIONS: tuple[str, ...] = ("merge", "replace", "ignore")
"""Suggested action attached to each duplicate candidate."""


def tokenize(text: str) -> frozenset[str]:
    """Lower-cased whitespace tokens of *text*."""
    return frozenset(text.lower().split())


def jaccard_similarity(a: str | frozenset[str], b: str | frozenset[str]) -> float:
    """``|A ∩ B| / |A ∪ B|`` over word sets; ``0.0`` when both are empty."""
    set_a = tokenize(a) if isinstance(a, str) else a
    set_b = tokenize(b) if isinstance(b, str) else b
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def _validate_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(
            f"Similarity threshold must be between 0.0 and 1.0, got {threshold}"
        )


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class DuplicateCandidate:
    """A stored memory proposed as a near-duplicate of some reference text."""

    id: str
    content: str
    similarity_score: float
    confidence: float
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "similarity_score": self.similarity_score,
            "confidence": self.confidence,
            "recommendation": self.recommendation,
        }


@dataclass
class DuplicateGroup:
    """A primary memory and the candidates that duplicate it."""

    primary_id: str
    candidates: list[DuplicateCandidate] = field(default_factory=list)

    @property
    def duplicate_ids(self) -> list[str]:
        return [c.id for c in self.candidates]

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_id": self.primary_id,
            "candidates": [c.to_dict() for c in self.candidates],
        }


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class DuplicateDetector:
    """Turn similarity-source hits into scored duplicate candidates.

    Parameters
    ----------
    repository:
        Used to read authoritative fields of every candidate.
    similarity:
        Any :class:`~memstore.search.SimilaritySource`.
    """

    def __init__(self, repository: MemoryRepository, similarity: SimilaritySource) -> None:
        self._repository = repository
        self._similarity = similarity
        self._cfg = get_config().duplicates

    def _recommend(
        self,
        similarity: float,
        candidate: MemoryRecord,
        reference: MemoryRecord | None,
    ) -> str:
        if similarity >= self._cfg.merge_threshold:
            return "merge"
        if reference is not None:
            candidate_time = parse_iso(candidate.created_at)
            reference_time = parse_iso(reference.created_at)
            newer = (
                candidate_time is not None
                and reference_time is not None
                and candidate_time > reference_time
            )
            if newer and candidate.confidence_score > reference.confidence_score:
                return "replace"
        return "ignore"

    async def detect(
        self,
        text: str,
        namespace: str = "default",
        threshold: float | None = None,
        exclude_id: str | None = None,
        eligible_classifications: Iterable[str] | None = None,
        reference: MemoryRecord | None = None,
    ) -> list[DuplicateCandidate]:
        """Find stored memories whose text nearly duplicates *text*.

        Parameters
        ----------
        text:
            Typically ``content + " " + summary`` of a would-be primary.
        namespace:
            Only candidates from this namespace are considered.
        threshold:
            Minimum Jaccard similarity, in ``[0, 1]``.  Defaults to the
            configured ``duplicates.similarity_threshold``.
        exclude_id:
            Id to leave out (usually the primary itself).
        eligible_classifications:
            When given, candidates of any other classification are skipped.
        reference:
            The record *text* came from.  Needed for the ``replace``
            recommendation, which compares age and confidence.

        Returns
        -------
        list[DuplicateCandidate]
            Ordered by similarity descending, then id ascending.
        """
        threshold = self._cfg.similarity_threshold if threshold is None else threshold
        _validate_threshold(threshold)
        eligible = set(eligible_classifications) if eligible_classifications is not None else None

        log.info(
            "Detecting duplicates in namespace %s (threshold=%.2f)", namespace, threshold
        )
        hits = await self._similarity.search(
            text,
            namespace=namespace,
            limit=self._cfg.candidate_window,
            include_metadata=True,
        )
        hit_ids = [h.id for h in hits if h.id != exclude_id]
        records = await self._repository.get_many(hit_ids, namespace)

        source_tokens = tokenize(text)
        candidates: list[DuplicateCandidate] = []
        for memory_id in hit_ids:
            record = records.get(memory_id)
            if record is None or record.consolidated_into is not None:
                continue
            if eligible is not None and record.classification not in eligible:
                continue
            similarity = jaccard_similarity(source_tokens, tokenize(record.searchable_text))
            if similarity < threshold:
                continue
            candidates.append(
                DuplicateCandidate(
                    id=record.id,
                    content=record.content,
                    similarity_score=round(similarity, 4),
                    confidence=record.confidence_score,
                    recommendation=self._recommend(similarity, record, reference),
                )
            )

        candidates.sort(key=lambda c: (-c.similarity_score, c.id))
        log.info(
            "Found %d duplicate candidates in namespace %s", len(candidates), namespace
        )
        return candidates

    async def detect_for_memory(
        self,
        memory_id: str,
        namespace: str = "default",
        threshold: float | None = None,
        eligible_classifications: Iterable[str] | None = None,
    ) -> list[DuplicateCandidate]:
        """Detect duplicates of a stored memory, excluding the memory itself.

        Raises
        ------
        MemoryNotFoundError
            If *memory_id* does not exist in *namespace*.
        """
        record = await self._repository.get(memory_id, namespace)
        if record is None:
            raise MemoryNotFoundError(memory_id, namespace)
        return await self.detect(
            record.searchable_text,
            namespace=namespace,
            threshold=threshold,
            exclude_id=memory_id,
            eligible_classifications=eligible_classifications,
            reference=record,
        )

    async def find_duplicate_groups(
        self,
        namespace: str = "default",
        threshold: float | None = None,
        classifications: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[DuplicateGroup]:
        """Sweep a namespace and group near-duplicate records.

        Records are visited oldest first; each unassigned record becomes the
        primary of a group holding every later unassigned record at or above
        *threshold*.  A record joins at most one group, and records already
        merged elsewhere are ignored.
        """
        threshold = self._cfg.similarity_threshold if threshold is None else threshold
        _validate_threshold(threshold)
        records = await self._repository.list_namespace(
            namespace,
            classifications=classifications,
            include_consolidated=False,
            limit=limit or self._cfg.sweep_limit,
        )
        tokens = [tokenize(r.searchable_text) for r in records]

        groups: list[DuplicateGroup] = []
        assigned: set[int] = set()
        for i, primary in enumerate(records):
            if i in assigned:
                continue
            group = DuplicateGroup(primary_id=primary.id)
            for j in range(i + 1, len(records)):
                if j in assigned:
                    continue
                similarity = jaccard_similarity(tokens[i], tokens[j])
                if similarity < threshold:
                    continue
                candidate = records[j]
                group.candidates.append(
                    DuplicateCandidate(
                        id=candidate.id,
                        content=candidate.content,
                        similarity_score=round(similarity, 4),
                        confidence=candidate.confidence_score,
                        recommendation=self._recommend(similarity, candidate, primary),
                    )
                )
                assigned.add(j)
            if group.candidates:
                assigned.add(i)
                group.candidates.sort(key=lambda c: (-c.similarity_score, c.id))
                groups.append(group)

        log.info(
            "Duplicate sweep over %d memories in namespace %s found %d groups",
            len(records),
            namespace,
            len(groups),
        )
        return groups

    async def count_potential_duplicates(
        self,
        namespace: str = "default",
        threshold: float | None = None,
    ) -> int:
        """Number of records with at least one near-duplicate in the namespace."""
        threshold = self._cfg.similarity_threshold if threshold is None else threshold
        records = await self._repository.list_namespace(
            namespace,
            include_consolidated=False,
            limit=self._cfg.sweep_limit,
        )
        tokens = [tokenize(r.searchable_text) for r in records]
        flagged: set[int] = set()
        for i in range(len(tokens)):
            for j in range(i + 1, len(tokens)):
                if jaccard_similarity(tokens[i], tokens[j]) >= threshold:
                    flagged.update((i, j))
        return len(flagged)
