"""Pure merge functions used by consolidation.

Given one primary :class:`~memstore.records.MemoryRecord` and one or more
duplicates, :func:`merge_duplicate_data` computes the consolidated
content, summary, entities, keywords, topic, confidence score and
classification reason.  Nothing here touches storage or the clock, and
every ranking breaks ties by first appearance, so the same input always
produces byte-identical output.

Weighting rules:

- **Entities** -- frequency count, primary entries ×2, duplicates ×1.
- **Keywords** -- ``ceil(importance_weight × base)`` with base 2 for the
  primary and 1 for duplicates.
- **Confidence** -- primary contributes 60%, duplicates share the other 40%.
- **Content** -- sentence-level deduplication with primary sentences ×2,
  a "Key topics include" clause, a length cap and a length floor.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from memstore.config import MergeConfig, get_config
from memstore.records import MemoryRecord, importance_weight

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

_MIN_SENTENCE_LENGTH = 15
_MIN_CLEAN_SENTENCE_LENGTH = 10
_MIN_TOPIC_WORD_LENGTH = 3
_MIN_SUMMARY_INFO_LENGTH = 10
_TOPICS_CLAUSE_MIN_BODY = 50
_TRUNCATE_BOUNDARY_RATIO = 0.7

PRIMARY_CONFIDENCE_WEIGHT = 0.6
DUPLICATE_CONFIDENCE_WEIGHT = 0.4

DEFAULT_SUMMARY = "Consolidated memory summary"
EMPTY_CONTENT = "No content available for consolidation"

STOP_WORDS: frozenset[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "must", "can", "this", "that", "these", "those", "i", "you",
    "he", "she", "it", "we", "they", "me", "him", "her", "us", "them", "my",
    "your", "his", "its", "our", "their", "what", "which", "who", "when",
    "where", "why", "how", "all", "any", "both", "each", "few", "more",
    "most", "other", "some", "such", "no", "nor", "not", "only", "own",
    "same", "so", "than", "too", "very", "just", "like", "also", "well",
    "now", "here", "there",
})
"""Words never reported as key topics."""


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class MergedMemory:
    """Consolidated payload written onto the primary record."""

    content: str
    summary: str
    entities: list[str]
    keywords: list[str]
    topic: str | None
    confidence_score: float
    classification_reason: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def integrity_hash(self) -> str:
        """Data integrity hash of the whole payload."""
        return data_integrity_hash(self.to_dict())


def data_integrity_hash(payload: Any) -> str:
    """Stable short hash of *payload*.

    SHA-256 over the sorted-key JSON encoding, truncated to 16 hex
    characters.
    """
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def _ranked(counts: Counter[str], limit: int) -> list[str]:
    # Counter keeps insertion order and sorted() is stable, so equal
    # counts stay in first-appearance order.
    return [key for key, _ in sorted(counts.items(), key=lambda kv: -kv[1])[:limit]]


# ---------------------------------------------------------------------------
# Field mergers
# ---------------------------------------------------------------------------


def _terms(values: Sequence[Any]) -> list[str]:
    """Lower-cased, trimmed, non-empty string entries of a JSON list column."""
    terms = []
    for value in values:
        if not isinstance(value, str):
            log.debug("Skipping non-string term %r", value)
            continue
        key = value.lower().strip()
        if key:
            terms.append(key)
    return terms


def merge_entities(
    primary: Sequence[str],
    duplicates: Sequence[Sequence[str]],
    limit: int = 20,
) -> list[str]:
    """Frequency-rank entities, counting primary entries twice.

    Entities are compared lower-cased and trimmed; entries that are not
    strings are ignored.
    """
    counts: Counter[str] = Counter()
    for key in _terms(primary):
        counts[key] += 2
    for entities in duplicates:
        for key in _terms(entities):
            counts[key] += 1
    return _ranked(counts, limit)


def merge_keywords(
    primary: MemoryRecord,
    duplicates: Sequence[MemoryRecord],
    limit: int = 30,
) -> list[str]:
    """Rank keywords by importance-scaled weight.

    Each primary keyword adds ``ceil(importance_weight × 2)``; each
    duplicate keyword adds ``ceil(importance_weight × 1)`` using that
    duplicate's own importance.
    """
    counts: Counter[str] = Counter()
    primary_weight = math.ceil(importance_weight(primary.importance) * 2)
    for key in _terms(primary.keywords):
        counts[key] += primary_weight
    for record in duplicates:
        weight = math.ceil(importance_weight(record.importance) * 1)
        for key in _terms(record.keywords):
            counts[key] += weight
    return _ranked(counts, limit)


def weighted_confidence(primary: float, duplicates: Sequence[float]) -> float:
    """Blend confidence scores 60/40 between primary and duplicates.

    The duplicates' 40% share is split equally, and the result is rounded
    to two decimals.
    """
    share = DUPLICATE_CONFIDENCE_WEIGHT / len(duplicates) if duplicates else 0.0
    total = primary * PRIMARY_CONFIDENCE_WEIGHT
    for confidence in duplicates:
        total += confidence * share
    return round(total, 2)


def combine_classification_reasons(primary: str, duplicates: Sequence[str]) -> str:
    """De-duplicate reasons in order and fold them into one explanation."""
    unique = list(dict.fromkeys(r for r in [primary, *duplicates] if r))
    if not unique:
        return ""
    if len(unique) == 1:
        return unique[0]
    return (
        f"Primary classification: {unique[0]}. "
        f"Additional context: {'; '.join(unique[1:])}"
    )


def consolidate_topic(primary: str | None, duplicates: Sequence[str | None]) -> str | None:
    """Keep the primary topic, else the most frequent duplicate topic."""
    if primary and primary.strip():
        return primary.strip()
    counts: Counter[str] = Counter(t.strip() for t in duplicates if t and t.strip())
    ranked = _ranked(counts, 1)
    return ranked[0] if ranked else None


def consolidated_summary(
    primary: str,
    duplicates: Sequence[str],
    max_duplicates: int = 3,
) -> str:
    """Extend the primary summary with the lead sentence of a few duplicates."""
    others = [s for s in duplicates if s]
    if not primary and not others:
        return DEFAULT_SUMMARY
    if not primary:
        return others[0]
    if not others:
        return primary

    info = "; ".join(
        lead
        for lead in (s.split(".")[0] for s in others[:max_duplicates])
        if len(lead) > _MIN_SUMMARY_INFO_LENGTH
    )
    if info:
        return f"{primary} (Consolidated from {len(others) + 1} memories: {info})"
    return primary


# ---------------------------------------------------------------------------
# Content merging
# ---------------------------------------------------------------------------


def _topic_words(content: str) -> list[str]:
    words = _NON_WORD.sub(" ", content.lower()).split()
    return [w for w in words if len(w) > _MIN_TOPIC_WORD_LENGTH and w not in STOP_WORDS]


def _split_sentences(content: str) -> list[str]:
    return [
        _WHITESPACE.sub(" ", s.strip())
        for s in _SENTENCE_SPLIT.split(content)
        if len(s.strip()) > _MIN_SENTENCE_LENGTH
    ]


def _rank_sentences(contents: Sequence[str], limit: int) -> list[str]:
    """Top sentences across *contents*, the first content weighted ×2."""
    counts: Counter[str] = Counter()
    for index, content in enumerate(contents):
        weight = 2 if index == 0 else 1
        for sentence in _split_sentences(content):
            clean = _NON_WORD.sub(" ", sentence.lower()).strip()
            if len(clean) > _MIN_CLEAN_SENTENCE_LENGTH:
                counts[clean] += weight
    return [s[0].upper() + s[1:] for s in _ranked(counts, limit)]


def _key_topics(contents: Sequence[str], limit: int) -> list[str]:
    counts: Counter[str] = Counter()
    for content in contents:
        counts.update(_topic_words(content))
    return _ranked(counts, limit)


def _build_content(
    sentences: list[str],
    topics: list[str],
    primary: str,
    duplicate_count: int,
    cfg: MergeConfig,
) -> str:
    if not sentences:
        return primary

    body = ". ".join(sentences[: cfg.body_sentences]) + "."
    if topics and len(body) > _TOPICS_CLAUSE_MIN_BODY:
        body += f" Key topics include: {', '.join(topics[: cfg.listed_key_topics])}."

    cap = cfg.max_content_length
    if len(body) > cap:
        truncated = body[:cap]
        boundary = max(truncated.rfind("."), truncated.rfind("!"), truncated.rfind("?"))
        body = truncated[: boundary + 1] if boundary > cap * _TRUNCATE_BOUNDARY_RATIO else truncated

    if len(body) < cfg.min_content_length and primary:
        lead = [s.strip() for s in _SENTENCE_SPLIT.split(primary) if len(s.strip()) > _MIN_SENTENCE_LENGTH]
        if lead:
            body = ". ".join(lead[:3]) + ". " + body

    if duplicate_count > 0:
        body += f" (Consolidated from {duplicate_count + 1} source memories)"
    return body


def merge_content(
    primary: str,
    duplicates: Sequence[str],
    cfg: MergeConfig | None = None,
) -> str:
    """Build consolidated content from the primary and duplicate texts.

    Never raises: any internal failure falls back to *primary* unchanged.
    """
    cfg = cfg or get_config().merge
    if not primary and not duplicates:
        return EMPTY_CONTENT
    if not duplicates:
        return primary
    try:
        contents = [primary, *duplicates]
        sentences = _rank_sentences(contents, cfg.max_sentences)
        topics = _key_topics(contents, cfg.max_key_topics)
        return _build_content(sentences, topics, primary, len(duplicates), cfg)
    except Exception:
        log.exception("Content merge failed; keeping primary content")
        return primary


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def merge_duplicate_data(
    primary: MemoryRecord,
    duplicates: Sequence[MemoryRecord],
    cfg: MergeConfig | None = None,
) -> MergedMemory:
    """Compute the consolidated payload for *primary* and its *duplicates*.

    Parameters
    ----------
    primary:
        The record that survives.
    duplicates:
        Records being merged into it.  Must be non-empty.
    cfg:
        Merge limits; the process configuration when omitted.

    Raises
    ------
    ValueError
        If *duplicates* is empty.
    """
    if not duplicates:
        raise ValueError("No duplicate memories provided for merging")
    cfg = cfg or get_config().merge

    merged = MergedMemory(
        content=merge_content(primary.content, [d.content for d in duplicates], cfg),
        summary=consolidated_summary(
            primary.summary, [d.summary for d in duplicates], cfg.summary_duplicates
        ),
        entities=merge_entities(
            primary.entities, [d.entities for d in duplicates], cfg.max_entities
        ),
        keywords=merge_keywords(primary, duplicates, cfg.max_keywords),
        topic=consolidate_topic(primary.topic, [d.topic for d in duplicates]),
        confidence_score=weighted_confidence(
            primary.confidence_score, [d.confidence_score for d in duplicates]
        ),
        classification_reason=combine_classification_reasons(
            primary.classification_reason, [d.classification_reason for d in duplicates]
        ),
    )
    log.debug(
        "Merged %d duplicates into %s (entities=%d keywords=%d confidence=%.2f)",
        len(duplicates),
        primary.id,
        len(merged.entities),
        len(merged.keywords),
        merged.confidence_score,
    )
    return merged
