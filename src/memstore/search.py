"""Similarity sources consumed by duplicate detection.

A similarity source turns free text into a ranked list of candidate
memories.  The engine only depends on the :class:`SimilaritySource`
protocol; :class:`FtsSimilaritySource` is the default implementation and
ranks candidates with the FTS5 ``bm25()`` function over ``content`` and
``summary``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Protocol

from memstore.storage import Storage

log = logging.getLogger(__name__)

_MAX_QUERY_TERMS = 32


def build_match_query(text: str) -> str:
    """Convert arbitrary text into a safe FTS5 MATCH expression.

    Alphanumeric tokens of three or more characters are de-duplicated,
    double-quoted (so FTS5 keywords such as ``NOT`` are taken literally)
    and OR-joined.  Returns an empty string when no usable token exists.
    """
    words = re.findall(r"[A-Za-z0-9_]{3,}", text.lower())
    unique = list(dict.fromkeys(words))[:_MAX_QUERY_TERMS]
    return " OR ".join(f'"{w}"' for w in unique)


@dataclass
class SearchHit:
    """One ranked candidate returned by a similarity source."""

    id: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "score": self.score,
            "metadata": self.metadata,
        }


class SimilaritySource(Protocol):
    """Anything that can rank stored memories against a piece of text."""

    async def search(
        self,
        text: str,
        namespace: str = "default",
        limit: int = 20,
        include_metadata: bool = True,
    ) -> list[SearchHit]:
        ...


class FtsSimilaritySource:
    """BM25 ranking over the ``memories_fts`` table.

    Scores are normalised to ``[0, 1]`` relative to the best hit.  With
    *include_metadata* each hit carries the fields duplicate detection needs
    (summary, classification, confidence, creation time and consolidation
    target) so the detector does not have to re-read every candidate.

    Parameters
    ----------
    storage:
        An initialised :class:`~memstore.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def search(
        self,
        text: str,
        namespace: str = "default",
        limit: int = 20,
        include_metadata: bool = True,
    ) -> list[SearchHit]:
        match = build_match_query(text)
        if not match or limit <= 0:
            return []

        try:
            rows = await self._storage.execute(
                """
                SELECT m.id, m.content, m.summary, m.classification,
                       m.confidence_score, m.created_at, m.consolidated_into,
                       -bm25(memories_fts) AS raw_score
                FROM memories_fts
                JOIN memories m ON m.rowid = memories_fts.rowid
                WHERE memories_fts MATCH ?
                  AND m.namespace = ?
                ORDER BY bm25(memories_fts), m.id
                LIMIT ?
                """,
                (match, namespace, limit),
            )
        except sqlite3.OperationalError as exc:
            log.debug("FTS search failed (query=%r): %s", match, exc)
            return []

        if not rows:
            return []

        max_score = max(row["raw_score"] for row in rows)
        hits: list[SearchHit] = []
        for row in rows:
            score = row["raw_score"] / max_score if max_score > 0 else 0.0
            metadata: dict[str, Any] = {}
            if include_metadata:
                metadata = {
                    "summary": row["summary"] or "",
                    "classification": row["classification"],
                    "confidence_score": row["confidence_score"],
                    "created_at": row["created_at"],
                    "consolidated_into": row["consolidated_into"],
                }
            hits.append(SearchHit(row["id"], row["content"], round(score, 4), metadata))

        log.debug("FTS search returned %d hits in namespace %s", len(hits), namespace)
        return hits
