"""Shared fixtures and helpers for the memstore test suite."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from memstore.config import get_config
from memstore.records import MemoryRepository, Relationship
from memstore.storage import Storage
from memstore.store import MemoryStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point every default path at ``tmp_path`` so tests never touch
    ``~/.memstore``."""
    monkeypatch.setenv("MEMSTORE_DB_PATH", str(tmp_path / "default.db"))
    monkeypatch.setenv("MEMSTORE_BACKUP_DIR", str(tmp_path / "backups"))
    yield get_config(reload=True)
    monkeypatch.undo()
    get_config(reload=True)


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    db_path = tmp_path / "test.db"
    s = Storage(db_path)
    s._backup_dir = tmp_path / "backups"
    s._backup_dir.mkdir(exist_ok=True)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def repository(storage: Storage) -> MemoryRepository:
    return MemoryRepository(storage)


@pytest.fixture
async def store(tmp_path: Path) -> MemoryStore:
    """Provide an initialized MemoryStore backed by a temp database."""
    s = MemoryStore(db_path=tmp_path / "store.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.shutdown()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing the repository
# ---------------------------------------------------------------------------


def days_ago(days: float) -> str:
    """ISO timestamp *days* in the past."""
    return (datetime.now(tz=timezone.utc) - timedelta(days=days)).isoformat()


def make_relationship(
    target: str | None = "m2",
    type: str = "related",
    confidence: float = 0.8,
    strength: float = 0.7,
    reason: str = "Both memories describe the same deployment",
    context: str = "deployment notes",
    entities: list[str] | None = None,
) -> Relationship:
    """Build a valid :class:`Relationship` with overridable fields."""
    return Relationship(
        type=type,
        target_memory_id=target,
        confidence=confidence,
        strength=strength,
        reason=reason,
        context=context,
        entities=list(entities or []),
    )


async def insert_memory(
    storage: Storage,
    content: str,
    memory_id: str | None = None,
    namespace: str = "default",
    summary: str = "",
    topic: str | None = None,
    classification: str = "contextual",
    importance: str = "medium",
    entities: list[str] | None = None,
    keywords: list[str] | None = None,
    confidence_score: float = 0.5,
    classification_reason: str = "",
    is_duplicate: bool = False,
    duplicate_of: str | None = None,
    is_consolidated: bool = False,
    consolidated_into: str | None = None,
    consolidated_at: str | None = None,
    relationships: list[Relationship] | None = None,
    processing_state: str = "PENDING",
    metadata: dict[str, str] | None = None,
    created_at: str | None = None,
) -> str:
    """Insert a memory directly via SQL.  Returns its id."""
    memory_id = memory_id or uuid.uuid4().hex
    now = datetime.now(tz=timezone.utc).isoformat()
    edges = relationships or []
    general = [r.to_dict() for r in edges if r.type != "supersedes"]
    superseding = [r.to_dict() for r in edges if r.type == "supersedes"]

    await storage.execute_write(
        """
        INSERT INTO memories
            (id, namespace, content, summary, topic, classification, importance,
             entities, keywords, confidence_score, classification_reason,
             is_duplicate, duplicate_of, is_consolidated, consolidated_into,
             consolidated_at, general_relationships, superseding_relationships,
             processing_state, metadata, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory_id,
            namespace,
            content,
            summary,
            topic,
            classification,
            importance,
            json.dumps(entities or []),
            json.dumps(keywords or []),
            confidence_score,
            classification_reason,
            int(is_duplicate),
            duplicate_of,
            int(is_consolidated),
            consolidated_into,
            consolidated_at,
            json.dumps(general),
            json.dumps(superseding),
            processing_state,
            json.dumps(metadata or {}),
            created_at or now,
            now,
        ),
    )
    return memory_id


async def fetch_row(storage: Storage, memory_id: str) -> dict[str, Any] | None:
    """Raw ``memories`` row as a dict with JSON columns decoded."""
    rows = await storage.execute("SELECT * FROM memories WHERE id = ?", (memory_id,))
    if not rows:
        return None
    row = dict(rows[0])
    for column in (
        "entities",
        "keywords",
        "consolidation_history",
        "general_relationships",
        "superseding_relationships",
        "metadata",
    ):
        row[column] = json.loads(row[column])
    return row
