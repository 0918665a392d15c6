"""Central configuration for the memstore engine.

Every tunable of the engine has a default here and can be overridden
from the environment with the ``MEMSTORE_`` prefix (sections use
double underscores, e.g. ``MEMSTORE_CONSOLIDATION__MAX_DUPLICATES=20``).

Usage::

    from memstore.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.duplicates.similarity_threshold)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DuplicateConfig:
    """Parameters for near-duplicate detection."""

    similarity_threshold: float = 0.7
    candidate_window: int = 20
    merge_threshold: float = 0.85
    """Jaccard similarity at or above which a candidate is recommended for merge."""
    sweep_limit: int = 1000
    """Maximum number of records compared pairwise by namespace-wide sweeps."""

    def __post_init__(self) -> None:
        for name in ("similarity_threshold", "merge_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"duplicates.{name} must be within [0, 1], got {value}")


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Guards and budgets for the consolidation executor."""

    max_duplicates: int = 50
    warn_duplicates: int = 25
    recency_guard_hours: float = 1.0
    """A primary consolidated more recently than this is rejected to avoid thrashing."""
    transaction_timeout_seconds: float = 60.0
    cleanup_after_days: int = 30


@dataclass(frozen=True, slots=True)
class MergeConfig:
    """Limits applied by the merge engine when fusing records."""

    max_entities: int = 20
    max_keywords: int = 30
    max_sentences: int = 12
    body_sentences: int = 8
    max_key_topics: int = 15
    listed_key_topics: int = 10
    max_content_length: int = 2000
    min_content_length: int = 100
    summary_duplicates: int = 3


@dataclass(frozen=True, slots=True)
class RelationshipConfig:
    """Parameters for the relationship graph."""

    max_per_memory: int = 100
    cleanup_min_confidence: float = 0.2
    cleanup_max_age_days: int = 90
    default_limit: int = 20
    query_limit: int = 50
    network_max_depth: int = 3


@dataclass(frozen=True, slots=True)
class StateConfig:
    """Parameters for the processing state machine."""

    max_history_entries: int = 100
    retry_attempts: int = 3
    retry_delay_ms: int = 1000


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MemstoreConfig:
    """Root configuration object for the memstore engine.

    Paths have ``~`` expanded on construction.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memstore/memstore.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memstore/backups"))
    backup_count: int = 5
    default_namespace: str = "default"
    log_level: str = "WARNING"

    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    relationships: RelationshipConfig = field(default_factory=RelationshipConfig)
    state: StateConfig = field(default_factory=StateConfig)

    def __post_init__(self) -> None:
        # frozen: write through object.__setattr__
        object.__setattr__(self, "db_path", self.db_path.expanduser())
        object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMSTORE_"
_NESTED_SEP = "__"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _field_types(section: type) -> dict[str, type]:
    # Annotations are strings here; evaluate them where the section is defined.
    module = sys.modules.get(section.__module__)
    return get_type_hints(section, globalns=vars(module) if module else {})


def _parse_env_value(raw: str, kind: type[T]) -> T:
    if kind is bool:
        return raw.strip().lower() in _TRUTHY  # type: ignore[return-value]
    return kind(raw.strip())  # type: ignore[call-arg]


def _from_environ(section: type[T], prefix: str) -> T:
    """Build *section* from its defaults and any ``{prefix}{FIELD}`` variables.

    Fields that are themselves config sections are read from
    ``{prefix}{FIELD}__`` so each level of nesting adds one separator.
    """
    types = _field_types(section)
    overrides: dict[str, object] = {}
    for f in fields(section):  # type: ignore[arg-type]
        kind = types[f.name]
        env_name = f"{prefix}{f.name}".upper()
        if hasattr(kind, "__dataclass_fields__"):
            overrides[f.name] = _from_environ(kind, env_name + _NESTED_SEP)
        elif env_name in os.environ:
            overrides[f.name] = _parse_env_value(os.environ[env_name], kind)
    return section(**overrides)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: MemstoreConfig | None = None


def get_config(*, reload: bool = False) -> MemstoreConfig:
    """Return the current :class:`MemstoreConfig`.

    Built once from the dataclass defaults overlaid with
    ``MEMSTORE_*`` environment variables, then reused until
    *reload* forces a fresh read of the environment.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _from_environ(MemstoreConfig, _ENV_PREFIX)
    return _cached_config
