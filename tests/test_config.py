"""Tests for memstore.config -- defaults and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from memstore.config import DuplicateConfig, MemstoreConfig, get_config


class TestDefaults:
    def test_section_defaults(self) -> None:
        cfg = MemstoreConfig()
        assert cfg.duplicates.similarity_threshold == 0.7
        assert cfg.consolidation.max_duplicates == 50
        assert cfg.relationships.max_per_memory == 100
        assert cfg.state.retry_attempts == 3
        assert cfg.default_namespace == "default"

    def test_paths_expanded(self) -> None:
        cfg = MemstoreConfig(db_path=Path("~/x.db"))
        assert "~" not in str(cfg.db_path)

    def test_threshold_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="similarity_threshold"):
            DuplicateConfig(similarity_threshold=1.5)

    def test_frozen(self) -> None:
        cfg = MemstoreConfig()
        with pytest.raises(AttributeError):
            cfg.default_namespace = "other"  # type: ignore[misc]


class TestEnvironment:
    def test_top_level_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("MEMSTORE_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("MEMSTORE_DEFAULT_NAMESPACE", "ops")
        cfg = get_config(reload=True)
        assert cfg.db_path == tmp_path / "env.db"
        assert cfg.default_namespace == "ops"

    def test_nested_override_coerced(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMSTORE_CONSOLIDATION__MAX_DUPLICATES", "20")
        monkeypatch.setenv("MEMSTORE_DUPLICATES__SIMILARITY_THRESHOLD", "0.9")
        cfg = get_config(reload=True)
        assert cfg.consolidation.max_duplicates == 20
        assert cfg.duplicates.similarity_threshold == 0.9
        assert cfg.consolidation.warn_duplicates == 25

    def test_cached_until_reload(self, monkeypatch: pytest.MonkeyPatch) -> None:
        first = get_config()
        monkeypatch.setenv("MEMSTORE_LOG_LEVEL", "DEBUG")
        assert get_config() is first
        assert get_config(reload=True).log_level == "DEBUG"
