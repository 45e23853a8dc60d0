"""Tests for configuration validation and environment loading."""

import os

import pytest
from pydantic import ValidationError

from knowledge_memory.config import MemoryConfig, StorageConfig, TierConfig
from knowledge_memory.env_config import get_env_bool, get_env_int, load_config_from_env


class TestStorageConfig:

    def test_defaults(self):
        config = StorageConfig()
        assert config.backend == "file"
        assert config.extended_dir.endswith("knowledge-memory")

    def test_paths_normalized(self):
        config = StorageConfig(extended_dir="./data//extended/")
        assert config.extended_dir == os.path.normpath("./data//extended/")

    @pytest.mark.parametrize("field", ["extended_dir", "sqlite_db_path"])
    def test_parent_traversal_rejected(self, field):
        with pytest.raises(ValidationError):
            StorageConfig(**{field: "data/../../etc"})

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            StorageConfig(backend="redis")


class TestTierConfig:

    def test_defaults(self):
        config = TierConfig()
        assert config.working_memory_tokens == 16000
        assert config.compression_threshold == 0.75
        assert config.urgent_threshold == 0.92
        assert config.protected_importance == 8

    def test_threshold_order_enforced(self):
        with pytest.raises(ValidationError):
            TierConfig(compression_threshold=0.95, urgent_threshold=0.9)

    def test_non_positive_budget_rejected(self):
        with pytest.raises(ValidationError):
            TierConfig(working_memory_tokens=0)


class TestEnvConfig:

    def test_get_env_int_falls_back_on_garbage(self, monkeypatch):
        monkeypatch.setenv("KM_TEST_INT", "lots")
        assert get_env_int("KM_TEST_INT", 7) == 7
        monkeypatch.setenv("KM_TEST_INT", "42")
        assert get_env_int("KM_TEST_INT", 7) == 42

    @pytest.mark.parametrize(
        "raw, expected",
        [("true", True), ("1", True), ("YES", True), ("on", True), ("no", False), ("0", False)],
    )
    def test_get_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("KM_TEST_BOOL", raw)
        assert get_env_bool("KM_TEST_BOOL") is expected

    def test_load_config_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("KNOWLEDGE_MEMORY_BACKEND", "sqlite")
        monkeypatch.setenv("KNOWLEDGE_MEMORY_SQLITE_PATH", str(tmp_path / "km.db"))
        monkeypatch.setenv("EMBEDDING_PROVIDER", "api")
        monkeypatch.setenv("EMBEDDING_API_KEY", "sk-test")
        monkeypatch.setenv("SUMMARY_MODEL", "tiny-model")
        monkeypatch.setenv("WORKING_MEMORY_TOKENS", "4000")
        monkeypatch.setenv("KNOWLEDGE_MEMORY_MONITOR", "false")

        config = load_config_from_env()

        assert isinstance(config, MemoryConfig)
        assert config.storage.backend == "sqlite"
        assert config.storage.sqlite_db_path == str(tmp_path / "km.db")
        assert config.embedding.provider == "api"
        assert config.embedding.api_key == "sk-test"
        assert config.summarizer.model == "tiny-model"
        assert config.tiers.working_memory_tokens == 4000
        assert config.tiers.monitor_enabled is False

    def test_load_config_defaults(self, monkeypatch):
        for key in (
            "KNOWLEDGE_MEMORY_BACKEND",
            "EMBEDDING_PROVIDER",
            "WORKING_MEMORY_TOKENS",
            "SUMMARY_API_KEY",
        ):
            monkeypatch.delenv(key, raising=False)

        config = load_config_from_env()
        assert config.storage.backend == "file"
        assert config.embedding.provider == "none"
        assert config.tiers.working_memory_tokens == 16000
        assert config.summarizer.api_key == ""
