"""
Tests for environment-driven settings and logging setup.
"""

import json
import logging

import pytest

from ragvault.core import config
from ragvault.core.config import (
    ChunkingConfig,
    EmbeddingConfig,
    LoggingConfig,
    Settings,
    StorageConfig,
    SyncConfig,
    get_env_bool,
    get_env_int,
    get_env_list,
    get_settings,
    reset_settings,
)
from ragvault.core.logging_config import JSONFormatter, setup_logging, setup_logging_from_config
from ragvault.rag.chunker import ChunkConfig
from ragvault.rag.errors import ConfigurationError


class TestEnvHelpers:
    def test_int(self, monkeypatch):
        monkeypatch.setenv("RAGVAULT_TEST_INT", "42")
        assert get_env_int("RAGVAULT_TEST_INT", 1) == 42
        assert get_env_int("RAGVAULT_TEST_UNSET", 7) == 7

    def test_bad_int(self, monkeypatch):
        monkeypatch.setenv("RAGVAULT_TEST_INT", "forty")
        with pytest.raises(ConfigurationError):
            get_env_int("RAGVAULT_TEST_INT", 1)

    def test_bool_and_list(self, monkeypatch):
        monkeypatch.setenv("RAGVAULT_TEST_BOOL", "Yes")
        monkeypatch.setenv("RAGVAULT_TEST_LIST", " a, b ,,c ")
        assert get_env_bool("RAGVAULT_TEST_BOOL", False) is True
        assert get_env_list("RAGVAULT_TEST_LIST", []) == ["a", "b", "c"]
        assert get_env_list("RAGVAULT_TEST_UNSET", ["x"]) == ["x"]


class TestSettings:
    """Tests for settings sections."""

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_PROVIDER", "hash")
        monkeypatch.setenv("EMBEDDING_DIMENSION", "384")
        monkeypatch.setenv("CHUNK_MAX_SIZE", "800")
        monkeypatch.setenv("SYNC_FLUSH_THRESHOLD", "5")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test,http://b.test")

        settings = Settings()

        assert settings.embedding.provider == "hash"
        assert settings.embedding.dimension == 384
        assert settings.chunking.max_chunk_size == 800
        assert settings.sync.flush_threshold == 5
        assert settings.cors_origins == ["http://a.test", "http://b.test"]

    def test_invalid_sections(self):
        with pytest.raises(ConfigurationError):
            EmbeddingConfig(provider="cohere")
        with pytest.raises(ConfigurationError):
            EmbeddingConfig(provider="hash", dimension=0)
        with pytest.raises(ConfigurationError):
            StorageConfig(backend="mongo")
        with pytest.raises(ConfigurationError):
            StorageConfig(backend="postgres", database_url=None)
        with pytest.raises(ConfigurationError):
            SyncConfig(flush_threshold=0)

    def test_chunk_config_from_settings(self):
        chunking = ChunkingConfig(max_chunk_size=500, overlap_size=50, code_window_lines=20)
        assert ChunkConfig.from_settings(chunking) == ChunkConfig(500, 50, 20)

        with pytest.raises(ConfigurationError):
            ChunkConfig.from_settings(ChunkingConfig(max_chunk_size=100, overlap_size=100))

    def test_singleton_and_reset(self, monkeypatch):
        reset_settings()
        try:
            monkeypatch.setenv("RETRIEVAL_LIMIT", "9")
            first = get_settings()
            assert get_settings() is first
            assert config.settings.retrieval.default_limit == 9

            monkeypatch.setenv("RETRIEVAL_LIMIT", "3")
            reset_settings()
            assert get_settings().retrieval.default_limit == 3
        finally:
            reset_settings()

    def test_is_production(self):
        assert Settings(environment="prod").is_production() is True
        assert Settings(environment="development").is_production() is False


class TestLogging:
    """Tests for the logging setup."""

    def teardown_method(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        root.setLevel(logging.WARNING)

    def test_json_formatter_promotes_extra_fields(self):
        record = logging.LogRecord(
            "ragvault.rag.sync", logging.INFO, __file__, 1, "Flushed %d operations", (3,), None,
        )
        record.record_count = 3
        record.pending = 0

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "ragvault.rag.sync"
        assert entry["msg"] == "Flushed 3 operations"
        assert entry["record_count"] == 3
        assert entry["pending"] == 0
        assert "job_id" not in entry

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            import sys
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: broken" in entry["exception"]

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "ragvault.log"
        setup_logging(level="DEBUG", json_output=True, log_file=str(log_file))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
        assert log_file.parent.is_dir()
        assert logging.getLogger("openai").level == logging.WARNING

    def test_setup_from_config(self):
        setup_logging_from_config(LoggingConfig(level="warning", log_file=None, json_logs=False))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
