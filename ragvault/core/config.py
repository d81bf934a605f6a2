"""
ragvault Configuration Module
=============================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    EMBEDDING_PROVIDER: openai|hash (default: openai)
    EMBEDDING_MODEL: Embedding model name (default: text-embedding-3-small)
    EMBEDDING_DIMENSION: Vector dimension (default: 1536)
    OPENAI_API_KEY: OpenAI API key (required for the openai provider)
    EMBEDDING_TIMEOUT: Request timeout in seconds (default: 30)
    EMBEDDING_BATCH_SIZE: Texts per embedding request (default: 64)
    EMBEDDING_MAX_ATTEMPTS: Attempts per batch on retryable errors (default: 4)

    CHUNK_MAX_SIZE: Maximum chunk size in characters (default: 1000)
    CHUNK_OVERLAP: Overlap between chunks in characters (default: 200)
    CHUNK_CODE_WINDOW_LINES: Line window for code without boundaries (default: 60)

    STORAGE_BACKEND: sqlite|postgres (default: sqlite)
    SQLITE_PATH: SQLite file (default: ./data/ragvault.db)
    DATABASE_URL: PostgreSQL DSN (required for postgres)

    SYNC_FLUSH_THRESHOLD: Dirty records before a flush (default: 100)
    SYNC_FLUSH_INTERVAL_SEC: Periodic flush interval (default: 30)
    SYNC_SHUTDOWN_TIMEOUT_SEC: Shutdown flush timeout (default: 10)

    RETRIEVAL_LIMIT: Default result count (default: 5)
    RETRIEVAL_MIN_SCORE: Default score threshold (default: 0.0)
    RETRIEVAL_SNIPPET_CHARS: Snippet length (default: 300)

    GITHUB_TOKEN: GitHub token for issues/PRs/diffs (optional)
    REPO_CLONE_DIR: Where repositories are cloned (default: ./data/repos)

    LOG_LEVEL, LOG_FILE, LOG_JSON: Logging (default: INFO, none, false)
    CORS_ORIGINS: Comma-separated origins allowed by the API
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from pathlib import Path
from dotenv import load_dotenv

from ..rag.errors import ConfigurationError


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ConfigurationError when not set

    Returns:
        Environment variable value or default

    Raises:
        ConfigurationError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ConfigurationError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def get_env_list(key: str, default: List[str]) -> List[str]:
    """Get comma-separated environment variable as a list."""
    value = os.getenv(key)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    provider: str = field(default_factory=lambda: get_env("EMBEDDING_PROVIDER", "openai"))
    model: str = field(default_factory=lambda: get_env("EMBEDDING_MODEL", "text-embedding-3-small"))
    dimension: int = field(default_factory=lambda: get_env_int("EMBEDDING_DIMENSION", 1536))
    api_key: Optional[str] = field(default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY"))

    # Request timeout in seconds
    timeout: float = field(default_factory=lambda: get_env_float("EMBEDDING_TIMEOUT", 30.0))

    # Batching and retry budget
    batch_size: int = field(default_factory=lambda: get_env_int("EMBEDDING_BATCH_SIZE", 64))
    max_attempts: int = field(default_factory=lambda: get_env_int("EMBEDDING_MAX_ATTEMPTS", 4))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("EMBEDDING_RETRY_BASE_DELAY", 1.0))
    retry_max_delay: float = field(default_factory=lambda: get_env_float("EMBEDDING_RETRY_MAX_DELAY", 30.0))

    # Provider input limit (text-embedding-3-small)
    max_tokens: int = field(default_factory=lambda: get_env_int("EMBEDDING_MAX_TOKENS", 8191))

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.provider not in ("openai", "hash"):
            raise ConfigurationError(f"Unknown EMBEDDING_PROVIDER: {self.provider}")
        if self.dimension <= 0:
            raise ConfigurationError("EMBEDDING_DIMENSION must be positive")
        if self.batch_size <= 0:
            raise ConfigurationError("EMBEDDING_BATCH_SIZE must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("EMBEDDING_MAX_ATTEMPTS must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigurationError("retry delays cannot be negative")


@dataclass
class ChunkingConfig:
    """Chunker configuration."""

    max_chunk_size: int = field(default_factory=lambda: get_env_int("CHUNK_MAX_SIZE", 1000))
    overlap_size: int = field(default_factory=lambda: get_env_int("CHUNK_OVERLAP", 200))
    code_window_lines: int = field(default_factory=lambda: get_env_int("CHUNK_CODE_WINDOW_LINES", 60))


@dataclass
class StorageConfig:
    """Durable store configuration."""

    backend: str = field(default_factory=lambda: get_env("STORAGE_BACKEND", "sqlite"))
    sqlite_path: str = field(default_factory=lambda: get_env("SQLITE_PATH", "./data/ragvault.db"))
    database_url: Optional[str] = field(default_factory=lambda: get_env("DATABASE_URL"))

    def __post_init__(self):
        """Validate configuration."""
        if self.backend not in ("sqlite", "postgres"):
            raise ConfigurationError(f"Unknown STORAGE_BACKEND: {self.backend}")
        if self.backend == "postgres" and not self.database_url:
            raise ConfigurationError("DATABASE_URL is required for the postgres backend")


@dataclass
class SyncConfig:
    """Index/store synchronization configuration."""

    flush_threshold: int = field(default_factory=lambda: get_env_int("SYNC_FLUSH_THRESHOLD", 100))
    flush_interval_sec: float = field(default_factory=lambda: get_env_float("SYNC_FLUSH_INTERVAL_SEC", 30.0))
    shutdown_timeout_sec: float = field(default_factory=lambda: get_env_float("SYNC_SHUTDOWN_TIMEOUT_SEC", 10.0))

    def __post_init__(self):
        """Validate configuration."""
        if self.flush_threshold <= 0:
            raise ConfigurationError("SYNC_FLUSH_THRESHOLD must be positive")
        if self.flush_interval_sec <= 0:
            raise ConfigurationError("SYNC_FLUSH_INTERVAL_SEC must be positive")


@dataclass
class RetrievalConfig:
    """Retrieval defaults."""

    default_limit: int = field(default_factory=lambda: get_env_int("RETRIEVAL_LIMIT", 5))
    min_score: float = field(default_factory=lambda: get_env_float("RETRIEVAL_MIN_SCORE", 0.0))
    snippet_chars: int = field(default_factory=lambda: get_env_int("RETRIEVAL_SNIPPET_CHARS", 300))

    def __post_init__(self):
        """Validate configuration."""
        if self.default_limit <= 0:
            raise ConfigurationError("RETRIEVAL_LIMIT must be positive")
        if self.snippet_chars <= 0:
            raise ConfigurationError("RETRIEVAL_SNIPPET_CHARS must be positive")


@dataclass
class SourcesConfig:
    """Source adapter configuration (filesystem, web, repositories)."""

    github_token: Optional[str] = field(default_factory=lambda: get_env("GITHUB_TOKEN"))
    github_api_url: str = field(default_factory=lambda: get_env("GITHUB_API_URL", "https://api.github.com"))
    github_max_items: int = field(default_factory=lambda: get_env_int("GITHUB_MAX_ITEMS", 200))

    clone_dir: str = field(default_factory=lambda: get_env("REPO_CLONE_DIR", "./data/repos"))
    clone_branch: Optional[str] = field(default_factory=lambda: get_env("REPO_CLONE_BRANCH"))
    git_timeout: int = field(default_factory=lambda: get_env_int("GIT_TIMEOUT", 300))
    max_repo_file_size: int = field(default_factory=lambda: get_env_int("REPO_MAX_FILE_SIZE", 100 * 1024))
    exclude_paths: List[str] = field(default_factory=lambda: get_env_list("REPO_EXCLUDE_PATHS", [
        "node_modules", ".git", "dist", "build", "coverage",
        "__pycache__", ".venv", "vendor", ".idea", ".vscode",
    ]))

    max_document_size: int = field(default_factory=lambda: get_env_int("DOCUMENT_MAX_SIZE", 50 * 1024 * 1024))

    http_timeout: float = field(default_factory=lambda: get_env_float("HTTP_TIMEOUT", 20.0))
    http_user_agent: str = field(default_factory=lambda: get_env("HTTP_USER_AGENT", "ragvault/1.0"))

    def __post_init__(self):
        """Validate configuration."""
        if self.max_repo_file_size <= 0:
            raise ConfigurationError("REPO_MAX_FILE_SIZE must be positive")
        if self.github_max_items <= 0:
            raise ConfigurationError("GITHUB_MAX_ITEMS must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))

    # Structured logging
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Application metadata
    app_name: str = "ragvault"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    # API
    cors_origins: List[str] = field(default_factory=lambda: get_env_list("CORS_ORIGINS", [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]))

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Returns:
        Fully configured Settings instance

    Raises:
        ConfigurationError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern).

    Returns:
        Global Settings instance
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Drop the cached settings so the next access re-reads the environment."""
    global _settings
    _settings = None


class _SettingsProxy:
    """Proxy class for lazy settings access."""

    def __getattr__(self, name):
        return getattr(get_settings(), name)


settings = _SettingsProxy()
