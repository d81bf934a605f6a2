"""
RAG Error Taxonomy
==================

Exceptions raised by the vector store and retrieval engine.

- AdapterError: extraction failed, nothing committed for that source
- ProviderError: embedding backend failure (retryable or terminal)
- StorageError: durable read/write failure
- InvalidArgument: bad caller input
- ConfigurationError: fatal, aborts startup
"""

from typing import Optional


class RAGError(Exception):
    """Base exception for all ragvault errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class IngestionError(RAGError):
    """Ingestion failed at a given pipeline stage."""

    def __init__(
        self,
        message: str,
        stage: str,
        cause: Optional[BaseException] = None,
        source: Optional[str] = None,
    ):
        self.stage = stage
        self.cause = cause
        self.source = source
        super().__init__(message)


class AdapterError(IngestionError):
    """A source adapter could not extract its input."""

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        source: Optional[str] = None,
    ):
        super().__init__(message, stage="extract", cause=cause, source=source)


class ProviderError(RAGError):
    """Embedding provider failure."""

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class StorageError(RAGError):
    """Durable store read or write failed."""
    pass


class MigrationError(StorageError):
    """A schema migration failed. The store must be restored from backup."""

    def __init__(self, message: str, version: int):
        self.version = version
        super().__init__(message)


class NotReadyError(StorageError):
    """The index has not finished loading from the store, or was shut down."""
    pass


class InvalidArgument(RAGError, ValueError):
    """Caller passed an invalid argument (e.g. k <= 0)."""
    pass


class ConfigurationError(RAGError):
    """Fatal configuration problem."""
    pass


class DimensionMismatchError(ConfigurationError, InvalidArgument):
    """Vector length differs from the store's configured dimension."""

    def __init__(self, expected: int, actual: int, context: str = "embedding"):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{context} dimension {actual} does not match configured dimension {expected}"
        )


__all__ = [
    "RAGError",
    "IngestionError",
    "AdapterError",
    "ProviderError",
    "StorageError",
    "MigrationError",
    "NotReadyError",
    "InvalidArgument",
    "ConfigurationError",
    "DimensionMismatchError",
]
