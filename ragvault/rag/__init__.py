"""
ragvault RAG Module
===================

Local hybrid vector store: heterogeneous sources are extracted, chunked,
embedded and kept in an in-memory cosine index backed by a durable store.

Architecture:
- Source adapters (documents, web, repositories, notes, voice, images)
- Sliding-window chunker with prose and code boundaries
- OpenAI embeddings (or a local hashing embedder for offline use)
- numpy index for search, SQLite or PostgreSQL for durability
- SyncManager batching index mutations into store transactions

The wired-up entry point is ``ragvault.rag.context.RAGContext``.
"""

from .errors import (
    RAGError,
    IngestionError,
    AdapterError,
    ProviderError,
    StorageError,
    MigrationError,
    NotReadyError,
    InvalidArgument,
    ConfigurationError,
    DimensionMismatchError,
)
from .models import (
    SourceType,
    VectorMetadata,
    VectorRecord,
    SearchFilter,
    ScoredRecord,
    IngestionSource,
)
from .chunker import ChunkConfig, RAGChunker
from .embedder import EmbeddingProvider, OpenAIEmbedder, HashEmbedder
from .index import VectorIndex
from .store import PersistenceStore, SQLiteStore, PostgresStore

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
    "SourceType",
    "VectorMetadata",
    "VectorRecord",
    "SearchFilter",
    "ScoredRecord",
    "IngestionSource",
    "ChunkConfig",
    "RAGChunker",
    "EmbeddingProvider",
    "OpenAIEmbedder",
    "HashEmbedder",
    "VectorIndex",
    "PersistenceStore",
    "SQLiteStore",
    "PostgresStore",
]
