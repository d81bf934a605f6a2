"""
RAG Context
===========

Owns every component of the vector store for one process: store, index,
sync manager, embedder, chunker, adapters, ingestion pipeline and
retriever. Built once from Settings (or explicit components) and used as
an async context manager:

    async with RAGContext.from_settings(get_settings()) as rag:
        await rag.ingest(IngestionSource(SourceType.NOTE, "note-1", content="..."))
        results = await rag.retrieve("what did I write about caching?")
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.config import Settings
from .adapters import SourceAdapter, build_default_adapters
from .chunker import ChunkConfig, RAGChunker
from .embedder import EmbeddingProvider, build_embedder
from .errors import ConfigurationError
from .index import VectorIndex
from .ingestion import IngestionReport, RAGIngestion
from .models import IngestionSource, ScoredRecord, SourceType, VectorRecord
from .retriever import RAGRetriever, RetrievalOptions
from .store import PersistenceStore, build_store, describe_store
from .sync import SyncManager

logger = logging.getLogger(__name__)


class RAGContext:
    """Wiring and lifecycle for the vector store."""

    def __init__(
        self,
        settings: Settings,
        embedder: Optional[EmbeddingProvider] = None,
        store: Optional[PersistenceStore] = None,
        adapters: Optional[Dict[SourceType, SourceAdapter]] = None,
    ):
        self.settings = settings
        dimension = settings.embedding.dimension

        self.embedder = embedder or build_embedder(settings.embedding)
        if self.embedder.dimension != dimension:
            raise ConfigurationError(
                f"Embedding provider produces {self.embedder.dimension}-dimension vectors, "
                f"configured dimension is {dimension}"
            )

        self.chunker = RAGChunker(ChunkConfig.from_settings(settings.chunking))
        self.index = VectorIndex(dimension)
        self.store = store or build_store(settings.storage, dimension)
        self.sync = SyncManager(
            self.index,
            self.store,
            config=settings.sync,
            embedding_model=self.embedder.model,
        )
        self.adapters = adapters if adapters is not None else build_default_adapters(settings.sources)
        self.ingestion = RAGIngestion(
            sync=self.sync,
            embedder=self.embedder,
            adapters=self.adapters,
            chunker=self.chunker,
            batch_size=settings.embedding.batch_size,
            max_attempts=settings.embedding.max_attempts,
            retry_base_delay=settings.embedding.retry_base_delay,
            retry_max_delay=settings.embedding.retry_max_delay,
        )
        self.retriever = RAGRetriever(
            self.sync,
            self.embedder,
            default_options=RetrievalOptions(
                limit=settings.retrieval.default_limit,
                min_score=settings.retrieval.min_score,
                snippet_chars=settings.retrieval.snippet_chars,
            ),
        )

    @classmethod
    def from_settings(cls, settings: Settings, **components: Any) -> "RAGContext":
        return cls(settings, **components)

    @property
    def is_ready(self) -> bool:
        return self.sync.is_ready

    async def start(self):
        """Load the index from the store. Fatal errors propagate."""
        await self.sync.start()
        logger.info(
            f"RAG context started: {len(self.index)} records, "
            f"{self.embedder.model} ({self.index.dimension} dims)"
        )

    async def shutdown(self) -> bool:
        """Flush pending writes and release resources."""
        synced = await self.sync.shutdown()
        await self.embedder.close()
        return synced

    async def __aenter__(self) -> "RAGContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    async def ingest(self, source: IngestionSource, cancel_event=None) -> IngestionReport:
        return await self.ingestion.ingest(source, cancel_event=cancel_event)

    async def ingest_many(self, sources: List[IngestionSource]) -> List[IngestionReport]:
        return await self.ingestion.ingest_many(sources)

    async def retrieve(self, query: str, options: Optional[RetrievalOptions] = None) -> List[ScoredRecord]:
        return await self.retriever.retrieve(query, options)

    async def delete_source(self, source_path: str) -> int:
        return await self.ingestion.delete_source(source_path)

    async def delete_repository(self, repo_url: str) -> int:
        return await self.ingestion.delete_repository(repo_url)

    async def get_record(self, record_id: str) -> Optional[VectorRecord]:
        await self.sync.wait_ready()
        return self.retriever.get_record(record_id)

    async def delete_record(self, record_id: str) -> bool:
        """Remove one record by id. Returns False when it does not exist."""
        await self.sync.wait_ready()
        removed = self.sync.delete_ids([record_id])
        if removed:
            logger.info(f"Deleted record {record_id}")
        return bool(removed)

    async def clear(self) -> int:
        """Remove every record. Returns the number removed."""
        await self.sync.wait_ready()
        removed = self.sync.delete_where(lambda r: True)
        logger.info(f"Cleared vector store: {len(removed)} records removed")
        return len(removed)

    async def flush(self) -> int:
        return await self.sync.flush()

    def list_sources(self, source_type: Optional[SourceType] = None) -> List[Dict[str, Any]]:
        """One entry per sourcePath with its chunk count."""
        sources: Dict[str, Dict[str, Any]] = {}
        for record in self.index.all_records():
            if source_type is not None and record.source_type != source_type:
                continue
            entry = sources.setdefault(record.metadata.source_path, {
                "sourcePath": record.metadata.source_path,
                "sourceType": record.source_type.value,
                "title": record.metadata.title,
                "repoUrl": record.metadata.repo_url,
                "chunks": 0,
                "updatedAt": record.updated_at,
            })
            entry["chunks"] += 1
            entry["updatedAt"] = max(entry["updatedAt"], record.updated_at)

        for entry in sources.values():
            entry["updatedAt"] = entry["updatedAt"].isoformat()
        return sorted(sources.values(), key=lambda e: e["sourcePath"])

    def list_repositories(self) -> List[Dict[str, Any]]:
        """Tracked repositories with their record counts."""
        repos: Dict[str, Dict[str, Any]] = {}
        for record in self.index.all_records():
            repo_url = record.metadata.repo_url
            if not repo_url:
                continue
            entry = repos.setdefault(repo_url, {"repoUrl": repo_url, "records": 0, "commitHash": None})
            entry["records"] += 1
            if record.source_type == SourceType.REPO_CODE and record.metadata.commit_hash:
                entry["commitHash"] = record.metadata.commit_hash
        return sorted(repos.values(), key=lambda e: e["repoUrl"])

    def stats(self) -> Dict[str, Any]:
        index_stats = self.index.stats()
        sync_stats = self.sync.stats()
        stats = {
            "totalEntries": index_stats["total_entries"],
            "entriesByType": index_stats["entries_by_type"],
            "sources": index_stats["sources"],
            "dimension": index_stats["dimension"],
            "embeddingModel": self.embedder.model,
            "lastSyncAt": sync_stats["last_sync_at"],
            "isSynced": sync_stats["is_synced"],
            "pendingCount": sync_stats["pending_count"],
            "ready": sync_stats["ready"],
            "sync": sync_stats,
            "ingestion": self.ingestion.stats,
        }
        if self.sync.is_ready:
            stats["store"] = describe_store(self.store)
        return stats
