"""
RAG Ingestion Pipeline
======================

Pipeline for ingesting sources into the vector store.

Flow (one job per source):
1. Extract   - source adapter produces (content, metadata) items
2. Chunk     - per item, by content type
3. Embed     - in batches, retrying retryable provider errors with backoff
4. Commit    - per sourcePath, old records are replaced by the new ones in
               one synchronous index mutation

A batch that still fails after its retries only loses its own chunks: the
job ends DONE_WITH_ERRORS and reports which (sourcePath, chunkIndex) pairs
are missing. Jobs for the same source are serialized.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

import numpy as np

from .adapters import ExtractedContent, SourceAdapter, canonical_repo_url
from .chunker import RAGChunker, hash_content
from .embedder import EmbeddingProvider
from .errors import AdapterError, DimensionMismatchError, InvalidArgument, ProviderError
from .models import IngestionSource, SourceType, VectorRecord
from .sync import SyncManager

logger = logging.getLogger(__name__)


REPO_SOURCE_TYPES = (
    SourceType.REPO_CODE,
    SourceType.REPO_ISSUE,
    SourceType.REPO_PR,
    SourceType.REPO_DIFF,
)


class JobState(Enum):
    """Ingestion job state."""
    QUEUED = "queued"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMMITTING = "committing"
    DONE = "done"
    DONE_WITH_ERRORS = "done_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.DONE_WITH_ERRORS, JobState.FAILED, JobState.CANCELLED)


@dataclass
class IngestionReport:
    """Outcome of one ingestion job."""
    job_id: str
    source_type: SourceType
    location: str
    state: JobState = JobState.QUEUED
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    history: List[JobState] = field(default_factory=lambda: [JobState.QUEUED])
    source_paths: List[str] = field(default_factory=list)
    total_chunks: int = 0
    succeeded_chunks: int = 0
    failed_chunks: List[Tuple[str, int]] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)
    removed_records: int = 0
    retries: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate job duration."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def failed_count(self) -> int:
        return len(self.failed_chunks)

    def transition(self, state: JobState):
        self.state = state
        self.history.append(state)

    def finish(self, state: JobState) -> "IngestionReport":
        self.transition(state)
        self.completed_at = datetime.now(timezone.utc)
        return self

    def add_error(self, stage: str, error: BaseException, details: Optional[Dict] = None):
        """Record an error."""
        self.errors.append({
            "stage": stage,
            "type": type(error).__name__,
            "message": str(error),
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def get_summary(self) -> Dict[str, Any]:
        """Get job summary."""
        return {
            "job_id": self.job_id,
            "source_type": self.source_type.value,
            "location": self.location,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "sources": len(self.source_paths),
            "total_chunks": self.total_chunks,
            "succeeded_chunks": self.succeeded_chunks,
            "failed_chunks": [
                {"sourcePath": path, "chunkIndex": index} for path, index in self.failed_chunks
            ],
            "removed_records": self.removed_records,
            "retries": self.retries,
            "errors": self.errors,
        }


@dataclass
class _PlannedChunk:
    item_index: int
    chunk_index: int
    total_chunks: int
    text: str


def lock_key(source: IngestionSource) -> str:
    """
    Serialization key for a source, in the same space as ``sourcePath`` /
    ``repoUrl`` so deletions can take the same lock.
    """
    location = source.location.strip()
    if source.source_type in REPO_SOURCE_TYPES:
        if Path(location).expanduser().is_dir():
            return str(Path(location).expanduser().resolve())
        try:
            return canonical_repo_url(location)
        except InvalidArgument:
            return location
    if source.source_type in (SourceType.DOCUMENT, SourceType.VOICE) and source.content is None:
        return str(Path(location).expanduser().resolve())
    return location


class RAGIngestion:
    """
    Ingestion pipeline for the vector store.

    Handles:
    - Adapter dispatch per SourceType
    - Chunking and batched embedding with retries
    - Replace-by-sourcePath commits through the SyncManager
    - Deletion by sourcePath and by repository
    """

    def __init__(
        self,
        sync: SyncManager,
        embedder: EmbeddingProvider,
        adapters: Dict[SourceType, SourceAdapter],
        chunker: Optional[RAGChunker] = None,
        batch_size: int = 64,
        max_attempts: int = 4,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        if batch_size <= 0:
            raise InvalidArgument("batch_size must be positive")
        if max_attempts < 1:
            raise InvalidArgument("max_attempts must be at least 1")

        self.sync = sync
        self.embedder = embedder
        self.adapters = adapters
        self.chunker = chunker or RAGChunker()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        # key -> (lock, number of jobs holding or waiting for it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

        self._jobs_completed = 0
        self._jobs_failed = 0
        self._chunks_created = 0
        self._chunks_failed = 0

    @property
    def dimension(self) -> int:
        return self.sync.index.dimension

    @asynccontextmanager
    async def _serialized(self, key: str):
        """Run the body exclusively per key; the lock is dropped once nobody uses it."""
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        source: IngestionSource,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IngestionReport:
        """
        Run one ingestion job to a terminal state.

        Args:
            source: What to ingest
            cancel_event: Set to cancel before extraction or between batches

        Returns:
            IngestionReport (FAILED on extraction failure, never raised)

        Raises:
            InvalidArgument: No adapter for the source type
            DimensionMismatchError: Provider vectors have the wrong length
        """
        adapter = self.adapters.get(source.source_type)
        if adapter is None:
            raise InvalidArgument(f"No adapter registered for source type '{source.source_type.value}'")

        report = IngestionReport(
            job_id=uuid4().hex[:12],
            source_type=source.source_type,
            location=source.location,
        )

        await self.sync.wait_ready()
        async with self._serialized(lock_key(source)):
            start = time.monotonic()
            await self._run(source, adapter, report, cancel_event)

        if report.state == JobState.FAILED:
            self._jobs_failed += 1
        elif report.state != JobState.CANCELLED:
            self._jobs_completed += 1

        logger.info(
            f"Ingestion {report.job_id} {report.state.value}: {source.location} "
            f"({report.succeeded_chunks}/{report.total_chunks} chunks)",
            extra={
                "job_id": report.job_id,
                "stage": report.state.value,
                "duration": round(time.monotonic() - start, 3),
                "record_count": report.succeeded_chunks,
            },
        )
        return report

    async def _run(
        self,
        source: IngestionSource,
        adapter: SourceAdapter,
        report: IngestionReport,
        cancel_event: Optional[asyncio.Event],
    ) -> IngestionReport:
        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        if cancelled():
            return report.finish(JobState.CANCELLED)

        # Extract
        report.transition(JobState.EXTRACTING)
        try:
            items = await adapter.extract(source)
        except AdapterError as e:
            report.add_error("extract", e.cause or e)
            logger.warning(f"Extraction failed for {source.location}: {e.message}")
            return report.finish(JobState.FAILED)
        report.source_paths = [item.source_path for item in items]

        # Chunk
        report.transition(JobState.CHUNKING)
        planned: List[_PlannedChunk] = []
        for item_index, item in enumerate(items):
            segments = self.chunker.chunk(item.content, item.source_type)
            for chunk_index, text in enumerate(segments):
                planned.append(_PlannedChunk(item_index, chunk_index, len(segments), text))
        report.total_chunks = len(planned)

        # Embed
        report.transition(JobState.EMBEDDING)
        vectors: Dict[Tuple[int, int], np.ndarray] = {}
        for start in range(0, len(planned), self.batch_size):
            if cancelled():
                return report.finish(JobState.CANCELLED)

            batch = planned[start:start + self.batch_size]
            try:
                embeddings = await self._embed_with_retry([c.text for c in batch], report)
            except ProviderError as e:
                report.add_error("embed", e, {"batch_start": start, "batch_size": len(batch)})
                for chunk in batch:
                    report.failed_chunks.append((items[chunk.item_index].source_path, chunk.chunk_index))
                continue

            for chunk, vector in zip(batch, embeddings):
                vector = np.asarray(vector, dtype=np.float32).reshape(-1)
                if vector.shape[0] != self.dimension:
                    raise DimensionMismatchError(self.dimension, int(vector.shape[0]), context="provider embedding")
                vectors[(chunk.item_index, chunk.chunk_index)] = vector

        if planned and not vectors:
            logger.error(f"Every chunk of {source.location} failed to embed; existing records kept")
            return report.finish(JobState.FAILED)

        if cancelled():
            return report.finish(JobState.CANCELLED)

        # Commit: no awaits from here on
        report.transition(JobState.COMMITTING)
        self._commit(items, planned, vectors, report)

        stale_scope = getattr(adapter, "stale_scope", None)
        predicate = stale_scope(source, items) if stale_scope else None
        if predicate is not None:
            stale = self.sync.delete_where(predicate)
            report.removed_records += len(stale)
            if stale:
                logger.info(f"Removed {len(stale)} stale records no longer present in {source.location}")

        self._chunks_created += report.succeeded_chunks
        self._chunks_failed += report.failed_count
        return report.finish(JobState.DONE_WITH_ERRORS if report.failed_chunks else JobState.DONE)

    def _commit(
        self,
        items: Sequence[ExtractedContent],
        planned: Sequence[_PlannedChunk],
        vectors: Dict[Tuple[int, int], np.ndarray],
        report: IngestionReport,
    ):
        by_item: Dict[int, List[_PlannedChunk]] = {}
        for chunk in planned:
            by_item.setdefault(chunk.item_index, []).append(chunk)

        for item_index, item in enumerate(items):
            chunks = by_item.get(item_index, [])
            records = []
            for chunk in chunks:
                vector = vectors.get((item_index, chunk.chunk_index))
                if vector is None:
                    continue
                metadata = item.metadata.with_chunk(chunk.chunk_index, chunk.total_chunks)
                metadata.extra["contentHash"] = hash_content(chunk.text)
                records.append(VectorRecord(
                    source_type=item.source_type,
                    content=chunk.text,
                    embedding=vector,
                    metadata=metadata,
                ))

            if chunks and not records:
                # Nothing new survived for this source; keep what is stored
                continue

            removed = self.sync.replace_source(item.source_path, records)
            report.removed_records += len(removed)
            report.succeeded_chunks += len(records)
            report.record_ids.extend(r.id for r in records)

    async def _embed_with_retry(self, texts: List[str], report: IngestionReport) -> List[np.ndarray]:
        """
        Embed one batch with exponential backoff on retryable errors.

        Raises:
            ProviderError: Terminal error, or retries exhausted
        """
        for attempt in range(self.max_attempts):
            try:
                embeddings = await self.embedder.embed_batch(texts)
            except ProviderError as e:
                if not e.retryable or attempt + 1 >= self.max_attempts:
                    raise
                wait_time = min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)
                report.retries += 1
                logger.warning(
                    f"Embedding batch failed (attempt {attempt + 1}/{self.max_attempts}), "
                    f"retrying in {wait_time:.1f}s: {e.message}"
                )
                await asyncio.sleep(wait_time)
                continue

            if len(embeddings) != len(texts):
                raise ProviderError(f"Provider returned {len(embeddings)} vectors for {len(texts)} texts")
            return embeddings

        raise ProviderError("Embedding retries exhausted")

    async def ingest_many(self, sources: Iterable[IngestionSource]) -> List[IngestionReport]:
        """Run several jobs concurrently; same-source jobs still serialize."""
        return list(await asyncio.gather(*(self.ingest(s) for s in sources)))

    async def ingest_text(
        self,
        source_type: SourceType,
        location: str,
        content: str,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        **metadata: Any,
    ) -> IngestionReport:
        """
        Convenience method to ingest text the caller already holds.
        """
        return await self.ingest(IngestionSource(
            source_type=source_type,
            location=location,
            content=content,
            title=title,
            tags=list(tags or []),
            metadata=metadata,
        ))

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_source(self, source_path: str) -> int:
        """Remove every record of one sourcePath. Returns the number removed."""
        await self.sync.wait_ready()
        async with self._serialized(source_path):
            removed = self.sync.delete_where(lambda r: r.metadata.source_path == source_path)
        logger.info(f"Deleted {len(removed)} records for {source_path}", extra={"source_path": source_path})
        return len(removed)

    async def delete_repository(self, repo_url: str) -> int:
        """Un-track a repository: remove every record whose repoUrl matches."""
        try:
            key = canonical_repo_url(repo_url)
        except InvalidArgument:
            key = repo_url.strip()

        await self.sync.wait_ready()
        async with self._serialized(key):
            removed = self.sync.delete_where(lambda r: r.metadata.repo_url == key)
        logger.info(f"Deleted {len(removed)} records for repository {key}")
        return len(removed)

    @property
    def stats(self) -> Dict[str, Any]:
        """Get ingestion statistics."""
        stats = {
            "jobs_completed": self._jobs_completed,
            "jobs_failed": self._jobs_failed,
            "chunks_created": self._chunks_created,
            "chunks_failed": self._chunks_failed,
        }
        if hasattr(self.embedder, "total_tokens"):
            stats["embedding_tokens"] = self.embedder.total_tokens
            stats["embedding_cost_usd"] = self.embedder.estimated_cost
        return stats
