"""
Shared fixtures for ragvault tests.

Everything runs offline: embeddings come from local providers and the
store is a SQLite file under pytest's tmp_path.
"""

import re
from collections import Counter
from typing import Callable, List, Optional, Sequence

import numpy as np
import pytest

from ragvault.core.config import (
    ChunkingConfig,
    EmbeddingConfig,
    RetrievalConfig,
    Settings,
    SourcesConfig,
    StorageConfig,
    SyncConfig,
)
from ragvault.rag.embedder import EmbeddingProvider
from ragvault.rag.errors import ProviderError
from ragvault.rag.models import SourceType, VectorMetadata, VectorRecord


def make_settings(tmp_path, dimension: int = 64, **embedding_overrides) -> Settings:
    """Settings for a local store: hash embeddings, SQLite under tmp_path, no retry delay."""
    embedding = dict(
        provider="hash",
        model="hash-embedding-v1",
        dimension=dimension,
        api_key=None,
        batch_size=16,
        max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )
    embedding.update(embedding_overrides)
    return Settings(
        embedding=EmbeddingConfig(**embedding),
        chunking=ChunkingConfig(max_chunk_size=1000, overlap_size=200, code_window_lines=60),
        storage=StorageConfig(backend="sqlite", sqlite_path=str(tmp_path / "store.db"), database_url=None),
        sync=SyncConfig(flush_threshold=1000, flush_interval_sec=60.0, shutdown_timeout_sec=5.0),
        retrieval=RetrievalConfig(default_limit=5, min_score=0.0, snippet_chars=300),
        sources=SourcesConfig(clone_dir=str(tmp_path / "repos"), github_token=None),
    )


def make_record(
    source_path: str = "notes/a.md",
    embedding: Optional[Sequence[float]] = None,
    content: str = "some content",
    source_type: SourceType = SourceType.NOTE,
    tags: Optional[List[str]] = None,
    dimension: int = 4,
    **kwargs,
) -> VectorRecord:
    if embedding is None:
        embedding = np.ones(dimension, dtype=np.float32)
    return VectorRecord(
        source_type=source_type,
        content=content,
        embedding=np.asarray(embedding, dtype=np.float32),
        metadata=VectorMetadata(title="Title", source_path=source_path, tags=list(tags or [])),
        **kwargs,
    )


class KeywordEmbedder(EmbeddingProvider):
    """
    One axis per vocabulary word plus an "other" axis.

    Texts sharing no vocabulary word score exactly 0 against each other,
    which makes ranking assertions exact.
    """

    def __init__(self, vocabulary: Sequence[str]):
        self.vocabulary = {word: i for i, word in enumerate(vocabulary)}
        self.dimension = len(self.vocabulary) + 1
        self.model = "keyword-test"
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for word, count in Counter(re.findall(r"\w+", text.lower())).items():
            vec[self.vocabulary.get(word, self.dimension - 1)] += count
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm else vec

    async def embed_batch(self, texts):
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class ScriptedEmbedder(EmbeddingProvider):
    """
    Wraps another provider and raises scripted errors.

    ``fail_when(texts, call_number)`` returns a ProviderError to raise, or None.
    """

    def __init__(self, inner: EmbeddingProvider, fail_when: Callable[[List[str], int], Optional[ProviderError]]):
        self.inner = inner
        self.dimension = inner.dimension
        self.model = inner.model
        self.fail_when = fail_when
        self.call_count = 0

    async def embed_batch(self, texts):
        self.call_count += 1
        error = self.fail_when(list(texts), self.call_count)
        if error is not None:
            raise error
        return await self.inner.embed_batch(texts)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)
