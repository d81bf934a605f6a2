"""
RAG Data Models
===============

Dataclasses shared by the ingestion pipeline, the vector index, the durable
store and the retriever.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
from uuid import uuid4

import numpy as np

from .errors import InvalidArgument


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SourceType(str, Enum):
    """Kinds of content the store accepts."""
    DOCUMENT = "document"
    WEB = "web"
    REPO_CODE = "repo-code"
    REPO_ISSUE = "repo-issue"
    REPO_PR = "repo-pr"
    REPO_DIFF = "repo-diff"
    NOTE = "note"
    VOICE = "voice"
    IMAGE = "image"


# Common metadata fields and their serialized (camelCase) names
_COMMON_FIELDS = {
    "title": "title",
    "source_path": "sourcePath",
    "tags": "tags",
    "language": "language",
    "repo_url": "repoUrl",
    "commit_hash": "commitHash",
    "file_path": "filePath",
    "chunk_index": "chunkIndex",
    "total_chunks": "totalChunks",
    "mime_type": "mimeType",
}
_SERIALIZED_TO_FIELD = {v: k for k, v in _COMMON_FIELDS.items()}


@dataclass
class VectorMetadata:
    """
    Metadata attached to every record.

    Required keys are typed fields; source-specific keys live in ``extra``.
    """
    title: str
    source_path: str

    tags: List[str] = field(default_factory=list)
    language: Optional[str] = None
    repo_url: Optional[str] = None
    commit_hash: Optional[str] = None
    file_path: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    mime_type: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.title or not str(self.title).strip():
            raise InvalidArgument("metadata.title is required")
        if not self.source_path or not str(self.source_path).strip():
            raise InvalidArgument("metadata.sourcePath is required")

    def with_chunk(self, chunk_index: int, total_chunks: int) -> "VectorMetadata":
        """Copy of this metadata positioned at a chunk."""
        return replace(
            self,
            tags=list(self.tags),
            extra=dict(self.extra),
            chunk_index=chunk_index,
            total_chunks=total_chunks,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Flat camelCase dict, as persisted and exposed to citations."""
        data: Dict[str, Any] = dict(self.extra)
        for attr, key in _COMMON_FIELDS.items():
            value = getattr(self, attr)
            if value is None or (attr == "tags" and not value):
                continue
            data[key] = list(value) if attr == "tags" else value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorMetadata":
        if "title" not in data or "sourcePath" not in data:
            raise InvalidArgument("metadata requires 'title' and 'sourcePath'")

        common: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            attr = _SERIALIZED_TO_FIELD.get(key)
            if attr is None:
                extra[key] = value
            else:
                common[attr] = value

        if common.get("tags") is not None:
            common["tags"] = list(common["tags"])
        else:
            common.pop("tags", None)

        return cls(extra=extra, **common)


@dataclass(eq=False)
class VectorRecord:
    """The unit of storage: one embedded text segment."""
    source_type: SourceType
    content: str
    embedding: np.ndarray
    metadata: VectorMetadata

    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    # Transient: in-memory copy differs from the durable copy
    dirty: bool = field(default=False, repr=False)

    def __post_init__(self):
        if isinstance(self.source_type, str):
            self.source_type = SourceType(self.source_type)
        if not self.content or not self.content.strip():
            raise InvalidArgument("record content must not be empty")
        self.embedding = np.asarray(self.embedding, dtype=np.float32).reshape(-1)
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])

    @property
    def source_path(self) -> str:
        return self.metadata.source_path

    def touch(self):
        """Record a mutation."""
        self.updated_at = utc_now()
        self.dirty = True


@dataclass
class SearchFilter:
    """
    Predicate over source type and tags, applied during the index scan.

    A record matches when its type is one of ``source_types`` (if given) and
    it carries at least one of ``tags`` (if given).
    """
    source_types: Optional[FrozenSet[SourceType]] = None
    tags: Optional[FrozenSet[str]] = None

    def __post_init__(self):
        if self.source_types is not None:
            self.source_types = frozenset(SourceType(t) for t in self.source_types)
        if self.tags is not None:
            self.tags = frozenset(self.tags)

    @classmethod
    def build(
        cls,
        source_types: Optional[Iterable] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> Optional["SearchFilter"]:
        """Filter for the given criteria, or None when there are none."""
        source_types = list(source_types or [])
        tags = list(tags or [])
        if not source_types and not tags:
            return None
        return cls(
            source_types=frozenset(source_types) if source_types else None,
            tags=frozenset(tags) if tags else None,
        )

    def matches(self, record: VectorRecord) -> bool:
        if self.source_types and record.source_type not in self.source_types:
            return False
        if self.tags:
            if not self.tags.intersection(record.metadata.tags):
                return False
        return True


@dataclass
class ScoredRecord:
    """A retrieval result with its score and a bounded excerpt."""
    record: VectorRecord
    score: float
    snippet: str
    rank: int = 0

    @property
    def metadata(self) -> VectorMetadata:
        return self.record.metadata

    @property
    def title(self) -> str:
        return self.record.metadata.title

    @property
    def source_path(self) -> str:
        return self.record.metadata.source_path

    def to_citation(self) -> Dict[str, Any]:
        """Citation payload for the chat layer."""
        return {
            "id": self.record.id,
            "rank": self.rank,
            "score": round(self.score, 4),
            "sourceType": self.record.source_type.value,
            "snippet": self.snippet,
            "metadata": self.record.metadata.to_dict(),
        }


@dataclass
class IngestionSource:
    """
    A request to ingest one logical source.

    ``location`` is a file path, URL, repository URL or caller-chosen
    identifier (notes, voice, images); ``content`` carries inline text or
    bytes when the caller already holds them.
    """
    source_type: SourceType
    location: str
    content: Optional[Any] = None
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.source_type, str):
            self.source_type = SourceType(self.source_type)
        if not self.location or not str(self.location).strip():
            raise InvalidArgument("ingestion source requires a location")
