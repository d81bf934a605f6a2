"""
RAG Retriever
=============

Query -> embedding -> top-k cosine search over the in-memory index.

Results carry a score, a rank and a short snippet centred on the first
query term found in the chunk. An empty store or a query with no match
returns an empty list, never an error.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .embedder import EmbeddingProvider
from .errors import InvalidArgument
from .models import ScoredRecord, SearchFilter, SourceType, VectorRecord
from .sync import SyncManager

logger = logging.getLogger(__name__)


MIN_TERM_LENGTH = 3
ELLIPSIS = "..."


@dataclass
class RetrievalOptions:
    """Search options."""
    limit: int = 5
    min_score: float = 0.0
    source_types: List[SourceType] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    snippet_chars: int = 300

    def __post_init__(self):
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise InvalidArgument(f"limit must be a positive integer, got {self.limit!r}")
        if self.snippet_chars <= 0:
            raise InvalidArgument("snippet_chars must be positive")
        self.source_types = [SourceType(t) for t in self.source_types]

    @property
    def search_filter(self) -> Optional[SearchFilter]:
        return SearchFilter.build(self.source_types, self.tags)


def make_snippet(content: str, query: str, max_chars: int = 300) -> str:
    """
    Bounded excerpt of ``content`` around the first query term occurrence.

    Falls back to the leading text when no term (of 3+ characters) occurs.
    Ellipses mark cut ends.
    """
    text = re.sub(r"\s+", " ", content).strip()
    if len(text) <= max_chars:
        return text

    lowered = text.lower()
    positions = [
        lowered.find(term)
        for term in re.findall(r"\w+", query.lower())
        if len(term) >= MIN_TERM_LENGTH
    ]
    positions = [p for p in positions if p >= 0]
    anchor = min(positions) if positions else 0

    start = max(0, anchor - max_chars // 3)
    end = min(len(text), start + max_chars)
    start = max(0, end - max_chars)

    # Do not start or end in the middle of a word
    if start > 0:
        space = text.find(" ", start, min(start + 20, end))
        if space != -1:
            start = space + 1
    if end < len(text):
        space = text.rfind(" ", max(start, end - 20), end)
        if space != -1:
            end = space

    snippet = text[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(text):
        snippet = snippet + ELLIPSIS
    return snippet


class RAGRetriever:
    """
    Retrieves relevant records from the vector store.

    Waits for the SyncManager's readiness gate, so a search never runs
    against a partially loaded index.
    """

    def __init__(
        self,
        sync: SyncManager,
        embedder: EmbeddingProvider,
        default_options: Optional[RetrievalOptions] = None,
    ):
        self.sync = sync
        self.embedder = embedder
        self.default_options = default_options or RetrievalOptions()

    @property
    def index(self):
        return self.sync.index

    async def retrieve(
        self,
        query: str,
        options: Optional[RetrievalOptions] = None,
    ) -> List[ScoredRecord]:
        """
        Search for records relevant to a query.

        Args:
            query: Search query (natural language)
            options: Limit, score threshold, filters and snippet length

        Returns:
            ScoredRecords, best first (possibly empty)

        Raises:
            InvalidArgument: Blank query
            DimensionMismatchError: Query embedding has the wrong length
        """
        if not query or not query.strip():
            raise InvalidArgument("query must not be empty")
        options = options or self.default_options

        await self.sync.wait_ready()
        if len(self.index) == 0:
            return []

        vector = await self.embedder.embed(query)
        hits = self.index.search(vector, options.limit, options.search_filter)

        results = []
        for record, score in hits:
            if score < options.min_score:
                continue
            results.append(ScoredRecord(
                record=record,
                score=score,
                snippet=make_snippet(record.content, query, options.snippet_chars),
                rank=len(results) + 1,
            ))

        logger.debug(f"Query '{query[:50]}...' returned {len(results)} results")
        return results

    def get_record(self, record_id: str) -> Optional[VectorRecord]:
        """
        Get a specific record by ID.
        """
        return self.index.get(record_id)

    def format_context(
        self,
        results: List[ScoredRecord],
        max_tokens: int = 2000,
    ) -> str:
        """
        Format search results as context for an LLM.

        Args:
            results: Search results to format
            max_tokens: Approximate max tokens for context

        Returns:
            Formatted context string
        """
        if not results:
            return ""

        context_parts = []
        estimated_tokens = 0
        chars_per_token = 4

        for i, result in enumerate(results, 1):
            record = result.record
            part = (
                f"[Source {i}] ({record.source_type.value}, relevance: {result.score:.2f})\n"
                f"{record.metadata.title} | {record.metadata.source_path}\n"
                f"---\n"
                f"{record.content}\n"
            )
            part_tokens = len(part) // chars_per_token

            if estimated_tokens + part_tokens > max_tokens:
                break

            context_parts.append(part)
            estimated_tokens += part_tokens

        return "\n".join(context_parts)
