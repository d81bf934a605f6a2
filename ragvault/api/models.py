"""
ragvault API Models
===================

Pydantic models for API request/response serialization.
"""

from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    ready: bool
    totalEntries: int = 0
    isSynced: bool = True
    pendingCount: int = 0


# =============================================================================
# SEARCH
# =============================================================================

class SearchRequest(BaseModel):
    """Search request."""
    query: str = Field(..., description="Natural-language query")
    limit: Optional[int] = Field(None, description="Max results (default from settings)")
    minScore: Optional[float] = Field(None, description="Drop results scoring below this")
    sourceTypes: List[str] = Field(default_factory=list, description="Restrict to these source types")
    tags: List[str] = Field(default_factory=list, description="Restrict to records with any of these tags")
    includeContext: bool = Field(False, description="Return an LLM-ready context block")


class Citation(BaseModel):
    """One ranked result."""
    id: str
    rank: int
    score: float
    sourceType: str
    snippet: str
    metadata: Dict[str, Any]


class SearchResponse(BaseModel):
    """Search response."""
    query: str
    results: List[Citation]
    formattedContext: Optional[str] = None


# =============================================================================
# INGEST
# =============================================================================

class IngestRequest(BaseModel):
    """Ingestion request for one source."""
    sourceType: str = Field(..., description="document|web|repo-code|repo-issue|repo-pr|repo-diff|note|voice|image")
    location: str = Field(..., description="Path, URL, repository or identifier")
    content: Optional[str] = Field(None, description="Inline text content")
    title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestBatchRequest(BaseModel):
    """Several sources ingested concurrently."""
    sources: List[IngestRequest]


class IngestResponse(BaseModel):
    """Job summary returned after ingestion."""
    job_id: str
    source_type: str
    location: str
    state: str
    started_at: str
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    sources: int = 0
    total_chunks: int = 0
    succeeded_chunks: int = 0
    failed_chunks: List[Dict[str, Any]] = Field(default_factory=list)
    removed_records: int = 0
    retries: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# SOURCES / REPOSITORIES
# =============================================================================

class SourceEntry(BaseModel):
    sourcePath: str
    sourceType: str
    title: str
    repoUrl: Optional[str] = None
    chunks: int
    updatedAt: str


class RepositoryEntry(BaseModel):
    repoUrl: str
    records: int
    commitHash: Optional[str] = None


class RecordResponse(BaseModel):
    """One stored record, without its embedding."""
    id: str
    sourceType: str
    content: str
    metadata: Dict[str, Any]
    createdAt: str
    updatedAt: str
    dirty: bool = False


class DeleteResponse(BaseModel):
    """Result of a delete."""
    target: str
    removedRecords: int


class SyncResponse(BaseModel):
    """Result of a forced flush."""
    flushed: int
    isSynced: bool
    pendingCount: int
    lastSyncAt: Optional[str] = None
