"""
ragvault RAG API Routes
=======================

Endpoints for searching and managing the local vector store.

The RAGContext is created by the application lifespan and read from
``request.app.state.rag``.
"""

import asyncio
import logging
from fastapi import APIRouter, HTTPException, Query, Request
from typing import List, Optional

from ..rag.context import RAGContext
from ..rag.errors import (
    AdapterError,
    DimensionMismatchError,
    InvalidArgument,
    ProviderError,
    RAGError,
    StorageError,
)
from ..rag.models import IngestionSource, SourceType
from ..rag.retriever import RetrievalOptions
from .models import (
    Citation,
    DeleteResponse,
    IngestBatchRequest,
    IngestRequest,
    IngestResponse,
    RecordResponse,
    RepositoryEntry,
    SearchRequest,
    SearchResponse,
    SourceEntry,
    SyncResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rag", tags=["RAG"])


def get_context(request: Request) -> RAGContext:
    rag = getattr(request.app.state, "rag", None)
    if rag is None:
        raise HTTPException(status_code=503, detail="Vector store not initialized")
    return rag


def to_http_error(e: RAGError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(e, DimensionMismatchError):
        status = 500
    elif isinstance(e, InvalidArgument):
        status = 400
    elif isinstance(e, AdapterError):
        status = 422
    elif isinstance(e, StorageError):
        status = 503
    elif isinstance(e, ProviderError):
        status = 502
    else:
        status = 500
    if status >= 500:
        logger.error(f"RAG request failed: {e}")
    return HTTPException(status_code=status, detail=str(e))


def _parse_source_type(value: str) -> SourceType:
    try:
        return SourceType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown source type: {value}")


def _to_source(request: IngestRequest) -> IngestionSource:
    try:
        return IngestionSource(
            source_type=_parse_source_type(request.sourceType),
            location=request.location,
            content=request.content,
            title=request.title,
            tags=request.tags,
            metadata=request.metadata,
        )
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=f"Invalid source: {e}")


# =============================================================================
# SEARCH ENDPOINT
# =============================================================================

@router.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest, http_request: Request):
    """
    Semantic search over every ingested source.

    Results are ranked by cosine similarity; an empty store returns no
    results rather than an error.
    """
    rag = get_context(http_request)
    defaults = rag.retriever.default_options
    try:
        options = RetrievalOptions(
            limit=request.limit if request.limit is not None else defaults.limit,
            min_score=request.minScore if request.minScore is not None else defaults.min_score,
            source_types=[_parse_source_type(t) for t in request.sourceTypes],
            tags=request.tags,
            snippet_chars=defaults.snippet_chars,
        )
        results = await rag.retrieve(request.query, options)
    except RAGError as e:
        raise to_http_error(e)

    return SearchResponse(
        query=request.query,
        results=[Citation(**r.to_citation()) for r in results],
        formattedContext=rag.retriever.format_context(results) if request.includeContext else None,
    )


# =============================================================================
# INGEST ENDPOINTS
# =============================================================================

@router.post("/ingest", response_model=IngestResponse)
async def ingest(request: IngestRequest, http_request: Request):
    """
    Ingest one source: extract, chunk, embed and replace its records.

    Extraction failures are reported in the job summary (state "failed").
    """
    rag = get_context(http_request)
    source = _to_source(request)
    try:
        report = await rag.ingest(source)
    except RAGError as e:
        raise to_http_error(e)
    return IngestResponse(**report.get_summary())


@router.post("/ingest/batch", response_model=List[IngestResponse])
async def ingest_batch(request: IngestBatchRequest, http_request: Request):
    """Ingest several sources concurrently."""
    rag = get_context(http_request)
    sources = [_to_source(s) for s in request.sources]
    try:
        reports = await rag.ingest_many(sources)
    except RAGError as e:
        raise to_http_error(e)
    return [IngestResponse(**r.get_summary()) for r in reports]


# =============================================================================
# SOURCES / REPOSITORIES
# =============================================================================

@router.get("/sources", response_model=List[SourceEntry])
async def list_sources(
    http_request: Request,
    source_type: Optional[str] = Query(None, alias="sourceType", description="Filter by source type"),
):
    rag = get_context(http_request)
    parsed = _parse_source_type(source_type) if source_type else None
    try:
        await rag.sync.wait_ready()
    except RAGError as e:
        raise to_http_error(e)
    return [SourceEntry(**entry) for entry in rag.list_sources(parsed)]


@router.delete("/sources", response_model=DeleteResponse)
async def delete_source(
    http_request: Request,
    source_path: str = Query(..., alias="sourcePath", description="sourcePath of the records to delete"),
):
    """Delete every record of one source."""
    rag = get_context(http_request)
    try:
        removed = await rag.delete_source(source_path)
    except RAGError as e:
        raise to_http_error(e)
    return DeleteResponse(target=source_path, removedRecords=removed)


@router.get("/repositories", response_model=List[RepositoryEntry])
async def list_repositories(http_request: Request):
    rag = get_context(http_request)
    try:
        await rag.sync.wait_ready()
    except RAGError as e:
        raise to_http_error(e)
    return [RepositoryEntry(**entry) for entry in rag.list_repositories()]


@router.delete("/repositories", response_model=DeleteResponse)
async def delete_repository(
    http_request: Request,
    repo_url: str = Query(..., alias="repoUrl", description="Repository URL or owner/name"),
):
    """Un-track a repository: removes its code, issue, PR and diff records."""
    rag = get_context(http_request)
    try:
        removed = await rag.delete_repository(repo_url)
    except RAGError as e:
        raise to_http_error(e)
    return DeleteResponse(target=repo_url, removedRecords=removed)


# =============================================================================
# RECORDS
# =============================================================================

@router.get("/records/{record_id}", response_model=RecordResponse)
async def get_record(record_id: str, http_request: Request):
    rag = get_context(http_request)
    try:
        record = await rag.get_record(record_id)
    except RAGError as e:
        raise to_http_error(e)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Record not found: {record_id}")
    return RecordResponse(
        id=record.id,
        sourceType=record.source_type.value,
        content=record.content,
        metadata=record.metadata.to_dict(),
        createdAt=record.created_at.isoformat(),
        updatedAt=record.updated_at.isoformat(),
        dirty=record.dirty,
    )


@router.delete("/records/{record_id}", response_model=DeleteResponse)
async def delete_record(record_id: str, http_request: Request):
    """Delete one record by id."""
    rag = get_context(http_request)
    try:
        removed = await rag.delete_record(record_id)
    except RAGError as e:
        raise to_http_error(e)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Record not found: {record_id}")
    return DeleteResponse(target=record_id, removedRecords=1)


@router.delete("/records", response_model=DeleteResponse)
async def clear_records(http_request: Request):
    """Delete every record in the store."""
    rag = get_context(http_request)
    try:
        removed = await rag.clear()
    except RAGError as e:
        raise to_http_error(e)
    return DeleteResponse(target="*", removedRecords=removed)


# =============================================================================
# STATS / SYNC
# =============================================================================

@router.get("/stats")
async def get_stats(http_request: Request):
    """Index size by type, store status and sync state."""
    rag = get_context(http_request)
    try:
        return await asyncio.to_thread(rag.stats)
    except RAGError as e:
        raise to_http_error(e)


@router.post("/sync", response_model=SyncResponse)
async def force_sync(http_request: Request):
    """Flush pending operations now."""
    rag = get_context(http_request)
    try:
        await rag.sync.wait_ready()
        flushed = await rag.flush()
    except RAGError as e:
        raise to_http_error(e)

    sync_stats = rag.sync.stats()
    return SyncResponse(
        flushed=flushed,
        isSynced=sync_stats["is_synced"],
        pendingCount=sync_stats["pending_count"],
        lastSyncAt=sync_stats["last_sync_at"],
    )
