"""
ragvault FastAPI Application
============================

HTTP surface for the local vector store.

Endpoints:
    GET    /api/health                - Health check
    POST   /api/rag/search            - Semantic search
    POST   /api/rag/ingest            - Ingest one source
    POST   /api/rag/ingest/batch      - Ingest several sources
    GET    /api/rag/sources           - List ingested sources
    DELETE /api/rag/sources           - Delete a source
    GET    /api/rag/repositories      - List tracked repositories
    DELETE /api/rag/repositories      - Un-track a repository
    GET    /api/rag/stats             - Store statistics
    POST   /api/rag/sync              - Force a flush

Usage:
    uvicorn ragvault.api.main:app --port 8000

    Or with CLI:
    python -m ragvault.api.main
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Callable, Optional
import logging

from ..core.config import Settings, get_settings
from ..core.logging_config import setup_logging_from_config
from ..rag.context import RAGContext
from .models import HealthResponse
from .rag_routes import router as rag_router

logger = logging.getLogger(__name__)

ContextFactory = Callable[[Settings], RAGContext]


def create_app(
    settings: Optional[Settings] = None,
    context_factory: Optional[ContextFactory] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (default: environment)
        context_factory: Builds the RAGContext from settings; tests inject
            one with a local embedder and a temporary store
    """
    settings = settings or get_settings()
    factory = context_factory or RAGContext.from_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"Starting {settings.app_name} API...")

        rag = factory(settings)
        await rag.start()
        app.state.rag = rag

        yield

        logger.info(f"Shutting down {settings.app_name} API...")
        synced = await rag.shutdown()
        if not synced:
            logger.warning("Shutdown completed with unsynced operations")
        app.state.rag = None

    app = FastAPI(
        title="ragvault API",
        description="Local hybrid vector store and retrieval engine",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.rag = None
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rag_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check: ready once the index has been loaded."""
        rag: Optional[RAGContext] = request.app.state.rag
        if rag is None or not rag.is_ready:
            return HealthResponse(status="starting", version=settings.app_version, ready=False)

        sync_stats = rag.sync.stats()
        return HealthResponse(
            status="healthy" if sync_stats["last_error"] is None else "degraded",
            version=settings.app_version,
            ready=True,
            totalEntries=len(rag.index),
            isSynced=sync_stats["is_synced"],
            pendingCount=sync_stats["pending_count"],
        )

    return app


def _create_default_app() -> FastAPI:
    settings = get_settings()
    setup_logging_from_config(settings.logging)
    return create_app(settings)


app = _create_default_app()


if __name__ == "__main__":
    import uvicorn

    print("=" * 60)
    print("ragvault API Server")
    print("=" * 60)
    print()
    print("Endpoints:")
    print("  GET  /api/health          - Health check")
    print("  POST /api/rag/search      - Semantic search")
    print("  POST /api/rag/ingest      - Ingest a source")
    print("  GET  /api/rag/stats       - Store statistics")
    print()
    print("=" * 60)

    uvicorn.run(
        "ragvault.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
