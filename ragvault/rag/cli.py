"""
RAG CLI
=======

Command-line interface for vector store management.

Usage:
    python -m ragvault.rag.cli init                          # Create/migrate the store
    python -m ragvault.rag.cli ingest document ./notes.md    # Ingest a source
    python -m ragvault.rag.cli ingest repo-code owner/name   # Ingest a repository
    python -m ragvault.rag.cli search "query" -k 5           # Test search
    python -m ragvault.rag.cli delete --source ./notes.md    # Delete a source
    python -m ragvault.rag.cli delete --repo owner/name      # Un-track a repository
    python -m ragvault.rag.cli stats                         # Show statistics
    python -m ragvault.rag.cli sync                          # Load and flush, report sync state
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from ..core.config import get_settings
from ..core.logging_config import setup_logging_from_config
from .context import RAGContext
from .errors import RAGError
from .models import IngestionSource, SourceType
from .retriever import RetrievalOptions
from .store import build_store

logger = logging.getLogger(__name__)


def _parse_meta(pairs: Optional[List[str]]) -> Dict[str, str]:
    meta = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"--meta expects key=value, got {pair!r}")
        meta[key] = value
    return meta


def init_store() -> bool:
    """Create the store and run migrations."""
    settings = get_settings()
    store = build_store(settings.storage, settings.embedding.dimension)
    try:
        store.open()
        store.ensure_embedding_meta(settings.embedding.model)
        logger.info(f"Store ready at schema version {store.get_version()} ({store.count()} records)")
        return True
    except RAGError as e:
        logger.error(f"Failed to initialize store: {e}")
        return False
    finally:
        store.close()


async def ingest_source(source: IngestionSource) -> bool:
    """Ingest one source and print the job summary."""
    try:
        async with RAGContext.from_settings(get_settings()) as rag:
            report = await rag.ingest(source)
    except RAGError as e:
        logger.error(f"Ingestion failed: {e}")
        return False

    print(json.dumps(report.get_summary(), indent=2, default=str))
    return report.state.value in ("done", "done_with_errors")


async def test_search(query: str, options: RetrievalOptions, show_context: bool = False) -> bool:
    """Test search."""
    try:
        async with RAGContext.from_settings(get_settings()) as rag:
            results = await rag.retrieve(query, options)
            context = rag.retriever.format_context(results) if show_context else ""
    except RAGError as e:
        logger.error(f"Search failed: {e}")
        return False

    print(f"\n{'='*60}")
    print(f"Query: {query}")
    print(f"Results: {len(results)}")
    print('='*60)

    for r in results:
        print(f"\n[{r.rank}] Score: {r.score:.3f}")
        print(f"    Type: {r.record.source_type.value}")
        print(f"    Source: {r.source_path} (chunk {r.metadata.chunk_index})")
        print(f"    Snippet: {r.snippet}")

    if show_context:
        print(f"\n{'='*60}")
        print("FORMATTED CONTEXT FOR LLM:")
        print('='*60)
        print(context)

    return True


async def delete(source_path: Optional[str], repo_url: Optional[str]) -> bool:
    try:
        async with RAGContext.from_settings(get_settings()) as rag:
            if repo_url:
                removed = await rag.delete_repository(repo_url)
            else:
                removed = await rag.delete_source(source_path)
    except RAGError as e:
        logger.error(f"Delete failed: {e}")
        return False

    print(f"Removed {removed} records")
    return True


async def show_stats(flush: bool = False) -> bool:
    """Show vector store statistics."""
    try:
        async with RAGContext.from_settings(get_settings()) as rag:
            if flush:
                await rag.flush()
            stats = rag.stats()
    except RAGError as e:
        logger.error(f"Stats failed: {e}")
        return False

    print(f"\n{'='*60}")
    print("VECTOR STORE STATISTICS")
    print('='*60)
    print(f"\nTotal entries: {stats['totalEntries']} ({stats['sources']} sources)")
    print(f"Embedding model: {stats['embeddingModel']} ({stats['dimension']} dims)")
    print("\nEntries by type:")
    for source_type, count in sorted(stats["entriesByType"].items()):
        print(f"  {source_type}: {count}")
    store = stats.get("store", {})
    print(f"\nStore: {store.get('backend')} schema v{store.get('schema_version')}, "
          f"{store.get('persisted_entries')} persisted")
    print(f"Synced: {stats['isSynced']} (last sync {stats['lastSyncAt']})")
    return True


def main():
    parser = argparse.ArgumentParser(description="ragvault vector store CLI")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Init command
    subparsers.add_parser("init", help="Create and migrate the store")

    # Ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Ingest a source")
    ingest_parser.add_argument("source_type", choices=[t.value for t in SourceType])
    ingest_parser.add_argument("location", help="Path, URL, repository or identifier")
    ingest_parser.add_argument("--title", help="Override the extracted title")
    ingest_parser.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    ingest_parser.add_argument("--text", help="Inline content (notes, transcripts, image descriptions)")
    ingest_parser.add_argument("--meta", action="append", help="Extra metadata key=value (repeatable)")

    # Search command
    search_parser = subparsers.add_parser("search", help="Test search")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("-k", type=int, default=5, help="Number of results")
    search_parser.add_argument("--type", action="append", default=[], choices=[t.value for t in SourceType])
    search_parser.add_argument("--tag", action="append", default=[])
    search_parser.add_argument("--min-score", type=float, default=0.0)
    search_parser.add_argument("--context", action="store_true", help="Print LLM context block")

    # Delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a source or repository")
    target = delete_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--source", help="sourcePath to delete")
    target.add_argument("--repo", help="Repository URL to un-track")

    # Stats / sync commands
    subparsers.add_parser("stats", help="Show statistics")
    subparsers.add_parser("sync", help="Load the index, flush and report sync state")

    args = parser.parse_args()

    settings = get_settings()
    if args.json_logs:
        settings.logging.json_logs = True
    setup_logging_from_config(settings.logging)

    if args.command == "init":
        success = init_store()
    elif args.command == "ingest":
        source = IngestionSource(
            source_type=SourceType(args.source_type),
            location=args.location,
            content=args.text,
            title=args.title,
            tags=args.tag,
            metadata=_parse_meta(args.meta),
        )
        success = asyncio.run(ingest_source(source))
    elif args.command == "search":
        options = RetrievalOptions(
            limit=args.k,
            min_score=args.min_score,
            source_types=[SourceType(t) for t in args.type],
            tags=args.tag,
        )
        success = asyncio.run(test_search(args.query, options, args.context))
    elif args.command == "delete":
        success = asyncio.run(delete(args.source, args.repo))
    elif args.command == "stats":
        success = asyncio.run(show_stats())
    elif args.command == "sync":
        success = asyncio.run(show_stats(flush=True))
    else:
        parser.print_help()
        return

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
