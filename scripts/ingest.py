#!/usr/bin/env python
"""Bulk-ingest a directory of markdown documents.

Usage:
    python scripts/ingest.py                  # Ingest DOCS_DIR
    python scripts/ingest.py --docs-dir notes # Ingest another directory
    python scripts/ingest.py --prune          # Also delete documents no longer on disk
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docrag import config
from docrag.errors import InvalidDocumentError, RagError
from docrag.log import configure_logging
from docrag.models import IngestState
from docrag.rag.md_parser import MarkdownParser
from docrag.service import RagService

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document_id: str, state: str):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {document_id[:30]:<30}",
            end="",
            flush=True,
        )
        if self.verbose:
            print(f" {state}")

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Ingestion Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Documents committed:  {stats['committed']}")
        print(f"  ⏭️  Unchanged (skipped):  {stats['skipped']}")
        print(f"  ❌ Documents failed:     {stats['failed']}")
        print(f"  🗑️  Documents pruned:     {stats['pruned']}")
        print(f"  📝 Chunks created:       {stats['chunks']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")
        print(f"\n{'=' * 60}\n")

        if stats["failed"] > 0:
            print(f"⚠️  Warning: {stats['failed']} document(s) failed to ingest.")
            print("   Check logs for details.\n")


def find_documents(docs_dir: Path) -> list:
    return sorted(p for p in docs_dir.rglob("*.md") if p.is_file())


async def run(docs_dir: Path, prune: bool, progress: ProgressReporter) -> dict:
    parser = MarkdownParser()
    service = RagService()
    stats = {"committed": 0, "skipped": 0, "failed": 0, "pruned": 0, "chunks": 0}

    await service.open()
    try:
        job_ids = []
        for path in find_documents(docs_dir):
            try:
                document = parser.load_document(path, root=docs_dir)
            except InvalidDocumentError as e:
                logger.error("document_load_failed", path=str(path), error=str(e))
                stats["failed"] += 1
                continue
            job_ids.append(service.submit(document))

        progress.start(f"Ingesting {len(job_ids)} document(s) from {docs_dir}")
        for current, job_id in enumerate(job_ids, 1):
            job = await service.wait(job_id)
            if job.state is IngestState.FAILED:
                stats["failed"] += 1
            elif job.skipped:
                stats["skipped"] += 1
            else:
                stats["committed"] += 1
                stats["chunks"] += job.chunk_count
            progress.update(current, len(job_ids), job.document_id, job.state.value)

        if prune:
            on_disk = {str(p.relative_to(docs_dir)) for p in find_documents(docs_dir)}
            for row in await service.list_documents(limit=100_000):
                if row["id"] not in on_disk and await service.delete_document(row["id"]):
                    stats["pruned"] += 1
    finally:
        await service.close()

    return stats


async def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Ingest markdown documents into the RAG store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--docs-dir",
        type=Path,
        default=None,
        help=f"Documents directory (default: {config.DOCS_DIR})",
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Delete stored documents whose file no longer exists",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show per-document state")
    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else "WARNING")
    docs_dir = args.docs_dir or config.DOCS_DIR
    progress = ProgressReporter(verbose=args.verbose)

    print("\n📋 Configuration:")
    print(f"   Documents directory: {docs_dir}")
    print(f"   Database:            {config.DB_PATH}")
    print(f"   Embedding model:     {config.EMBEDDING_MODEL}")
    print(f"   Chunk size:          {config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:       {config.CHUNK_OVERLAP} chars")

    if not docs_dir.is_dir():
        print(f"\n❌ Error: documents directory not found: {docs_dir}\n")
        sys.exit(1)

    try:
        stats = await run(docs_dir, args.prune, progress)
    except KeyboardInterrupt:
        print("\n\n⚠️  Ingestion cancelled by user.\n")
        sys.exit(1)
    except RagError as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    progress.finish(stats)
    if stats["failed"] > 0:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
