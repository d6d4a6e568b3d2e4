"""Shared fixtures: a temporary SQLite store and deterministic providers."""
import pytest

from docrag.db import PersistenceGateway
from docrag.procedures import DocumentKey
from docrag.rag.chunker import TextChunker
from docrag.rag.ingest import IngestPipeline
from fakes import FakeEmbedder, FakeGenerator


@pytest.fixture
async def gateway(tmp_path):
    gw = PersistenceGateway(
        db_path=tmp_path / "test.sqlite",
        pool_size=4,
        acquire_timeout=2.0,
        procedure_timeout=5.0,
        strict=True,
    )
    await gw.open()
    yield gw
    await gw.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def chunker():
    return TextChunker(chunk_size=200, chunk_overlap=20)


@pytest.fixture
def pipeline(gateway, embedder, chunker):
    return IngestPipeline(gateway, embedder, chunker=chunker, embed_concurrency=4, retry_wait=0)


@pytest.fixture
def stored(gateway):
    """Row counts kept for one document: documents, chunks, embeddings."""

    async def rows(document_id):
        async with gateway.transaction(readonly=True) as tx:
            result = await gateway.execute(
                tx, "document_stats", DocumentKey(document_id=document_id)
            )
        return result.first()

    return rows
