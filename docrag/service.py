"""Service facade wiring the gateway, pipeline, retriever and orchestrator.

This is the Ingestion API and Query API used by the HTTP layer and the CLI.
"""
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from docrag import config
from docrag.db import PersistenceGateway
from docrag.errors import RagError
from docrag.models import Answer, Document, IngestionJob, PartialFailure, RetrievalFilter
from docrag.procedures import DocumentKey, ListDocumentsParams, NoParams
from docrag.providers import (
    EmbeddingProvider,
    GenerationProvider,
    OllamaEmbeddingProvider,
    OllamaGenerationProvider,
)
from docrag.rag.chunker import TextChunker
from docrag.rag.ingest import IngestionService, IngestPipeline
from docrag.rag.orchestrator import QueryOrchestrator
from docrag.rag.retriever import Retriever, build_index

logger = structlog.get_logger()


class RagService:
    """Owns every component for the lifetime of the application."""

    def __init__(
        self,
        gateway: Optional[PersistenceGateway] = None,
        embedder: Optional[EmbeddingProvider] = None,
        generator: Optional[GenerationProvider] = None,
        chunker: Optional[TextChunker] = None,
        index_kind: str = None,
        metric: str = None,
        retry_wait: float = None,
        workers: int = None,
        record_queries: Optional[bool] = None,
    ):
        self.gateway = gateway or PersistenceGateway()
        self.embedder = embedder or OllamaEmbeddingProvider()
        self.generator = generator or OllamaGenerationProvider()

        self.pipeline = IngestPipeline(
            self.gateway, self.embedder, chunker=chunker, retry_wait=retry_wait
        )
        self.jobs = IngestionService(self.pipeline, workers=workers)
        self.retriever = Retriever(
            self.gateway,
            metric=metric,
            index=build_index(index_kind or config.RETRIEVAL_INDEX, self.gateway),
        )
        self.orchestrator = QueryOrchestrator(
            self.gateway,
            self.embedder,
            self.generator,
            retriever=self.retriever,
            record_queries=record_queries,
        )

    async def open(self) -> None:
        await self.gateway.open()

    async def close(self) -> None:
        await self.jobs.shutdown()
        await self.gateway.close()

    # Ingestion API

    def submit(self, document: Document) -> str:
        return self.jobs.submit(document)

    def get_status(self, job_id: str) -> Optional[IngestionJob]:
        return self.jobs.get_status(job_id)

    async def wait(self, job_id: str) -> IngestionJob:
        return await self.jobs.wait(job_id)

    def cancel(self, job_id: str) -> bool:
        return self.jobs.cancel(job_id)

    async def ingest(self, document: Document) -> IngestionJob:
        """Ingest in the caller's task; errors propagate after the job is marked."""
        return await self.pipeline.ingest(document)

    async def delete_document(self, document_id: str) -> bool:
        async with self.gateway.transaction() as tx:
            result = await self.gateway.execute(
                tx, "delete_document", DocumentKey(document_id=document_id)
            )
        deleted = result.rowcount > 0
        logger.info("document_deleted", document_id=document_id, deleted=deleted)
        return deleted

    async def list_documents(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gateway.transaction(readonly=True) as tx:
            result = await self.gateway.execute(
                tx, "list_documents", ListDocumentsParams(limit=limit)
            )
        return result.rows

    # Query API

    async def query(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        timeout: Optional[float] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> Union[Answer, PartialFailure]:
        filter = RetrievalFilter.for_documents(document_ids) if document_ids is not None else None
        return await self.orchestrator.answer(query_text, top_k=top_k, timeout=timeout, filter=filter)

    async def health(self) -> Dict[str, Any]:
        """Readiness checks: database reachable, model server reachable."""
        checks: Dict[str, Any] = {"status": "healthy", "database": False}

        try:
            async with self.gateway.transaction(readonly=True) as tx:
                await self.gateway.execute(tx, "get_corpus_version", NoParams())
            checks["database"] = True
        except RagError as e:
            checks["status"] = "unhealthy"
            checks["error"] = str(e)

        if isinstance(self.generator, OllamaGenerationProvider):
            checks["ollama"] = False
            try:
                models = await self.generator.list_models()
                checks["ollama"] = True
                if self.generator.model not in models:
                    checks["status"] = "unhealthy"
                    checks["error"] = f"Missing chat model: {self.generator.model}"
            except httpx.HTTPError as e:
                checks["status"] = "unhealthy"
                checks["error"] = str(e)

        return checks
