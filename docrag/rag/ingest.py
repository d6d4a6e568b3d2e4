"""Ingest pipeline for documents.

Orchestrates, per document:
- Idempotency check against the stored content hash
- Text chunking
- Concurrent, rate-capped embedding generation with retries
- One transaction replacing any previous version of the document

A document is either fully committed or left exactly as it was before the
run started.
"""
import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docrag import config
from docrag.db import PersistenceGateway, TransactionContext, TxState
from docrag.errors import EmbeddingUnavailable, StoreConnectionError
from docrag.models import Chunk, Document, EmbeddingVector, IngestionJob, IngestState, utcnow
from docrag.procedures import (
    DocumentKey,
    InsertChunkParams,
    InsertDocumentParams,
    InsertEmbeddingParams,
)
from docrag.providers import EmbeddingProvider
from docrag.rag.chunker import TextChunker

logger = structlog.get_logger()


class KeyedLock:
    """One asyncio lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]


class IngestPipeline:
    """Pipeline for ingesting documents into the RAG store."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        embedder: EmbeddingProvider,
        chunker: Optional[TextChunker] = None,
        embed_concurrency: int = None,
        embed_attempts: int = None,
        store_attempts: int = None,
        retry_wait: float = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            gateway: Persistence gateway holding documents, chunks and embeddings
            embedder: Embedding provider
            chunker: Text chunker (default: configured chunk size and overlap)
            embed_concurrency: Maximum embedding calls in flight across all documents
            embed_attempts: Attempts per chunk before embedding is given up
            store_attempts: Attempts to persist when the store connection fails
            retry_wait: Base of the exponential backoff between attempts, in seconds
        """
        self.gateway = gateway
        self.embedder = embedder
        self.chunker = chunker or TextChunker()
        self.embed_attempts = embed_attempts or config.EMBED_RETRY_ATTEMPTS
        self.store_attempts = store_attempts or config.STORE_RETRY_ATTEMPTS
        self.retry_wait = config.RETRY_BACKOFF_SECONDS if retry_wait is None else retry_wait
        self.embed_concurrency = embed_concurrency or config.EMBED_CONCURRENCY

        self._embed_slots = asyncio.Semaphore(self.embed_concurrency)
        self._identity_locks = KeyedLock()

        self.stats = {
            "documents_committed": 0,
            "documents_skipped": 0,
            "documents_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

        logger.info(
            "ingest_pipeline_initialized",
            model_version=embedder.model_version,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            embed_concurrency=self.embed_concurrency,
        )

    async def ingest(self, document: Document, job: Optional[IngestionJob] = None) -> IngestionJob:
        """Ingest one document end to end.

        Args:
            document: Document to ingest
            job: Job record to update (a new one is created if omitted)

        Returns:
            The job in state COMMITTED (``skipped`` is set for a no-op re-ingestion)

        Raises:
            InvalidDocumentError, EmbeddingUnavailable, ProcedureError,
            StoreConnectionError: Unchanged, after the job is marked FAILED with
                the stage that failed
        """
        job = job or IngestionJob(document_id=document.document_id)

        async with self._identity_locks.hold(document.document_id):
            self._transition(job, IngestState.RECEIVED)
            # The idempotency read is store work; its failures count as persisting
            stage = IngestState.PERSISTING
            contexts: List[TransactionContext] = []
            try:
                if await self._already_committed(document):
                    job.skipped = True
                    self.stats["documents_skipped"] += 1
                    self._transition(job, IngestState.COMMITTED)
                    return job

                stage = IngestState.CHUNKED
                chunks = self.chunker.chunk(document)
                job.chunk_count = len(chunks)
                self._transition(job, IngestState.CHUNKED)

                stage = IngestState.EMBEDDING
                self._transition(job, IngestState.EMBEDDING)
                vectors = await self._embed_all(chunks)

                stage = IngestState.PERSISTING
                self._transition(job, IngestState.PERSISTING)
                await self._persist(document, chunks, vectors, contexts)

            except asyncio.CancelledError:
                # The commit may have completed before the cancellation landed
                if any(tx.state is TxState.COMMITTED for tx in contexts):
                    self.stats["documents_committed"] += 1
                    self._transition(job, IngestState.COMMITTED)
                else:
                    self._fail(job, stage, "cancelled")
                raise
            except Exception as e:
                self._fail(job, stage, f"{type(e).__name__}: {e}")
                e.add_note(f"document={document.document_id} stage={stage.value}")
                raise

            self.stats["documents_committed"] += 1
            self.stats["chunks_created"] += len(chunks)
            self._transition(job, IngestState.COMMITTED)
            return job

    async def _already_committed(self, document: Document) -> bool:
        """True when the same content was committed with the current model."""
        async for attempt in self._store_retrying():
            with attempt:
                async with self.gateway.transaction(readonly=True) as tx:
                    result = await self.gateway.execute(
                        tx, "get_document", DocumentKey(document_id=document.document_id)
                    )
        stored = result.first()
        if stored is None:
            return False

        unchanged = (
            stored["content_hash"] == document.content_hash
            and stored["model_version"] == self.embedder.model_version
        )
        if not unchanged:
            logger.info(
                "document_superseded",
                document_id=document.document_id,
                model_changed=stored["model_version"] != self.embedder.model_version,
            )
        return unchanged

    async def _embed_all(self, chunks: Sequence[Chunk]) -> List[EmbeddingVector]:
        """Embed every chunk concurrently; results keep document order.

        The first chunk to exhaust its retries cancels the others.
        """
        tasks = [asyncio.create_task(self._embed_chunk(chunk)) for chunk in chunks]
        try:
            vectors = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        dimensions = {v.dimension for v in vectors}
        versions = {v.model_version for v in vectors}
        if len(dimensions) > 1 or len(versions) > 1:
            raise EmbeddingUnavailable(
                f"inconsistent embeddings: dimensions={sorted(dimensions)} "
                f"model_versions={sorted(versions)}"
            )
        return list(vectors)

    async def _embed_chunk(self, chunk: Chunk) -> EmbeddingVector:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(EmbeddingUnavailable),
            stop=stop_after_attempt(self.embed_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=max(self.retry_wait * 8, 0)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.warning(
                        "embedding_retry",
                        document_id=chunk.document_id,
                        position=chunk.position,
                        attempt=number,
                    )
                async with self._embed_slots:
                    try:
                        async with asyncio.timeout(config.EMBED_TIMEOUT):
                            vector = await self.embedder.embed(chunk.text)
                    except TimeoutError as e:
                        raise EmbeddingUnavailable(
                            f"embedding timed out after {config.EMBED_TIMEOUT}s"
                        ) from e

        self.stats["embeddings_generated"] += 1
        return vector

    async def _persist(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        vectors: Sequence[EmbeddingVector],
        contexts: List[TransactionContext],
    ) -> None:
        """Replace the stored document in one transaction.

        Connection failures retry from the top with a fresh transaction;
        procedure rejections propagate at once. Every context opened is
        appended to ``contexts`` so the caller can tell whether one committed.
        """
        async for attempt in self._store_retrying():
            with attempt:
                async with self.gateway.transaction() as tx:
                    contexts.append(tx)
                    await self._write_document(tx, document, chunks, vectors)

        logger.info(
            "document_persisted",
            document_id=document.document_id,
            chunk_count=len(chunks),
            model_version=vectors[0].model_version,
        )

    async def _write_document(self, tx, document, chunks, vectors) -> None:
        gateway = self.gateway
        key = DocumentKey(document_id=document.document_id)

        await gateway.execute(tx, "delete_document", key)
        await gateway.execute(
            tx,
            "insert_document",
            InsertDocumentParams(
                document_id=document.document_id,
                content_hash=document.content_hash,
                model_version=vectors[0].model_version,
                chunk_count=len(chunks),
                title=document.title,
                origin=document.origin,
                version=document.version,
                metadata=dict(document.metadata),
            ),
        )

        for chunk, vector in zip(chunks, vectors):
            inserted = await gateway.execute(
                tx,
                "insert_chunk",
                InsertChunkParams(
                    document_id=chunk.document_id,
                    position=chunk.position,
                    text=chunk.text,
                    char_start=chunk.char_start,
                    char_end=chunk.char_end,
                ),
            )
            await gateway.execute(
                tx,
                "insert_embedding",
                InsertEmbeddingParams(
                    chunk_id=inserted.first()["chunk_id"],
                    vector=list(vector.values),
                    model_version=vector.model_version,
                ),
            )

        await gateway.execute(tx, "verify_document", key)

    def _store_retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(StoreConnectionError),
            stop=stop_after_attempt(self.store_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=max(self.retry_wait * 8, 0)),
            reraise=True,
        )

    def _transition(self, job: IngestionJob, state: IngestState) -> None:
        job.state = state
        job.updated_at = utcnow()
        logger.info(
            "ingest_state_changed",
            job_id=job.job_id,
            document_id=job.document_id,
            state=state.value,
            skipped=job.skipped,
        )

    def _fail(self, job: IngestionJob, stage: IngestState, error: str) -> None:
        job.failed_stage = stage
        job.error = error
        self.stats["documents_failed"] += 1
        self._transition(job, IngestState.FAILED)
        logger.error(
            "ingest_failed",
            job_id=job.job_id,
            document_id=job.document_id,
            stage=stage.value,
            error=error,
        )


class IngestionService:
    """Runs ingestions as background jobs: submit, poll, wait, cancel."""

    def __init__(self, pipeline: IngestPipeline, workers: int = None, history: int = None):
        self.pipeline = pipeline
        self.workers = workers or config.INGEST_WORKERS
        self.history = history or config.INGEST_JOB_HISTORY
        self._slots = asyncio.Semaphore(self.workers)
        self._jobs: "OrderedDict[str, IngestionJob]" = OrderedDict()
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, document: Document) -> str:
        """Queue a document for ingestion and return its job id."""
        job = IngestionJob(document_id=document.document_id)
        self._jobs[job.job_id] = job
        self._evict_finished()
        task = asyncio.create_task(self._run(document, job), name=f"ingest-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.job_id, None))
        logger.info("ingestion_submitted", job_id=job.job_id, document_id=document.document_id)
        return job.job_id

    def get_status(self, job_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(job_id)

    async def wait(self, job_id: str) -> IngestionJob:
        """Wait for a job to finish and return its final record.

        Raises:
            KeyError: Unknown job id, or a finished job already evicted
        """
        job = self._jobs[job_id]
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return job

    def cancel(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("ingestion_cancel_requested", job_id=job_id)
        return True

    async def shutdown(self) -> None:
        """Cancel outstanding jobs and wait until each has resolved."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, document: Document, job: IngestionJob) -> None:
        try:
            async with self._slots:
                await self.pipeline.ingest(document, job)
        except asyncio.CancelledError:
            if not job.done:
                job.state = IngestState.FAILED
                job.error = "cancelled"
                job.updated_at = utcnow()
            raise
        except Exception:
            # Recorded on the job by the pipeline
            pass

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs once the history is over its cap."""
        excess = len(self._jobs) - self.history
        if excess <= 0:
            return
        for job_id in [jid for jid, job in self._jobs.items() if job.done][:excess]:
            del self._jobs[job_id]
        logger.debug("ingestion_history_trimmed", kept=len(self._jobs))
