"""Query orchestration: embed, retrieve, compose a prompt and generate an answer.

A generation failure never invalidates a successful retrieval: the caller
gets a PartialFailure carrying the ranked sources instead of an error.
"""
import asyncio
from collections import OrderedDict
from typing import List, Optional, Tuple, Union

import structlog

from docrag import config
from docrag.db import PersistenceGateway
from docrag.errors import (
    EmbeddingUnavailable,
    GenerationUnavailable,
    InvalidQueryError,
    ProcedureError,
    StoreConnectionError,
)
from docrag.models import (
    Answer,
    Citation,
    EmbeddingVector,
    PartialFailure,
    RetrievalFilter,
    ScoredChunk,
)
from docrag.procedures import QueryRecordParams
from docrag.providers import EmbeddingProvider, GenerationProvider
from docrag.rag.retriever import Retriever

logger = structlog.get_logger()

PROMPT_TEMPLATE = """KNOWLEDGE BASE CONTEXT:
{context}

QUESTION:
{question}

INSTRUCTIONS:
- Answer using only the context above
- Mention the [Source n] labels you relied on
- If the context does not contain the answer, say so"""


class QueryEmbeddingCache:
    """LRU of recent query embeddings, used when the provider is down."""

    def __init__(self, size: int):
        self.size = size
        self._entries: "OrderedDict[Tuple[str, str], EmbeddingVector]" = OrderedDict()

    def get(self, model_version: str, text: str) -> Optional[EmbeddingVector]:
        key = (model_version, text)
        vector = self._entries.get(key)
        if vector is not None:
            self._entries.move_to_end(key)
        return vector

    def put(self, model_version: str, text: str, vector: EmbeddingVector) -> None:
        if self.size <= 0:
            return
        key = (model_version, text)
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self.size:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


class QueryOrchestrator:
    """Answers questions from the stored corpus."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        embedder: EmbeddingProvider,
        generator: GenerationProvider,
        retriever: Optional[Retriever] = None,
        max_context_chars: int = None,
        max_tokens: int = None,
        cache_size: int = None,
        record_queries: Optional[bool] = None,
    ):
        self.gateway = gateway
        self.embedder = embedder
        self.generator = generator
        self.retriever = retriever or Retriever(gateway)
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.max_tokens = max_tokens or config.GENERATION_MAX_TOKENS
        self.record_queries = config.RECORD_QUERIES if record_queries is None else record_queries
        self.cache = QueryEmbeddingCache(
            config.QUERY_CACHE_SIZE if cache_size is None else cache_size
        )

    async def answer(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        timeout: Optional[float] = None,
        filter: Optional[RetrievalFilter] = None,
    ) -> Union[Answer, PartialFailure]:
        """Answer a question from the retrieved chunks.

        Args:
            query_text: The question
            top_k: Number of chunks to retrieve (default from the retriever)
            timeout: Seconds allowed for generation (default from config)
            filter: Optional restriction on candidate documents

        Returns:
            Answer, or PartialFailure with the ranked chunks when no answer
            could be synthesized

        Raises:
            InvalidQueryError: Empty question, bad top_k or bad timeout
            EmbeddingUnavailable: Provider down and no cached embedding
        """
        if not isinstance(query_text, str) or not query_text.strip():
            raise InvalidQueryError("query text must be a non-empty string")
        timeout = config.GENERATION_TIMEOUT if timeout is None else timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidQueryError(f"timeout must be a positive number, got {timeout!r}")

        logger.info("query_received", query_length=len(query_text), top_k=top_k)

        query_embedding = await self._embed_query(query_text)
        retrieved = await self.retriever.retrieve(query_embedding, top_k=top_k, filter=filter)
        chunks = list(retrieved)

        if not chunks:
            logger.info("no_relevant_context_found", query_preview=query_text[:100])
            return await self._finish(
                PartialFailure(query=query_text, chunks=[], reason="no_context")
            )

        context, used = self.compose_context(chunks)
        prompt = PROMPT_TEMPLATE.format(context=context, question=query_text.strip())

        try:
            async with asyncio.timeout(timeout):
                text = await self.generator.generate(prompt, self.max_tokens, timeout)
        except TimeoutError as e:
            logger.warning("generation_timeout", timeout=timeout, sources=len(chunks))
            return await self._finish(
                PartialFailure(
                    query=query_text, chunks=chunks, reason="generation_timeout", error=str(e) or None
                )
            )
        except GenerationUnavailable as e:
            logger.error("generation_failed", error=str(e), sources=len(chunks))
            return await self._finish(
                PartialFailure(
                    query=query_text, chunks=chunks, reason="generation_unavailable", error=str(e)
                )
            )
        except Exception as e:
            logger.exception("generation_failed", error_type=type(e).__name__, sources=len(chunks))
            return await self._finish(
                PartialFailure(
                    query=query_text, chunks=chunks, reason="generation_error", error=str(e) or None
                )
            )

        if not text or not text.strip():
            logger.error("empty_generation_response", sources=len(chunks))
            return await self._finish(
                PartialFailure(query=query_text, chunks=chunks, reason="empty_answer")
            )

        citations = [
            Citation(
                chunk_id=c.chunk_id, document_id=c.document_id, position=c.position, score=c.score
            )
            for c in used
        ]
        return await self._finish(
            Answer(query=query_text, text=text, citations=citations, chunks=chunks)
        )

    def compose_context(self, chunks: List[ScoredChunk]) -> Tuple[str, List[ScoredChunk]]:
        """Format ranked chunks within the context budget.

        Chunks are dropped lowest score first until the rest fits. If even
        the best chunk is too long it is truncated.
        """
        blocks = [
            f"[Source {i}: {c.document_id}#{c.position}]\n{c.text.strip()}\n"
            for i, c in enumerate(chunks, 1)
        ]

        kept = len(blocks)
        while kept and sum(len(b) for b in blocks[:kept]) + (kept - 1) > self.max_context_chars:
            kept -= 1

        if kept == 0:
            blocks = [blocks[0][: self.max_context_chars]]
            kept = 1

        if kept < len(chunks):
            logger.info("context_budget_applied", kept=kept, dropped=len(chunks) - kept)

        context = "\n".join(blocks[:kept])
        logger.debug("context_formatted", num_chunks=kept, total_chars=len(context))
        return context, chunks[:kept]

    async def _embed_query(self, query_text: str) -> EmbeddingVector:
        model_version = self.embedder.model_version
        try:
            try:
                async with asyncio.timeout(config.EMBED_TIMEOUT):
                    vector = await self.embedder.embed(query_text)
            except TimeoutError as e:
                raise EmbeddingUnavailable(
                    f"query embedding timed out after {config.EMBED_TIMEOUT}s"
                ) from e
        except EmbeddingUnavailable as e:
            cached = self.cache.get(model_version, query_text)
            if cached is None:
                logger.error("query_embedding_unavailable", error=str(e))
                raise
            logger.warning("query_embedding_cache_fallback", error=str(e))
            return cached

        self.cache.put(model_version, query_text, vector)
        return vector

    async def _finish(self, outcome: Union[Answer, PartialFailure]):
        logger.info(
            "query_completed",
            answered=outcome.answered,
            sources=len(outcome.chunks),
            reason=getattr(outcome, "reason", None),
        )
        if self.record_queries:
            await self._record(outcome)
        return outcome

    async def _record(self, outcome: Union[Answer, PartialFailure]) -> None:
        params = QueryRecordParams(
            query_text=outcome.query,
            chunk_ids=[c.chunk_id for c in outcome.chunks],
            answer=outcome.text,
            answered=outcome.answered,
        )
        try:
            async with self.gateway.transaction() as tx:
                await self.gateway.execute(tx, "insert_query_record", params)
        except (StoreConnectionError, ProcedureError) as e:
            logger.warning("query_record_failed", error=str(e))
