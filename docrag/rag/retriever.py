"""Retriever for similarity search over stored chunk embeddings.

Handles:
- Candidate selection through a pluggable index (full scan or FAISS)
- Restriction to the query's embedding model and an optional document filter
- Scoring with one shared function so every index ranks identically
- Deterministic ordering of equal scores
"""
from typing import Any, Dict, List, Optional, Protocol

import numpy as np
import structlog

from docrag import config
from docrag.db import PersistenceGateway, TransactionContext
from docrag.errors import InvalidQueryError
from docrag.models import EmbeddingVector, RetrievalFilter, RetrievalResult, ScoredChunk
from docrag.procedures import EmbeddingScanParams, decode_vector

logger = structlog.get_logger()

METRICS = ("cosine", "dot", "l2")


def score_vectors(query: np.ndarray, vectors: np.ndarray, metric: str) -> np.ndarray:
    """Similarity of each row of ``vectors`` to ``query``; higher is closer.

    ``l2`` scores are negative Euclidean distances. Under ``cosine`` a zero
    vector on either side scores 0.
    """
    query = np.asarray(query, dtype=np.float64)
    vectors = np.asarray(vectors, dtype=np.float64)
    if vectors.size == 0:
        return np.zeros(len(vectors), dtype=np.float64)

    if metric == "dot":
        return vectors @ query
    if metric == "l2":
        return -np.linalg.norm(vectors - query, axis=1)
    if metric == "cosine":
        norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
        dots = vectors @ query
        scores = np.zeros_like(dots)
        np.divide(dots, norms, out=scores, where=norms > 0)
        return scores
    raise ValueError(f"Unknown similarity metric: {metric!r}")


def rank_key(chunk: ScoredChunk):
    """Score descending, newest chunk first, then document id and position."""
    return (-chunk.score, -chunk.chunk_id, chunk.document_id, chunk.position)


class CandidateIndex(Protocol):
    """Proposes candidate rows; the retriever does the final scoring."""

    name: str

    async def candidates(
        self,
        tx: TransactionContext,
        query: np.ndarray,
        model_version: str,
        top_k: int,
        metric: str,
        filter: Optional[RetrievalFilter],
    ) -> List[Dict[str, Any]]: ...


class FullScanIndex:
    """Reads every matching embedding through the gateway."""

    name = "scan"

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway

    async def candidates(self, tx, query, model_version, top_k, metric, filter):
        document_ids = None
        if filter is not None and filter.document_ids is not None:
            document_ids = sorted(filter.document_ids)

        result = await self.gateway.execute(
            tx,
            "scan_embeddings",
            EmbeddingScanParams(model_version=model_version, document_ids=document_ids),
        )
        return result.rows


class Retriever:
    """Similarity retriever for the RAG pipeline."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        metric: str = None,
        index: Optional[CandidateIndex] = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            gateway: Persistence gateway the candidates are read through
            metric: cosine, dot or l2 (default from config)
            index: Candidate index (default: full scan)
            top_k: Default number of results (default from config)
        """
        self.gateway = gateway
        self.metric = metric or config.SIMILARITY_METRIC
        if self.metric not in METRICS:
            raise ValueError(f"Unknown similarity metric {self.metric!r}, expected one of {METRICS}")
        self.index = index or FullScanIndex(gateway)
        self.top_k = top_k or config.RETRIEVAL_TOP_K

        logger.info(
            "retriever_initialized",
            metric=self.metric,
            index=self.index.name,
            top_k=self.top_k,
        )

    async def retrieve(
        self,
        query_embedding: EmbeddingVector,
        top_k: Optional[int] = None,
        filter: Optional[RetrievalFilter] = None,
    ) -> RetrievalResult:
        """Return the ``top_k`` stored chunks most similar to the query.

        Raises:
            InvalidQueryError: If top_k is not a positive integer or the query
                vector is empty
        """
        top_k = self.top_k if top_k is None else top_k
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            raise InvalidQueryError(f"top_k must be a positive integer, got {top_k!r}")
        if not query_embedding.values:
            raise InvalidQueryError("query embedding is empty")

        query = np.asarray(query_embedding.values, dtype=np.float64)
        model_version = query_embedding.model_version

        async with self.gateway.transaction(readonly=True) as tx:
            rows = await self.index.candidates(
                tx, query, model_version, top_k, self.metric, filter
            )

        scored = self._score(rows, query, filter)
        scored.sort(key=rank_key)
        chunks = scored[:top_k]

        logger.info(
            "retrieval_completed",
            index=self.index.name,
            candidates=len(rows),
            results_returned=len(chunks),
            top_score=chunks[0].score if chunks else None,
        )
        return RetrievalResult(chunks=chunks, model_version=model_version, metric=self.metric)

    def _score(
        self, rows: List[Dict[str, Any]], query: np.ndarray, filter: Optional[RetrievalFilter]
    ) -> List[ScoredChunk]:
        allowed = filter.document_ids if filter is not None else None
        kept, vectors = [], []
        for row in rows:
            if allowed is not None and row["document_id"] not in allowed:
                continue
            vector = decode_vector(row["vector"])
            if vector.shape[0] != query.shape[0]:
                logger.warning(
                    "embedding_dimension_skipped",
                    chunk_id=row["chunk_id"],
                    expected=query.shape[0],
                    found=vector.shape[0],
                )
                continue
            kept.append(row)
            vectors.append(vector)

        if not kept:
            return []

        scores = score_vectors(query, np.vstack(vectors), self.metric)
        return [
            ScoredChunk(
                chunk_id=row["chunk_id"],
                document_id=row["document_id"],
                position=row["position"],
                text=row["content"],
                score=float(score),
            )
            for row, score in zip(kept, scores)
        ]


def build_index(kind: str, gateway: PersistenceGateway) -> CandidateIndex:
    """Create the candidate index named by RETRIEVAL_INDEX."""
    if kind == "scan":
        return FullScanIndex(gateway)
    if kind == "faiss":
        from docrag.rag.store_faiss import FaissIndex

        return FaissIndex(gateway)
    raise ValueError(f"Unknown retrieval index {kind!r}, expected 'scan' or 'faiss'")
