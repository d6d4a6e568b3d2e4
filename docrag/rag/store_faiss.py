"""FAISS candidate index over the stored embeddings.

Handles:
- Building an in-memory index from the gateway's embedding rows
- Rebuilding when the corpus version, model version or metric changes
- Proposing the top-k candidates plus every vector tied with the k-th

The gateway stays the source of truth: candidates are hydrated and rescored
by the retriever, so FAISS only narrows the set.
"""
import asyncio
from typing import Any, Dict, List, Optional

import faiss
import numpy as np
import structlog

from docrag.db import PersistenceGateway, TransactionContext
from docrag.models import RetrievalFilter
from docrag.procedures import ChunkIdsParams, EmbeddingScanParams, NoParams, decode_vector
from docrag.rag.retriever import FullScanIndex

logger = structlog.get_logger()

# Slack around the k-th score so float32 rounding never drops a tie
TIE_TOLERANCE = 1e-4


def _normalized(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    out = np.zeros_like(vectors)
    np.divide(vectors, norms, out=out, where=norms > 0)
    return out


class FaissIndex:
    """FAISS-backed candidate index, rebuilt lazily from the store."""

    name = "faiss"

    def __init__(self, gateway: PersistenceGateway):
        self.gateway = gateway
        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None
        self.corpus_version: Optional[int] = None
        self.model_version: Optional[str] = None
        self.metric: Optional[str] = None
        self._scan = FullScanIndex(gateway)
        self._lock = asyncio.Lock()

    async def candidates(
        self,
        tx: TransactionContext,
        query: np.ndarray,
        model_version: str,
        top_k: int,
        metric: str,
        filter: Optional[RetrievalFilter],
    ) -> List[Dict[str, Any]]:
        if filter is not None and filter.document_ids is not None:
            return await self._scan.candidates(tx, query, model_version, top_k, metric, filter)

        async with self._lock:
            await self._ensure_current(tx, model_version, metric)
            if self.index is None or self.index.ntotal == 0:
                return []
            if query.shape[0] != self.dimension:
                logger.warning(
                    "faiss_query_dimension_mismatch",
                    expected=self.dimension,
                    found=query.shape[0],
                )
                return []
            chunk_ids = self._search(query, top_k, metric)

        result = await self.gateway.execute(
            tx, "get_chunks", ChunkIdsParams(chunk_ids=sorted(chunk_ids))
        )
        return result.rows

    async def _ensure_current(self, tx, model_version: str, metric: str) -> None:
        state = await self.gateway.execute(tx, "get_corpus_version", NoParams())
        version = state.first()["version"]
        if (
            self.index is not None
            and version == self.corpus_version
            and model_version == self.model_version
            and metric == self.metric
        ):
            return

        result = await self.gateway.execute(
            tx, "scan_embeddings", EmbeddingScanParams(model_version=model_version)
        )
        self._build(result.rows, metric)
        self.corpus_version = version
        self.model_version = model_version
        self.metric = metric

        logger.info(
            "faiss_index_rebuilt",
            corpus_version=version,
            model_version=model_version,
            metric=metric,
            vector_count=self.index.ntotal if self.index is not None else 0,
        )

    def _build(self, rows: List[Dict[str, Any]], metric: str) -> None:
        if not rows:
            self.index = None
            self.dimension = None
            return

        vectors = [decode_vector(row["vector"]) for row in rows]
        dimension = vectors[0].shape[0]
        keep = [i for i, v in enumerate(vectors) if v.shape[0] == dimension]
        if len(keep) != len(rows):
            logger.warning("faiss_dimension_mismatch_skipped", skipped=len(rows) - len(keep))

        matrix = np.vstack([vectors[i] for i in keep]).astype(np.float32)
        ids = np.array([rows[i]["chunk_id"] for i in keep], dtype=np.int64)
        if metric == "cosine":
            matrix = _normalized(matrix)

        # IndexFlatL2 for l2, inner product otherwise (exact search, fine for <100k vectors)
        flat = faiss.IndexFlatL2(dimension) if metric == "l2" else faiss.IndexFlatIP(dimension)
        index = faiss.IndexIDMap(flat)
        index.add_with_ids(matrix, ids)

        self.index = index
        self.dimension = dimension

    def _search(self, query: np.ndarray, top_k: int, metric: str) -> List[int]:
        """Top-k ids plus everything scoring within tolerance of the k-th."""
        vector = np.asarray(query, dtype=np.float32).reshape(1, -1)
        if metric == "cosine":
            vector = _normalized(vector)

        k = min(top_k, self.index.ntotal)
        distances, ids = self.index.search(vector, k)
        found = {int(i) for i in ids[0] if i >= 0}

        boundary = float(distances[0][k - 1])
        slack = TIE_TOLERANCE * max(1.0, abs(boundary))
        if metric == "l2":
            # IndexFlatL2 reports squared distances; range_search keeps d < radius
            radius = boundary + slack
        else:
            # Inner-product range_search keeps similarity > radius
            radius = boundary - slack
        _, _, tied = self.index.range_search(vector, radius)
        found.update(int(i) for i in tied)

        logger.debug("faiss_search_completed", top_k=top_k, candidates=len(found))
        return list(found)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "initialized": self.index is not None,
            "vector_count": self.index.ntotal if self.index is not None else 0,
            "dimension": self.dimension,
            "corpus_version": self.corpus_version,
            "model_version": self.model_version,
            "metric": self.metric,
        }
