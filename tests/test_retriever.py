"""Tests for scoring, ranking and the candidate indexes."""
import numpy as np
import pytest

from docrag.errors import InvalidQueryError
from docrag.models import Document, EmbeddingVector, RetrievalFilter
from docrag.rag.retriever import Retriever, build_index, score_vectors

CORPUS = {
    "sky": "The sky is blue on a clear day.",
    "water": "Water boils at one hundred degrees.",
    "grass": "Grass is green and the sky is wide.",
    "fire": "Fire is hot and bright.",
}


async def ingest_corpus(pipeline, corpus=CORPUS):
    for document_id, content in corpus.items():
        await pipeline.ingest(Document(document_id=document_id, content=content))


def test_cosine_scores():
    vectors = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0], [0.0, 0.0]])
    scores = score_vectors(np.array([1.0, 0.0]), vectors, "cosine")

    assert scores[0] == pytest.approx(1.0)
    assert scores[1] == pytest.approx(0.0)
    assert scores[2] == pytest.approx(1 / np.sqrt(2))
    assert scores[3] == 0.0


def test_zero_query_scores_zero_under_cosine():
    scores = score_vectors(np.zeros(2), np.array([[1.0, 2.0]]), "cosine")
    assert scores.tolist() == [0.0]


def test_dot_and_l2_scores():
    vectors = np.array([[1.0, 2.0], [3.0, 4.0]])
    query = np.array([1.0, 1.0])

    assert score_vectors(query, vectors, "dot").tolist() == [3.0, 7.0]
    assert score_vectors(query, vectors, "l2") == pytest.approx([-1.0, -np.sqrt(13)])


async def test_unknown_metric(gateway):
    with pytest.raises(ValueError):
        Retriever(gateway, metric="manhattan")
    with pytest.raises(ValueError):
        build_index("annoy", gateway)


async def test_empty_corpus_returns_nothing(gateway, embedder):
    retriever = Retriever(gateway)
    result = await retriever.retrieve(await embedder.embed("anything"), top_k=5)

    assert len(result) == 0
    assert not result


async def test_top_k_larger_than_corpus_returns_all(gateway, pipeline, embedder):
    await ingest_corpus(pipeline)
    result = await Retriever(gateway).retrieve(await embedder.embed("sky"), top_k=100)

    assert len(result) == len(CORPUS)


async def test_ranking_is_deterministic_and_non_increasing(gateway, pipeline, embedder):
    await ingest_corpus(pipeline)
    retriever = Retriever(gateway)
    query = await embedder.embed("Is the sky blue?")

    first = await retriever.retrieve(query, top_k=4)
    second = await retriever.retrieve(query, top_k=4)

    assert first.chunk_ids == second.chunk_ids
    scores = [c.score for c in first]
    assert scores == sorted(scores, reverse=True)
    assert first.chunks[0].document_id == "sky"


@pytest.mark.parametrize("top_k", [0, -1, 1.5, True, "3"])
async def test_invalid_top_k(gateway, embedder, top_k):
    with pytest.raises(InvalidQueryError):
        await Retriever(gateway).retrieve(await embedder.embed("sky"), top_k=top_k)


async def test_filter_restricts_candidates(gateway, pipeline, embedder):
    await ingest_corpus(pipeline)
    result = await Retriever(gateway).retrieve(
        await embedder.embed("sky"),
        top_k=10,
        filter=RetrievalFilter.for_documents(["water", "fire"]),
    )

    assert {c.document_id for c in result} == {"water", "fire"}


async def test_empty_filter_returns_nothing(gateway, pipeline, embedder):
    await ingest_corpus(pipeline)
    result = await Retriever(gateway).retrieve(
        await embedder.embed("sky"), top_k=10, filter=RetrievalFilter.for_documents([])
    )
    assert len(result) == 0


async def test_other_model_versions_are_ignored(gateway, pipeline):
    await ingest_corpus(pipeline)
    query = EmbeddingVector(values=(1.0,) * 512, model_version="another-model")

    result = await Retriever(gateway).retrieve(query, top_k=10)
    assert len(result) == 0


async def test_ties_prefer_most_recent_chunk(gateway, pipeline, embedder):
    await ingest_corpus(pipeline, {"older": "identical words", "newer": "identical words"})

    result = await Retriever(gateway).retrieve(await embedder.embed("identical"), top_k=2)

    assert result.chunks[0].score == result.chunks[1].score
    assert [c.document_id for c in result] == ["newer", "older"]


@pytest.mark.parametrize("metric", ["cosine", "dot", "l2"])
async def test_faiss_index_ranks_like_full_scan(gateway, pipeline, embedder, metric):
    pytest.importorskip("faiss")
    corpus = dict(CORPUS, twin="identical words", twin2="identical words", twin3="identical words")
    await ingest_corpus(pipeline, corpus)

    scan = Retriever(gateway, metric=metric, index=build_index("scan", gateway))
    faiss_retriever = Retriever(gateway, metric=metric, index=build_index("faiss", gateway))

    for text in ["sky", "Is the sky blue?", "identical", "hot fire", "nothing matches"]:
        query = await embedder.embed(text)
        for top_k in (1, 2, 3, 10):
            expected = await scan.retrieve(query, top_k=top_k)
            actual = await faiss_retriever.retrieve(query, top_k=top_k)
            assert actual.chunk_ids == expected.chunk_ids, (text, top_k)


async def test_faiss_index_rebuilds_after_writes(gateway, pipeline, embedder):
    pytest.importorskip("faiss")
    index = build_index("faiss", gateway)
    retriever = Retriever(gateway, index=index)
    query = await embedder.embed("volcano")

    await ingest_corpus(pipeline)
    before = await retriever.retrieve(query, top_k=1)
    version = index.corpus_version

    await pipeline.ingest(Document(document_id="volcano", content="A volcano erupts."))
    after = await retriever.retrieve(query, top_k=1)

    assert before.chunks[0].document_id != "volcano"
    assert after.chunks[0].document_id == "volcano"
    assert index.corpus_version > version
    assert index.get_stats()["vector_count"] == len(CORPUS) + 1


async def test_faiss_index_uses_scan_for_filters(gateway, pipeline, embedder):
    pytest.importorskip("faiss")
    await ingest_corpus(pipeline)
    index = build_index("faiss", gateway)

    result = await Retriever(gateway, index=index).retrieve(
        await embedder.embed("sky"), top_k=5, filter=RetrievalFilter.for_documents(["fire"])
    )

    assert [c.document_id for c in result] == ["fire"]
    assert index.index is None
