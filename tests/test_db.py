"""Tests for the persistence gateway and its procedures."""
import asyncio
import sqlite3

import pytest
from pydantic import ValidationError

from docrag.db import PersistenceGateway, TxState
from docrag.errors import ProcedureError, ProtocolViolation, StoreConnectionError
from docrag.procedures import (
    DocumentKey,
    InsertChunkParams,
    InsertDocumentParams,
    InsertEmbeddingParams,
    NoParams,
)


def document_params(document_id="doc", chunk_count=1):
    return InsertDocumentParams(
        document_id=document_id,
        content_hash="abc",
        model_version="fake-embed-v1",
        chunk_count=chunk_count,
        title="Doc",
    )


async def write_document(gateway, tx, document_id="doc"):
    await gateway.execute(tx, "insert_document", document_params(document_id))
    inserted = await gateway.execute(
        tx,
        "insert_chunk",
        InsertChunkParams(document_id=document_id, position=0, text="hello", char_start=0, char_end=5),
    )
    await gateway.execute(
        tx,
        "insert_embedding",
        InsertEmbeddingParams(
            chunk_id=inserted.first()["chunk_id"], vector=[1.0, 0.0], model_version="fake-embed-v1"
        ),
    )
    await gateway.execute(tx, "verify_document", DocumentKey(document_id=document_id))


async def test_commit_persists(gateway, stored):
    tx = await gateway.begin_transaction()
    await write_document(gateway, tx)
    await gateway.commit(tx)

    assert tx.state is TxState.COMMITTED
    assert await stored("doc") == {"documents": 1, "chunks": 1, "embeddings": 1}
    assert gateway.open_transactions == 0


async def test_rollback_discards(gateway, stored):
    tx = await gateway.begin_transaction()
    await write_document(gateway, tx)
    await gateway.rollback(tx)

    assert tx.state is TxState.ROLLED_BACK
    assert await stored("doc") == {"documents": 0, "chunks": 0, "embeddings": 0}


async def test_context_resolves_only_once(gateway):
    tx = await gateway.begin_transaction()
    await gateway.commit(tx)

    with pytest.raises(ProtocolViolation):
        await gateway.commit(tx)
    with pytest.raises(ProtocolViolation):
        await gateway.rollback(tx)
    with pytest.raises(ProtocolViolation):
        await gateway.execute(tx, "get_corpus_version", NoParams())


async def test_wrong_parameter_model_is_protocol_violation(gateway):
    async with gateway.transaction() as tx:
        with pytest.raises(ProtocolViolation):
            await gateway.execute(tx, "insert_document", DocumentKey(document_id="doc"))


async def test_unknown_procedure_is_protocol_violation(gateway):
    async with gateway.transaction(readonly=True) as tx:
        with pytest.raises(ProtocolViolation):
            await gateway.execute(tx, "drop_everything", NoParams())


async def test_write_in_readonly_context_is_protocol_violation(gateway):
    async with gateway.transaction(readonly=True) as tx:
        with pytest.raises(ProtocolViolation):
            await gateway.execute(tx, "delete_document", DocumentKey(document_id="doc"))


async def test_concurrent_use_of_one_context_is_protocol_violation(gateway):
    async with gateway.transaction(readonly=True) as tx:
        first = asyncio.create_task(gateway.execute(tx, "get_corpus_version", NoParams()))
        await asyncio.sleep(0)
        with pytest.raises(ProtocolViolation):
            await gateway.execute(tx, "get_corpus_version", NoParams())
        await first


def test_parameter_models_are_strict():
    with pytest.raises(ValidationError):
        DocumentKey(document_id=7)
    with pytest.raises(ValidationError):
        DocumentKey(document_id="doc", extra="nope")
    with pytest.raises(ValidationError):
        InsertEmbeddingParams(chunk_id=1, vector=[], model_version="m")


async def test_exception_in_transaction_rolls_back(gateway, stored):
    with pytest.raises(RuntimeError):
        async with gateway.transaction() as tx:
            await write_document(gateway, tx)
            raise RuntimeError("boom")

    assert tx.state is TxState.ROLLED_BACK
    assert await stored("doc") == {"documents": 0, "chunks": 0, "embeddings": 0}
    assert gateway.pool.available == gateway.pool.size


async def test_constraint_violation_is_procedure_error(gateway):
    with pytest.raises(ProcedureError) as excinfo:
        async with gateway.transaction() as tx:
            await gateway.execute(
                tx,
                "insert_chunk",
                InsertChunkParams(
                    document_id="missing", position=0, text="x", char_start=0, char_end=1
                ),
            )
    assert excinfo.value.code == "constraint_violation"


async def test_verify_rejects_chunk_without_embedding(gateway, stored):
    with pytest.raises(ProcedureError) as excinfo:
        async with gateway.transaction() as tx:
            await gateway.execute(tx, "insert_document", document_params())
            await gateway.execute(
                tx,
                "insert_chunk",
                InsertChunkParams(document_id="doc", position=0, text="x", char_start=0, char_end=1),
            )
            await gateway.execute(tx, "verify_document", DocumentKey(document_id="doc"))

    assert excinfo.value.code == "missing_embedding"
    assert (await stored("doc"))["chunks"] == 0


async def test_empty_document_is_rejected(gateway):
    with pytest.raises(ProcedureError) as excinfo:
        async with gateway.transaction() as tx:
            await gateway.execute(tx, "insert_document", document_params(chunk_count=0))
    assert excinfo.value.code == "empty_document"


async def test_delete_cascades(gateway, stored):
    async with gateway.transaction() as tx:
        await write_document(gateway, tx)
    async with gateway.transaction() as tx:
        result = await gateway.execute(tx, "delete_document", DocumentKey(document_id="doc"))

    assert result.rowcount == 1
    assert await stored("doc") == {"documents": 0, "chunks": 0, "embeddings": 0}


async def test_writes_bump_corpus_version(gateway):
    async def version():
        async with gateway.transaction(readonly=True) as tx:
            return (await gateway.execute(tx, "get_corpus_version", NoParams())).first()["version"]

    before = await version()
    async with gateway.transaction() as tx:
        await write_document(gateway, tx)
    assert await version() > before


async def test_pool_exhaustion_raises_connection_error(tmp_path):
    gateway = PersistenceGateway(
        db_path=tmp_path / "pool.sqlite", pool_size=1, acquire_timeout=0.05, strict=True
    )
    await gateway.open()
    try:
        tx = await gateway.begin_transaction(readonly=True)
        with pytest.raises(StoreConnectionError):
            await gateway.begin_transaction(readonly=True)
        await gateway.rollback(tx)

        # The released connection is usable again
        async with gateway.transaction(readonly=True) as tx:
            await gateway.execute(tx, "get_corpus_version", NoParams())
    finally:
        await gateway.close()


async def test_discarded_connection_frees_its_slot_for_waiters(tmp_path):
    db_path = tmp_path / "busy.sqlite"
    gateway = PersistenceGateway(
        db_path=db_path, pool_size=1, acquire_timeout=2.0, procedure_timeout=0.2, strict=True
    )
    await gateway.open()
    blocker = sqlite3.connect(db_path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        writer = asyncio.create_task(gateway.begin_transaction())
        await asyncio.sleep(0.05)
        reader = asyncio.create_task(gateway.begin_transaction(readonly=True))

        with pytest.raises(StoreConnectionError):
            await writer

        loop = asyncio.get_running_loop()
        started = loop.time()
        tx = await reader
        assert loop.time() - started < 1.0
        await gateway.rollback(tx)
        assert gateway.pool.available == 1
    finally:
        blocker.rollback()
        blocker.close()
        await gateway.close()


async def test_leaked_context_fails_loudly_in_strict_mode(tmp_path):
    gateway = PersistenceGateway(db_path=tmp_path / "leak.sqlite", strict=True)
    await gateway.open()
    tx = await gateway.begin_transaction()

    with pytest.raises(ProtocolViolation):
        await gateway.close()
    assert tx.state is TxState.ROLLED_BACK


async def test_leaked_context_is_rolled_back_quietly_when_not_strict(tmp_path):
    gateway = PersistenceGateway(db_path=tmp_path / "leak.sqlite", strict=False)
    await gateway.open()
    tx = await gateway.begin_transaction()

    await gateway.close()
    assert tx.state is TxState.ROLLED_BACK


async def test_cancellation_rolls_back(gateway, stored):
    started = asyncio.Event()

    async def writer():
        async with gateway.transaction() as tx:
            await write_document(gateway, tx)
            started.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(writer())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert gateway.open_transactions == 0
    assert await stored("doc") == {"documents": 0, "chunks": 0, "embeddings": 0}
