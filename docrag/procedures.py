"""Stored procedures executed through the persistence gateway.

Each procedure is registered under a name together with the pydantic model
its parameters must be passed as. The gateway refuses any call whose
parameter object is not an instance of the registered model, so a mistyped
field is caught at the call site instead of at the database boundary.

Procedure bodies run on a worker thread inside an already open transaction.
They never commit, roll back or retry.
"""
import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, field_validator

from docrag.errors import ProcedureError
from docrag.models import utcnow


SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    model_version TEXT NOT NULL,
    title TEXT,
    origin TEXT,
    version TEXT,
    metadata_json TEXT,
    chunk_count INTEGER NOT NULL,
    ingested_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    content TEXT NOT NULL,
    char_start INTEGER NOT NULL,
    char_end INTEGER NOT NULL,
    UNIQUE(document_id, position)
);

CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id);

CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id INTEGER PRIMARY KEY REFERENCES chunks(id) ON DELETE CASCADE,
    vector BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    model_version TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_embeddings_model_version ON embeddings(model_version);

CREATE TABLE IF NOT EXISTS query_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query_text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    chunk_ids_json TEXT NOT NULL,
    answer TEXT,
    answered INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS corpus_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version INTEGER NOT NULL
);

INSERT OR IGNORE INTO corpus_state (id, version) VALUES (1, 0);
"""


@dataclass
class ProcedureResult:
    """Rows returned by a procedure, or the number of rows it affected."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


class ProcedureParams(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class NoParams(ProcedureParams):
    pass


class DocumentKey(ProcedureParams):
    document_id: StrictStr


class InsertDocumentParams(ProcedureParams):
    document_id: StrictStr
    content_hash: StrictStr
    model_version: StrictStr
    chunk_count: StrictInt
    title: Optional[str] = None
    origin: Optional[str] = None
    version: Optional[str] = None
    metadata: Dict[str, Any] = {}


class InsertChunkParams(ProcedureParams):
    document_id: StrictStr
    position: StrictInt
    text: StrictStr
    char_start: StrictInt
    char_end: StrictInt


class InsertEmbeddingParams(ProcedureParams):
    chunk_id: StrictInt
    vector: List[float]
    model_version: StrictStr

    @field_validator("vector")
    @classmethod
    def _not_empty(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("vector must not be empty")
        return value


class EmbeddingScanParams(ProcedureParams):
    model_version: StrictStr
    document_ids: Optional[List[StrictStr]] = None


class ChunkIdsParams(ProcedureParams):
    chunk_ids: List[StrictInt]


class ListDocumentsParams(ProcedureParams):
    limit: StrictInt = 100


class QueryRecordParams(ProcedureParams):
    query_text: StrictStr
    chunk_ids: List[StrictInt]
    answer: Optional[str] = None
    answered: bool


def encode_vector(values) -> bytes:
    return np.asarray(values, dtype=np.float32).tobytes()


def decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _rows(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    return [dict(row) for row in cursor.fetchall()]


def _bump_corpus_version(conn: sqlite3.Connection) -> None:
    conn.execute("UPDATE corpus_state SET version = version + 1 WHERE id = 1")


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


# Procedure bodies


def _get_document(conn: sqlite3.Connection, p: DocumentKey) -> ProcedureResult:
    cursor = conn.execute(
        """
        SELECT id, content_hash, model_version, title, origin, version,
               metadata_json, chunk_count, ingested_at
        FROM documents
        WHERE id = ?
        """,
        (p.document_id,),
    )
    return ProcedureResult(rows=_rows(cursor))


def _insert_document(conn: sqlite3.Connection, p: InsertDocumentParams) -> ProcedureResult:
    if p.chunk_count < 1:
        raise ProcedureError("empty_document", "a document needs at least one chunk")
    cursor = conn.execute(
        """
        INSERT INTO documents (
            id, content_hash, model_version, title, origin, version,
            metadata_json, chunk_count, ingested_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            p.document_id,
            p.content_hash,
            p.model_version,
            p.title,
            p.origin,
            p.version,
            json.dumps(p.metadata) if p.metadata else None,
            p.chunk_count,
            utcnow(),
        ),
    )
    _bump_corpus_version(conn)
    return ProcedureResult(rowcount=cursor.rowcount)


def _delete_document(conn: sqlite3.Connection, p: DocumentKey) -> ProcedureResult:
    cursor = conn.execute("DELETE FROM documents WHERE id = ?", (p.document_id,))
    if cursor.rowcount:
        _bump_corpus_version(conn)
    return ProcedureResult(rowcount=cursor.rowcount)


def _insert_chunk(conn: sqlite3.Connection, p: InsertChunkParams) -> ProcedureResult:
    if p.char_end < p.char_start:
        raise ProcedureError("invalid_span", f"char_end {p.char_end} < char_start {p.char_start}")
    cursor = conn.execute(
        """
        INSERT INTO chunks (document_id, position, content, char_start, char_end)
        VALUES (?, ?, ?, ?, ?)
        """,
        (p.document_id, p.position, p.text, p.char_start, p.char_end),
    )
    return ProcedureResult(rows=[{"chunk_id": cursor.lastrowid}], rowcount=cursor.rowcount)


def _insert_embedding(conn: sqlite3.Connection, p: InsertEmbeddingParams) -> ProcedureResult:
    cursor = conn.execute(
        """
        INSERT INTO embeddings (chunk_id, vector, dimension, model_version)
        VALUES (?, ?, ?, ?)
        """,
        (p.chunk_id, encode_vector(p.vector), len(p.vector), p.model_version),
    )
    return ProcedureResult(rowcount=cursor.rowcount)


def _verify_document(conn: sqlite3.Connection, p: DocumentKey) -> ProcedureResult:
    row = conn.execute(
        """
        SELECT d.chunk_count AS expected,
               COUNT(c.id) AS chunks,
               COUNT(e.chunk_id) AS embeddings,
               COUNT(DISTINCT e.dimension) AS dimensions
        FROM documents d
        LEFT JOIN chunks c ON c.document_id = d.id
        LEFT JOIN embeddings e ON e.chunk_id = c.id
        WHERE d.id = ?
        GROUP BY d.id
        """,
        (p.document_id,),
    ).fetchone()
    if row is None:
        raise ProcedureError("missing_document", f"document {p.document_id!r} not found")
    if row["chunks"] != row["expected"]:
        raise ProcedureError(
            "chunk_count_mismatch",
            f"expected {row['expected']} chunks, found {row['chunks']}",
        )
    if row["embeddings"] != row["chunks"]:
        raise ProcedureError(
            "missing_embedding",
            f"{row['chunks'] - row['embeddings']} chunk(s) have no embedding",
        )
    if row["dimensions"] > 1:
        raise ProcedureError("dimension_mismatch", "embeddings differ in dimension")
    return ProcedureResult(rows=[dict(row)])


def _scan_embeddings(conn: sqlite3.Connection, p: EmbeddingScanParams) -> ProcedureResult:
    sql = """
        SELECT c.id AS chunk_id, c.document_id, c.position, c.content, e.vector
        FROM embeddings e
        JOIN chunks c ON c.id = e.chunk_id
        WHERE e.model_version = ?
    """
    args: List[Any] = [p.model_version]
    if p.document_ids is not None:
        if not p.document_ids:
            return ProcedureResult()
        sql += f" AND c.document_id IN ({_placeholders(len(p.document_ids))})"
        args.extend(p.document_ids)
    sql += " ORDER BY c.id"
    return ProcedureResult(rows=_rows(conn.execute(sql, args)))


def _get_chunks(conn: sqlite3.Connection, p: ChunkIdsParams) -> ProcedureResult:
    if not p.chunk_ids:
        return ProcedureResult()
    cursor = conn.execute(
        f"""
        SELECT c.id AS chunk_id, c.document_id, c.position, c.content, e.vector
        FROM chunks c
        JOIN embeddings e ON e.chunk_id = c.id
        WHERE c.id IN ({_placeholders(len(p.chunk_ids))})
        ORDER BY c.id
        """,
        p.chunk_ids,
    )
    return ProcedureResult(rows=_rows(cursor))


def _get_corpus_version(conn: sqlite3.Connection, p: NoParams) -> ProcedureResult:
    cursor = conn.execute("SELECT version FROM corpus_state WHERE id = 1")
    return ProcedureResult(rows=_rows(cursor))


def _document_stats(conn: sqlite3.Connection, p: DocumentKey) -> ProcedureResult:
    row = conn.execute(
        """
        SELECT
            (SELECT COUNT(*) FROM documents WHERE id = :doc) AS documents,
            (SELECT COUNT(*) FROM chunks WHERE document_id = :doc) AS chunks,
            (SELECT COUNT(*) FROM embeddings e JOIN chunks c ON c.id = e.chunk_id
              WHERE c.document_id = :doc) AS embeddings
        """,
        {"doc": p.document_id},
    ).fetchone()
    return ProcedureResult(rows=[dict(row)])


def _list_documents(conn: sqlite3.Connection, p: ListDocumentsParams) -> ProcedureResult:
    cursor = conn.execute(
        """
        SELECT id, content_hash, model_version, title, origin, version,
               chunk_count, ingested_at
        FROM documents
        ORDER BY ingested_at DESC, id
        LIMIT ?
        """,
        (p.limit,),
    )
    return ProcedureResult(rows=_rows(cursor))


def _insert_query_record(conn: sqlite3.Connection, p: QueryRecordParams) -> ProcedureResult:
    cursor = conn.execute(
        """
        INSERT INTO query_records (query_text, created_at, chunk_ids_json, answer, answered)
        VALUES (?, ?, ?, ?, ?)
        """,
        (p.query_text, utcnow(), json.dumps(p.chunk_ids), p.answer, int(p.answered)),
    )
    return ProcedureResult(rows=[{"record_id": cursor.lastrowid}], rowcount=cursor.rowcount)


@dataclass(frozen=True)
class Procedure:
    name: str
    params: type
    body: Callable[[sqlite3.Connection, Any], ProcedureResult]
    writes: bool


PROCEDURES: Dict[str, Procedure] = {
    proc.name: proc
    for proc in (
        Procedure("get_document", DocumentKey, _get_document, writes=False),
        Procedure("insert_document", InsertDocumentParams, _insert_document, writes=True),
        Procedure("delete_document", DocumentKey, _delete_document, writes=True),
        Procedure("insert_chunk", InsertChunkParams, _insert_chunk, writes=True),
        Procedure("insert_embedding", InsertEmbeddingParams, _insert_embedding, writes=True),
        Procedure("verify_document", DocumentKey, _verify_document, writes=False),
        Procedure("scan_embeddings", EmbeddingScanParams, _scan_embeddings, writes=False),
        Procedure("get_chunks", ChunkIdsParams, _get_chunks, writes=False),
        Procedure("get_corpus_version", NoParams, _get_corpus_version, writes=False),
        Procedure("document_stats", DocumentKey, _document_stats, writes=False),
        Procedure("list_documents", ListDocumentsParams, _list_documents, writes=False),
        Procedure("insert_query_record", QueryRecordParams, _insert_query_record, writes=True),
    )
}
