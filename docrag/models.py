"""Domain objects passed between the pipeline, retriever and orchestrator."""
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Document:
    """A source document submitted for ingestion."""

    document_id: str
    content: str
    title: Optional[str] = None
    origin: Optional[str] = None
    version: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        """SHA-256 of the content; decides whether re-ingestion is a no-op."""
        data = self.content
        if isinstance(data, str):
            data = data.encode("utf-8", errors="surrogatepass")
        return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class Chunk:
    """A bounded, ordered slice of a document's text."""

    document_id: str
    position: int
    text: str
    char_start: int
    char_end: int


@dataclass(frozen=True)
class EmbeddingVector:
    """A vector plus the model version that produced it."""

    values: Tuple[float, ...]
    model_version: str

    @property
    def dimension(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class RetrievalFilter:
    """Restricts retrieval candidates before scoring."""

    document_ids: Optional[frozenset] = None

    @classmethod
    def for_documents(cls, document_ids: Sequence[str]) -> "RetrievalFilter":
        return cls(document_ids=frozenset(document_ids))


@dataclass(frozen=True)
class ScoredChunk:
    """A stored chunk with its similarity to the query."""

    chunk_id: int
    document_id: str
    position: int
    text: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "position": self.position,
            "text": self.text,
            "score": round(self.score, 6),
        }


@dataclass
class RetrievalResult:
    """Ordered (chunk, score) pairs for one query. Never persisted."""

    chunks: List[ScoredChunk]
    model_version: str
    metric: str

    def __iter__(self):
        return iter(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)

    def __bool__(self) -> bool:
        return bool(self.chunks)

    @property
    def chunk_ids(self) -> List[int]:
        return [c.chunk_id for c in self.chunks]


@dataclass(frozen=True)
class Citation:
    chunk_id: int
    document_id: str
    position: int
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "position": self.position,
            "score": round(self.score, 6),
        }


@dataclass
class Answer:
    """A synthesized answer with the chunks it was grounded on."""

    query: str
    text: str
    citations: List[Citation]
    chunks: List[ScoredChunk]
    answered: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "answered": True,
            "answer": self.text,
            "citations": [c.to_dict() for c in self.citations],
            "sources": [c.to_dict() for c in self.chunks],
        }


@dataclass
class PartialFailure:
    """Retrieval succeeded but no answer could be synthesized."""

    query: str
    chunks: List[ScoredChunk]
    reason: str
    error: Optional[str] = None
    answered: bool = False
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "answered": False,
            "answer": None,
            "reason": self.reason,
            "error": self.error,
            "sources": [c.to_dict() for c in self.chunks],
        }


class IngestState(str, Enum):
    RECEIVED = "received"
    CHUNKED = "chunked"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class IngestionJob:
    """Progress of one document through the ingestion state machine."""

    document_id: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: IngestState = IngestState.RECEIVED
    failed_stage: Optional[IngestState] = None
    error: Optional[str] = None
    skipped: bool = False
    chunk_count: int = 0
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def done(self) -> bool:
        return self.state in (IngestState.COMMITTED, IngestState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "state": self.state.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "skipped": self.skipped,
            "chunk_count": self.chunk_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
