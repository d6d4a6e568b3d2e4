"""Text chunking with overlap for RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Boundaries are chosen paragraph first, then sentence, then a hard cut, and
every chunk is an exact slice of the source text so identical input always
yields identical chunks.
"""
import re
from typing import List, Optional, Tuple

import structlog

from docrag import config
from docrag.errors import InvalidDocumentError
from docrag.models import Chunk, Document

logger = structlog.get_logger()

Span = Tuple[int, int]

PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")

# Split levels, coarsest first; None means a hard character cut
_LEVELS = (PARAGRAPH_BREAK, SENTENCE_BREAK, None)


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum fresh characters per chunk (default from config)
            chunk_overlap: Characters repeated from the preceding text (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        # Validate parameters
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

    def chunk(self, document: Document) -> List[Chunk]:
        """Split a document into ordered, overlapping chunks.

        Raises:
            InvalidDocumentError: If the content is empty or unreadable
        """
        text = self._readable_text(document)
        spans = self.split_spans(text)

        chunks = [
            Chunk(
                document_id=document.document_id,
                position=position,
                text=text[start:end],
                char_start=start,
                char_end=end,
            )
            for position, (start, end) in enumerate(spans)
        ]

        logger.debug(
            "document_chunked",
            document_id=document.document_id,
            text_length=len(text),
            chunk_count=len(chunks),
        )
        return chunks

    def split_spans(self, text: str) -> List[Span]:
        """Return the (start, end) span of every chunk, overlap included."""
        if len(text) <= self.chunk_size:
            return [(0, len(text))]

        units = self._units(text, 0, len(text), level=0)
        fresh = self._pack(text, units)

        spans = []
        previous_start = 0
        for index, (start, end) in enumerate(fresh):
            if index:
                start = max(previous_start, start - self.chunk_overlap)
            spans.append((start, end))
            previous_start = fresh[index][0]
        return spans

    def _readable_text(self, document: Document) -> str:
        content = document.content
        if isinstance(content, (bytes, bytearray)):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidDocumentError(
                    f"document {document.document_id!r} is not valid UTF-8"
                ) from e
        if not isinstance(content, str):
            raise InvalidDocumentError(
                f"document {document.document_id!r} content is {type(content).__name__}, not text"
            )
        if "\x00" in content:
            raise InvalidDocumentError(f"document {document.document_id!r} contains binary data")
        if not content.strip():
            raise InvalidDocumentError(f"document {document.document_id!r} is empty")
        return content

    def _units(self, text: str, start: int, end: int, level: int) -> List[Span]:
        """Break text[start:end] into contiguous units no longer than chunk_size."""
        if end - start <= self.chunk_size:
            return [(start, end)]

        pattern = _LEVELS[level]
        if pattern is None:
            return self._hard_cut(start, end)

        pieces = self._split_at(pattern, text, start, end)
        units: List[Span] = []
        for piece_start, piece_end in pieces:
            units.extend(self._units(text, piece_start, piece_end, level + 1))
        return units

    def _split_at(self, pattern: re.Pattern, text: str, start: int, end: int) -> List[Span]:
        """Split at pattern matches; separators stay with the preceding piece."""
        pieces = []
        cursor = start
        for match in pattern.finditer(text, start, end):
            if match.end() > cursor and match.end() < end:
                pieces.append((cursor, match.end()))
                cursor = match.end()
        pieces.append((cursor, end))
        return pieces

    def _hard_cut(self, start: int, end: int) -> List[Span]:
        cuts = [
            (offset, min(offset + self.chunk_size, end))
            for offset in range(start, end, self.chunk_size)
        ]
        # A tail no longer than the overlap would add almost nothing new
        if len(cuts) > 1 and cuts[-1][1] - cuts[-1][0] <= self.chunk_overlap:
            tail = cuts.pop()
            cuts[-1] = (cuts[-1][0], tail[1])
        return cuts

    def _pack(self, text: str, units: List[Span]) -> List[Span]:
        """Greedily merge adjacent units while they fit in one chunk."""
        packed: List[Span] = []
        current: Optional[Span] = None

        for start, end in units:
            if current is None:
                current = (start, end)
            elif end - current[0] <= self.chunk_size or not text[start:end].strip():
                current = (current[0], end)
            else:
                packed.append(current)
                current = (start, end)

        if current is not None:
            packed.append(current)
        return packed

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunk(document: Document, max_length: int, overlap: int) -> List[Chunk]:
    """Chunk a document with explicit bounds (convenience function)."""
    return TextChunker(chunk_size=max_length, chunk_overlap=overlap).chunk(document)
