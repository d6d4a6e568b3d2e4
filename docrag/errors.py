"""Error taxonomy shared by the gateway, pipeline, retriever and orchestrator."""
from typing import Optional


class RagError(Exception):
    """Base class for all docrag errors."""


class StoreConnectionError(RagError, ConnectionError):
    """No connection could be acquired, or the transport was lost.

    Transient. Retried only by a top-level caller that opens a fresh
    transaction, never inside an open one.
    """


class ProcedureError(RagError):
    """A stored procedure rejected the call on a business rule."""

    def __init__(self, code: str, message: str, procedure: Optional[str] = None):
        self.code = code
        self.message = message
        self.procedure = procedure
        prefix = f"{procedure}: " if procedure else ""
        super().__init__(f"{prefix}[{code}] {message}")


class ProtocolViolation(RagError):
    """A TransactionContext or procedure was misused. Always a programming defect."""


class InvalidDocumentError(RagError, ValueError):
    """Document content is empty or unreadable."""


class InvalidQueryError(RagError, ValueError):
    """Query text or retrieval parameters are invalid."""


class EmbeddingUnavailable(RagError):
    """The embedding provider is down or returned an unusable vector."""


class GenerationUnavailable(RagError):
    """The generation provider failed or returned nothing."""


class GenerationTimeout(RagError, TimeoutError):
    """The generation provider did not answer within the allotted time."""
