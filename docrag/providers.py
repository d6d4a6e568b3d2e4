"""Capability interfaces for the external models, and their Ollama implementations.

The pipeline, retriever and orchestrator depend only on the two protocols
below. Transport and decoding errors are translated into the docrag error
taxonomy here, at the provider boundary.
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
import structlog

from docrag import config
from docrag.errors import EmbeddingUnavailable, GenerationTimeout, GenerationUnavailable
from docrag.models import EmbeddingVector

logger = structlog.get_logger()


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Maps text to a fixed-length vector tagged with the model version."""

    model_version: str

    async def embed(self, text: str) -> EmbeddingVector: ...


@runtime_checkable
class GenerationProvider(Protocol):
    """Maps a prompt to a natural-language answer."""

    async def generate(self, prompt: str, max_tokens: int, timeout: float) -> str: ...


class OllamaProvider:
    """Shared HTTP plumbing for the Ollama-backed providers."""

    def __init__(self, model: str, base_url: Optional[str] = None):
        self.model = model
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """POST ``payload`` and return the decoded JSON object.

        Raises:
            httpx.HTTPError: Transport failure, timeout or error status
            ValueError: The body is not a JSON object
        """
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected response body from {path}: {type(data).__name__}")
        return data

    async def list_models(self) -> List[str]:
        """Names of the models installed on the Ollama server."""
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
            return [m["name"] for m in response.json().get("models", [])]


class OllamaEmbeddingProvider(OllamaProvider):
    """Embeddings served by a local Ollama instance."""

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        super().__init__(model or config.EMBEDDING_MODEL, base_url)
        self.timeout = timeout or config.EMBED_TIMEOUT

    @property
    def model_version(self) -> str:
        return f"ollama:{self.model}"

    async def embed(self, text: str) -> EmbeddingVector:
        logger.debug("ollama_embedding_request", model=self.model, text_length=len(text))
        try:
            data = await self._post(
                "/api/embeddings", {"model": self.model, "prompt": text}, self.timeout
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("ollama_embedding_error", error=str(e), error_type=type(e).__name__)
            raise EmbeddingUnavailable(f"embedding request failed: {e}") from e

        embedding = data.get("embedding") or []
        if not embedding:
            raise EmbeddingUnavailable("Empty embedding returned from Ollama")

        return EmbeddingVector(
            values=tuple(float(v) for v in embedding),
            model_version=self.model_version,
        )


SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions from a document collection. "
    "Answer only from the provided context. If the context does not contain the "
    "answer, say that you don't know. Cite sources by their [Source n] label."
)


class OllamaGenerationProvider(OllamaProvider):
    """Answers generated by an Ollama chat model."""

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None,
                 temperature: float = 0.2):
        super().__init__(model or config.CHAT_MODEL, base_url)
        self.temperature = temperature

    async def generate(self, prompt: str, max_tokens: int, timeout: float) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": max_tokens},
        }

        logger.info("ollama_chat_request", model=self.model, prompt_length=len(prompt))
        try:
            data = await self._post("/api/chat", payload, timeout)
        except httpx.TimeoutException as e:
            logger.error("ollama_chat_timeout", model=self.model, timeout=timeout)
            raise GenerationTimeout(f"generation exceeded {timeout}s") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("ollama_chat_error", error=str(e), error_type=type(e).__name__)
            raise GenerationUnavailable(f"generation request failed: {e}") from e

        message = data.get("message") or {}
        text = message.get("content", "") if isinstance(message, dict) else ""
        if not text.strip():
            logger.error("empty_ollama_response", model=self.model)
            raise GenerationUnavailable("Empty response from LLM")

        logger.info("ollama_chat_response", model=self.model, response_length=len(text))
        return text
