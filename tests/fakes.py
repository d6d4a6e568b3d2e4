"""Deterministic stand-ins for the embedding and generation providers."""
import asyncio
import hashlib
import re
from typing import Dict, List, Optional, Sequence

from docrag.errors import EmbeddingUnavailable
from docrag.models import EmbeddingVector

TOKEN = re.compile(r"\w+")


def bag_of_words(text: str, dimension: int) -> tuple:
    """Hashed token counts; texts sharing words get a positive cosine."""
    values = [0.0] * dimension
    for token in TOKEN.findall(text.lower()):
        slot = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimension
        values[slot] += 1.0
    return tuple(values)


class FakeEmbedder:
    """Embedding provider with switchable failures and concurrency tracking."""

    def __init__(self, dimension: int = 512, model_version: str = "fake-embed-v1", delay: float = 0.0):
        self.dimension = dimension
        self.model_version = model_version
        self.delay = delay
        self.down = False
        self.overrides: Dict[str, Sequence[float]] = {}
        # Texts containing one of these markers always fail
        self.fail_on: List[str] = []
        # marker -> failures left before texts containing it succeed
        self.flaky: Dict[str, int] = {}
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str) -> EmbeddingVector:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.down:
                raise EmbeddingUnavailable("fake provider is down")
            if any(marker in text for marker in self.fail_on):
                raise EmbeddingUnavailable("fake provider rejected the text")
            for marker, remaining in self.flaky.items():
                if marker in text and remaining > 0:
                    self.flaky[marker] = remaining - 1
                    raise EmbeddingUnavailable("fake provider hiccup")

            if text in self.overrides:
                values = tuple(float(v) for v in self.overrides[text])
            else:
                values = bag_of_words(text, self.dimension)
            return EmbeddingVector(values=values, model_version=self.model_version)
        finally:
            self.in_flight -= 1


class FakeGenerator:
    """Generation provider returning a canned reply."""

    def __init__(self, reply: str = "The sky is blue.", delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt: str, max_tokens: int, timeout: float) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply
