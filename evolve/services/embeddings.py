from __future__ import annotations

from typing import Protocol

from evolve.config import settings
from evolve.errors import EmbeddingFailure, UpstreamUnavailable
from evolve.llm_client import OllamaClient, client as llm_client


class Embedder(Protocol):
    async def embed_texts(self, texts: list[str]) -> list[list[float]]: ...
    async def embed_text(self, text: str) -> list[float]: ...


class OllamaEmbeddingService:
    """Embeddings from the generation backend; every failure is an ``EmbeddingFailure``."""

    def __init__(
        self,
        llm: OllamaClient | None = None,
        *,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self._llm = llm
        self.model = model or settings.embed_model
        self.timeout = timeout if timeout is not None else settings.embed_timeout_seconds

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        active = self._llm or llm_client()
        try:
            vectors = await active.embed(self.model, texts, timeout=self.timeout)
        except UpstreamUnavailable as exc:
            raise EmbeddingFailure(str(exc)) from exc
        if len(vectors) != len(texts):
            raise EmbeddingFailure(
                f"Expected {len(texts)} embeddings from {self.model}, got {len(vectors)}"
            )
        if any(not vector for vector in vectors):
            raise EmbeddingFailure(f"Empty embedding returned by {self.model}")
        return vectors

    async def embed_text(self, text: str) -> list[float]:
        vectors = await self.embed_texts([text])
        return vectors[0]
