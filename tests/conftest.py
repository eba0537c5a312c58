from __future__ import annotations

from typing import Any

import pytest

from evolve.errors import EmbeddingFailure
from evolve.models.search import SearchResult
from evolve.services.memory_store import JsonMemoryStore
from evolve.services.session_store import JsonSessionStore

DEFAULT_REPLIES: dict[str, Any] = {
    "analysis": "<think>The user wants a factual answer.</think>\nThe user asks a direct question.\nComplexity: medium",
    "search_decision": "no",
    "search_planning": "1. paris weather today\n2. paris weather forecast",
    "response_plan": "Answer in one short paragraph.",
    "evaluation": "Accurate and concise.\nScore: 8",
    "memory_extraction": "[]",
}


class FakeLLM:
    """Stands in for OllamaClient; replies are looked up by the ``caller`` tag."""

    def __init__(self, replies: dict[str, Any] | None = None, answer_chunks: list[str] | None = None):
        self.replies = {**DEFAULT_REPLIES, **(replies or {})}
        self.answer_chunks = answer_chunks if answer_chunks is not None else ["The answer ", "is 4."]
        self.calls: list[tuple[str, str]] = []
        self.last_messages: list[dict[str, str]] = []
        self.models: list[dict[str, Any]] | Exception = [{"name": "llama3.2:3b", "owned_by": "library"}]

    def _reply(self, caller: str) -> str:
        reply = self.replies.get(caller, "")
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def chat(self, model, messages, *, timeout=0, caller="chat"):
        self.calls.append(("chat", caller))
        return self._reply(caller)

    async def complete(self, model, prompt, *, timeout=0, caller="complete"):
        self.calls.append(("complete", caller))
        return self._reply(caller)

    async def chat_stream(self, model, messages, *, timeout=0, caller="chat_stream"):
        self.calls.append(("chat_stream", caller))
        self.last_messages = messages
        failure = self.replies.get(caller)
        if isinstance(failure, Exception):
            raise failure
        for chunk in self.answer_chunks:
            yield chunk

    async def list_models(self, *, timeout=10.0):
        if isinstance(self.models, Exception):
            raise self.models
        return self.models

    def callers(self) -> list[str]:
        return [caller for _, caller in self.calls]


class FakeEmbedder:
    """Looks vectors up by text; unknown texts map to a fixed unit vector."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, *, fail: bool = False):
        self.vectors = vectors or {}
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingFailure("embedding backend down")
        return [list(self.vectors.get(text, [1.0, 0.0, 0.0])) for text in texts]

    async def embed_text(self, text: str) -> list[float]:
        return (await self.embed_texts([text]))[0]


def make_results(prefix: str, count: int) -> list[SearchResult]:
    return [
        SearchResult(
            title=f"{prefix} result {i}",
            url=f"https://{prefix}.example.com/page-{i}",
            snippet=f"Snippet {i} about {prefix}.",
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_store(tmp_path, embedder) -> JsonMemoryStore:
    return JsonMemoryStore(tmp_path / "memory.json", embedder=embedder)


@pytest.fixture
def session_store(tmp_path) -> JsonSessionStore:
    return JsonSessionStore(tmp_path / "sessions")
