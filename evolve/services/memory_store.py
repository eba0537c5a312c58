from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from evolve.config import settings
from evolve.errors import EmbeddingFailure, ParseFailure
from evolve.models.memory import MemoryCandidate, MemoryCollection, MemoryHit, MemoryItem, MemoryRecall
from evolve.services.embeddings import Embedder, OllamaEmbeddingService
from evolve.services.json_documents import lock_for, read_json, write_json_atomic
from evolve.services.similarity import comparable, cosine_similarity


class MemoryStore(Protocol):
    async def load(self) -> MemoryCollection: ...
    async def retrieve(self, query: str, k: int = 5, min_similarity: float = 0.25) -> list[MemoryHit]: ...
    async def recall(self, query: str, k: int = 5, min_similarity: float = 0.25) -> MemoryRecall: ...
    async def upsert(self, candidates: list[MemoryCandidate]) -> list[MemoryItem]: ...
    async def delete(self, item_id: int) -> bool: ...
    async def clear(self) -> None: ...
    async def stats(self) -> dict[str, Any]: ...


class JsonMemoryStore:
    """Long-term memory persisted as one ``{"longTerm": [...], "nextId": n}`` document.

    Read-modify-write cycles are serialized per file and every write replaces
    the document atomically.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        embedder: Embedder | None = None,
        duplicate_threshold: float | None = None,
    ):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._embedder: Embedder = embedder or OllamaEmbeddingService()
        self.duplicate_threshold = (
            duplicate_threshold
            if duplicate_threshold is not None
            else float(settings.memory_duplicate_threshold)
        )
        self._lock = lock_for(self.path)

    async def load(self) -> MemoryCollection:
        return await asyncio.to_thread(self._read)

    async def retrieve(
        self,
        query: str,
        k: int = 5,
        min_similarity: float = 0.25,
    ) -> list[MemoryHit]:
        """Top ``k`` hits at or above ``min_similarity``; ``[]`` when embedding fails."""
        return (await self.recall(query, k, min_similarity)).hits

    async def recall(
        self,
        query: str,
        k: int = 5,
        min_similarity: float = 0.25,
    ) -> MemoryRecall:
        if k <= 0 or not query.strip():
            return MemoryRecall()
        collection = await self.load()
        embedded = [item for item in collection.items if item.embedding]
        if not embedded:
            return MemoryRecall()

        try:
            query_vector = await self._embedder.embed_text(query)
        except EmbeddingFailure as exc:
            logger.warning(f"Memory retrieval skipped, query embedding failed: {exc}")
            return MemoryRecall(error=str(exc))

        hits: list[MemoryHit] = []
        skipped = 0
        for item in embedded:
            if not comparable(query_vector, item.embedding):
                skipped += 1
                continue
            similarity = cosine_similarity(query_vector, item.embedding)
            if similarity >= min_similarity:
                hits.append(MemoryHit(item=item, similarity=similarity))
        if skipped:
            logger.warning(f"Skipped {skipped} memory items with mismatched embedding dimensions")

        # Stable sort keeps insertion order among equal similarities.
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return MemoryRecall(hits=hits[:k])

    async def upsert(self, candidates: list[MemoryCandidate]) -> list[MemoryItem]:
        fresh = [candidate for candidate in candidates if candidate.content]
        if not fresh:
            return []

        async with self._lock:
            collection = await asyncio.to_thread(self._read)
            known = {item.content.strip().lower() for item in collection.items}
            pending: list[MemoryCandidate] = []
            for candidate in fresh:
                key = candidate.content.lower()
                if key in known:
                    continue
                known.add(key)
                pending.append(candidate)
            if not pending:
                return []

            vectors: list[list[float] | None]
            try:
                vectors = list(await self._embedder.embed_texts([c.content for c in pending]))
            except EmbeddingFailure as exc:
                logger.warning(f"Storing {len(pending)} memory items without embeddings: {exc}")
                vectors = [None] * len(pending)

            inserted: list[MemoryItem] = []
            for candidate, vector in zip(pending, vectors):
                if vector is not None and self._is_near_duplicate(vector, collection.items):
                    logger.debug(f"Suppressed near-duplicate memory: {candidate.content[:80]}")
                    continue
                item = MemoryItem(
                    id=collection.next_id,
                    content=candidate.content,
                    tags=list(candidate.tags),
                    importance=candidate.importance,
                    embedding=vector,
                    source=candidate.source,
                )
                collection.next_id += 1
                collection.items.append(item)
                inserted.append(item)

            if inserted:
                await asyncio.to_thread(self._write, collection)
            return inserted

    async def delete(self, item_id: int) -> bool:
        async with self._lock:
            collection = await asyncio.to_thread(self._read)
            remaining = [item for item in collection.items if item.id != item_id]
            if len(remaining) == len(collection.items):
                return False
            collection.items = remaining
            await asyncio.to_thread(self._write, collection)
            return True

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, MemoryCollection())

    async def stats(self) -> dict[str, Any]:
        collection = await self.load()
        return {
            "totalItems": len(collection.items),
            "retrievableItems": sum(1 for item in collection.items if item.embedding),
            "lastUpdated": collection.items[-1].timestamp if collection.items else None,
            "nextId": collection.next_id,
        }

    def _is_near_duplicate(self, vector: list[float], items: list[MemoryItem]) -> bool:
        for existing in items:
            if not comparable(vector, existing.embedding):
                continue
            if cosine_similarity(vector, existing.embedding) > self.duplicate_threshold:
                return True
        return False

    def _read(self) -> MemoryCollection:
        try:
            payload = read_json(self.path)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"Memory document {self.path} is not valid JSON") from exc
        if payload is None:
            return MemoryCollection()
        if not isinstance(payload, dict):
            raise ParseFailure(f"Memory document {self.path} must be a JSON object")
        return MemoryCollection.from_document(payload)

    def _write(self, collection: MemoryCollection) -> None:
        write_json_atomic(self.path, collection.to_document())


_store: MemoryStore | None = None


def get_memory_store() -> MemoryStore:
    global _store
    if _store is None:
        _store = JsonMemoryStore(Path(settings.data_dir) / "memory.json")
    return _store
