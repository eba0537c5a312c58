from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unique_tags(tags: Any) -> list[str]:
    if not isinstance(tags, (list, tuple, set)):
        return []
    seen: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        value = tag.strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


def _clamp_importance(value: Any, default: float = 0.5) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, 0.0), 1.0)


@dataclass(slots=True)
class MemoryItem:
    id: int
    content: str
    tags: list[str] = field(default_factory=list)
    importance: float = 0.5
    embedding: list[float] | None = None
    timestamp: str = field(default_factory=_utc_now)
    source: str = "conversation"

    @property
    def retrievable(self) -> bool:
        return bool(self.embedding)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tags": list(self.tags),
            "importance": self.importance,
            "embedding": self.embedding,
            "addedAt": self.timestamp,
            "source": self.source,
        }

    def to_public_dict(self) -> dict[str, Any]:
        data = self.to_dict()
        data.pop("embedding")
        data["retrievable"] = self.retrievable
        return data

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MemoryItem":
        embedding = payload.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            embedding = None
        else:
            embedding = [float(v) for v in embedding]
        return cls(
            id=int(payload["id"]),
            content=str(payload.get("content", "")),
            tags=_unique_tags(payload.get("tags")),
            importance=_clamp_importance(payload.get("importance", 0.5)),
            embedding=embedding,
            timestamp=str(payload.get("addedAt") or payload.get("timestamp") or _utc_now()),
            source=str(payload.get("source") or "conversation"),
        )


@dataclass(slots=True)
class MemoryCandidate:
    """Something the pipeline wants remembered; not yet owned by the store."""

    content: str
    tags: list[str] = field(default_factory=list)
    importance: float = 0.5
    source: str = "conversation"

    def __post_init__(self) -> None:
        self.content = (self.content or "").strip()
        self.tags = _unique_tags(self.tags)
        self.importance = _clamp_importance(self.importance)


@dataclass(slots=True)
class MemoryCollection:
    items: list[MemoryItem] = field(default_factory=list)
    next_id: int = 1

    def to_document(self) -> dict[str, Any]:
        return {"longTerm": [item.to_dict() for item in self.items], "nextId": self.next_id}

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "MemoryCollection":
        raw_items = payload.get("longTerm") if isinstance(payload, dict) else None
        items = [
            MemoryItem.from_dict(raw)
            for raw in (raw_items or [])
            if isinstance(raw, dict) and "id" in raw
        ]
        highest = max((item.id for item in items), default=0)
        try:
            next_id = int(payload.get("nextId", 1))
        except (TypeError, ValueError, AttributeError):
            next_id = 1
        return cls(items=items, next_id=max(next_id, highest + 1))


@dataclass(slots=True)
class MemoryHit:
    item: MemoryItem
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item.id,
            "content": self.item.content,
            "tags": list(self.item.tags),
            "similarity": round(self.similarity, 4),
        }


@dataclass(slots=True)
class MemoryRecall:
    """Retrieval outcome; ``error`` is set when the query could not be embedded."""

    hits: list[MemoryHit] = field(default_factory=list)
    error: str | None = None
