from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator


class ThoughtType(str, Enum):
    ANALYSIS = "analysis"
    SEARCH_DECISION = "search_decision"
    REASONING = "reasoning"
    ERROR = "error"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class Thought:
    content: str
    type: ThoughtType
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "type": self.type.value, "timestamp": self.timestamp}


def error_thought(message: str) -> Thought:
    return Thought(content=message, type=ThoughtType.ERROR)


class ThoughtLog:
    """Append-only, emission-ordered record of the thoughts of one request."""

    def __init__(self) -> None:
        self._thoughts: list[Thought] = []

    def append(self, thought: Thought) -> Thought:
        self._thoughts.append(thought)
        return thought

    def extend(self, thoughts: list[Thought]) -> list[Thought]:
        for thought in thoughts:
            self.append(thought)
        return list(thoughts)

    def __iter__(self) -> Iterator[Thought]:
        return iter(tuple(self._thoughts))

    def __len__(self) -> int:
        return len(self._thoughts)

    def to_list(self) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self._thoughts]
