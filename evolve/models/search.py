from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from evolve.tools import web_utils


@dataclass(slots=True)
class SearchResult:
    title: str
    url: str
    snippet: str = ""
    extracted_content: str | None = None

    @property
    def key(self) -> str:
        return web_utils.normalize_url(self.url)

    def to_dict(self, *, include_content: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {"title": self.title, "url": self.url, "snippet": self.snippet}
        if include_content and self.extracted_content is not None:
            data["extractedContent"] = self.extracted_content
        return data


@dataclass(slots=True)
class SearchBatch:
    results: list[SearchResult] = field(default_factory=list)
    total_before_dedup: int = 0
    failed_queries: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SearchRound:
    """One search round; yielded once when it starts and once when it completes."""

    index: int
    query: str
    new_results: list[SearchResult] = field(default_factory=list)
    total_results: int = 0
    total_before_dedup: int = 0
    reasoning: str = ""
    error: str | None = None
    completed: bool = True


@dataclass(frozen=True, slots=True)
class ContinueDecision:
    should_continue: bool
    reasoning: str

    def __bool__(self) -> bool:
        return self.should_continue
