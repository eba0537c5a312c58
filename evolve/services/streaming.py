from __future__ import annotations

from typing import Any

from evolve.models.events import EventType, Phase, SSEEvent
from evolve.models.search import SearchResult
from evolve.models.thought import Thought


def thinking_start(phase: Phase, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.THINKING_START,
        data={"phase": phase.value, "message": message},
    )


def thinking_update(phase: Phase, thoughts: list[Thought], **kwargs: Any) -> SSEEvent:
    """Emit the thoughts a phase produced plus any phase-specific fields."""
    return SSEEvent(
        event=EventType.THINKING_UPDATE,
        data={"phase": phase.value, "thoughts": [t.to_dict() for t in thoughts], **kwargs},
    )


def search_start(round_index: int, query: str, *, max_rounds: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.SEARCH_START,
        data={
            "phase": Phase.SEARCH_ROUND.value,
            "round": round_index,
            "maxRounds": max_rounds,
            "query": query,
        },
    )


def search_results(
    round_index: int,
    query: str,
    results: list[SearchResult],
    *,
    total_results: int,
    total_before_dedup: int,
    error: str | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {
        "phase": Phase.SEARCH_ROUND.value,
        "round": round_index,
        "query": query,
        "results": [r.to_dict() for r in results],
        "newResults": len(results),
        "totalResults": total_results,
        "totalBeforeDedup": total_before_dedup,
    }
    if error:
        data["error"] = error
    return SSEEvent(event=EventType.SEARCH_RESULTS, data=data)


def content_processing(*, attempted: int, extracted: int, using_snippets: bool) -> SSEEvent:
    return SSEEvent(
        event=EventType.CONTENT_PROCESSING,
        data={
            "phase": Phase.CONTENT_PROCESSING.value,
            "attempted": attempted,
            "extracted": extracted,
            "usingSnippets": using_snippets,
        },
    )


def response_generation(*, source_count: int, memory_count: int, strategy: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.RESPONSE_GENERATION,
        data={
            "phase": Phase.RESPONSE_GENERATION.value,
            "sourceCount": source_count,
            "memoryCount": memory_count,
            "strategy": strategy,
        },
    )


def response_chunk(chunk: str) -> SSEEvent:
    return SSEEvent(event=EventType.RESPONSE_CHUNK, data={"chunk": chunk})


def response_complete(answer: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.RESPONSE_COMPLETE,
        data={"phase": Phase.RESPONSE_GENERATION.value, "length": len(answer)},
    )


def complete(payload: dict[str, Any]) -> SSEEvent:
    return SSEEvent(event=EventType.COMPLETE, data={"phase": Phase.COMPLETE.value, **payload})


def error(message: str, *, phase: Phase | None = None, elapsed_ms: int | None = None) -> SSEEvent:
    data: dict[str, Any] = {"phase": Phase.ERROR.value, "message": message}
    if phase is not None:
        data["failedPhase"] = phase.value
    if elapsed_ms is not None:
        data["elapsedMs"] = elapsed_ms
    return SSEEvent(event=EventType.ERROR, data=data)
