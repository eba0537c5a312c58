from __future__ import annotations

import json
import re
from typing import Any

from loguru import logger

from evolve.config import settings
from evolve.llm_client import OllamaClient, client as llm_client
from evolve.models.memory import MemoryCandidate
from evolve.services.prompt_store import render_prompt
from evolve.services.reasoning import extract_thoughts

TAG_IMPORTANCE = {
    "identity": 0.8,
    "correction": 0.8,
    "preference": 0.7,
    "constraint": 0.7,
    "goal": 0.7,
    "tool": 0.6,
}
DEFAULT_IMPORTANCE = 0.5

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def importance_for(tags: list[str]) -> float:
    return max((TAG_IMPORTANCE.get(tag, DEFAULT_IMPORTANCE) for tag in tags), default=DEFAULT_IMPORTANCE)


def parse_memory_candidates(text: str, *, source: str = "conversation") -> list[MemoryCandidate]:
    """Candidates from the first ``[...]`` span of a reply; anything malformed yields ``[]``."""
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        return []
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug("Memory extraction reply was not valid JSON")
        return []
    if not isinstance(payload, list):
        return []

    candidates: list[MemoryCandidate] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        candidate = MemoryCandidate(content=content, tags=entry.get("tags") or [], source=source)
        importance: Any = entry.get("importance")
        if isinstance(importance, (int, float)) and not isinstance(importance, bool):
            candidate.importance = min(max(float(importance), 0.0), 1.0)
        else:
            candidate.importance = importance_for(candidate.tags)
        candidates.append(candidate)
    return candidates


def format_transcript(messages: list[dict[str, str]]) -> str:
    return "\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages if m.get("content"))


async def extract_memory_candidates(
    messages: list[dict[str, str]],
    *,
    llm: OllamaClient | None = None,
    model: str | None = None,
    timeout: float | None = None,
) -> list[MemoryCandidate]:
    """Ask the backend which facts of a finished turn are worth keeping long-term.

    Backend failures propagate as ``UpstreamUnavailable``; an unusable reply
    yields ``[]``.
    """
    if not messages:
        return []
    active = llm or llm_client()
    prompt = render_prompt("memory.extraction_prompt", chat=format_transcript(messages))
    reply = await active.complete(
        model or settings.chat_model,
        prompt,
        timeout=settings.completion_timeout_seconds if timeout is None else timeout,
        caller="memory_extraction",
    )
    _, cleaned = extract_thoughts(reply)
    return parse_memory_candidates(cleaned)
