from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field, replace
from typing import AsyncGenerator, Awaitable, Callable

from loguru import logger

from evolve.config import settings
from evolve.errors import UpstreamUnavailable
from evolve.llm_client import OllamaClient
from evolve.models.search import ContinueDecision, SearchBatch, SearchResult, SearchRound
from evolve.models.thought import Thought, ThoughtType, error_thought
from evolve.services.prompt_store import render_prompt
from evolve.services.reasoning import extract_thoughts
from evolve.tools import content_extractor, searxng_search

SearchFn = Callable[..., Awaitable[list[SearchResult]]]
FetchFn = Callable[..., Awaitable[str]]

_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$")
_QUOTES = "\"'“”‘’`"


@dataclass(slots=True)
class QueryPlan:
    queries: list[str]
    thoughts: list[Thought] = field(default_factory=list)


def _list_items(text: str, max_queries: int) -> list[str]:
    items: list[str] = []
    seen: set[str] = set()
    for line in (text or "").splitlines():
        match = _LIST_ITEM_RE.match(line)
        if not match:
            continue
        query = " ".join(match.group(1).strip().strip(_QUOTES).split())
        if not query:
            continue
        key = query.lower()
        if key in seen:
            continue
        seen.add(key)
        items.append(query)
        if len(items) >= max(max_queries, 1):
            break
    return items


def parse_query_list(text: str, *, max_queries: int, fallback: str | None = None) -> list[str]:
    """Queries from a numbered (``1.``/``1)``) or bulleted list, in order.

    Falls back to ``[fallback]`` (or the whole stripped text) when no list
    item is found.
    """
    items = _list_items(text, max_queries)
    if items:
        return items
    default = (fallback or text or "").strip()
    return [default] if default else []


async def generate_queries(
    llm: OllamaClient,
    model: str,
    user_query: str,
    max_queries: int | None = None,
    timeout: float | None = None,
) -> QueryPlan:
    """Ask the backend for a search plan; never returns an empty plan."""
    max_queries = settings.search_max_queries if max_queries is None else max_queries
    timeout = settings.chat_timeout_seconds if timeout is None else timeout
    prompt = render_prompt("search_planning.prompt", max_queries=max_queries, query=user_query)
    try:
        reply = await llm.chat(
            model,
            [{"role": "user", "content": prompt}],
            timeout=timeout,
            caller="search_planning",
        )
    except UpstreamUnavailable as exc:
        return QueryPlan(
            queries=[user_query],
            thoughts=[error_thought(f"Query planning failed, searching for the message itself: {exc}")],
        )

    thoughts, cleaned = extract_thoughts(reply)
    queries = _list_items(cleaned, max_queries)
    if not queries:
        thoughts.append(
            Thought(
                content="The planner did not return a query list; searching for the message itself.",
                type=ThoughtType.REASONING,
            )
        )
        queries = [user_query]
    return QueryPlan(queries=queries, thoughts=thoughts)


async def execute_searches(
    queries: list[str],
    per_query_count: int | None = None,
    *,
    search: SearchFn = searxng_search.search,
) -> SearchBatch:
    """Run each query once and merge results, first occurrence of a URL wins."""
    per_query_count = settings.search_results_per_query if per_query_count is None else per_query_count
    batch = SearchBatch()
    seen: set[str] = set()
    for query in queries:
        try:
            results = await search(query, count=per_query_count)
        except UpstreamUnavailable as exc:
            logger.warning(f"Search failed for {query!r}: {exc}")
            batch.failed_queries.append(query)
            batch.errors.append(str(exc))
            continue
        batch.total_before_dedup += len(results)
        for result in results:
            if result.key in seen:
                continue
            seen.add(result.key)
            batch.results.append(result)
    return batch


def should_continue_searching(result_count: int, complexity: str) -> ContinueDecision:
    complexity = (complexity or "").strip().lower()
    high = complexity == "high"
    if result_count <= 0:
        return ContinueDecision(True, "No results yet, searching.")
    if result_count <= 2:
        if high:
            return ContinueDecision(True, f"Only {result_count} results for a complex question, searching further.")
        return ContinueDecision(False, f"{result_count} results are enough for a {complexity or 'simple'} question.")
    if result_count <= 7:
        if high and result_count < 5:
            return ContinueDecision(True, f"{result_count} results may not cover a complex question, searching further.")
        return ContinueDecision(False, f"{result_count} results collected, enough to answer.")
    return ContinueDecision(False, f"{result_count} results collected, stopping.")


async def iterate_search_rounds(
    queries: list[str],
    *,
    complexity: str,
    max_rounds: int | None = None,
    per_query_count: int | None = None,
    search: SearchFn = searxng_search.search,
) -> AsyncGenerator[SearchRound, None]:
    """One round per planned query, while the continuation rule allows it.

    Each round is yielded twice: with ``completed=False`` before the backend
    is queried, then with its results. Results are de-duplicated across
    rounds; a completed round reports only the results it added.
    """
    max_rounds = settings.search_max_rounds if max_rounds is None else max_rounds
    seen: set[str] = set()
    total_results = 0
    total_before_dedup = 0
    for index, query in enumerate(queries[: max(max_rounds, 0)], start=1):
        decision = should_continue_searching(total_results, complexity)
        if not decision:
            logger.info(f"Stopping search before round {index}: {decision.reasoning}")
            return

        yield SearchRound(
            index=index,
            query=query,
            total_results=total_results,
            total_before_dedup=total_before_dedup,
            reasoning=decision.reasoning,
            completed=False,
        )
        batch = await execute_searches([query], per_query_count, search=search)
        fresh: list[SearchResult] = []
        for result in batch.results:
            if result.key in seen:
                continue
            seen.add(result.key)
            fresh.append(result)
        total_results += len(fresh)
        total_before_dedup += batch.total_before_dedup
        yield SearchRound(
            index=index,
            query=query,
            new_results=fresh,
            total_results=total_results,
            total_before_dedup=total_before_dedup,
            reasoning=decision.reasoning,
            error="; ".join(batch.errors) or None,
        )


async def process_content(
    results: list[SearchResult],
    *,
    fetch_count: int | None = None,
    timeout: float | None = None,
    max_chars: int | None = None,
    min_chars: int | None = None,
    fetch: FetchFn = content_extractor.fetch_and_clean,
) -> list[SearchResult]:
    """Fetch the top results concurrently and keep those with usable page text."""
    fetch_count = settings.content_fetch_count if fetch_count is None else fetch_count
    timeout = settings.fetch_timeout_seconds if timeout is None else timeout
    max_chars = settings.content_max_chars if max_chars is None else max_chars
    min_chars = settings.content_min_chars if min_chars is None else min_chars

    targets = results[: max(fetch_count, 0)]
    if not targets:
        return []
    outcomes = await asyncio.gather(
        *(fetch(result.url, timeout=timeout, max_chars=max_chars) for result in targets),
        return_exceptions=True,
    )
    kept: list[SearchResult] = []
    for result, outcome in zip(targets, outcomes):
        if isinstance(outcome, BaseException):
            logger.warning(f"Content fetch failed for {result.url}: {outcome!r}")
            continue
        if len(outcome) > min_chars:
            kept.append(replace(result, extracted_content=outcome))
    logger.info(f"Extracted usable content from {len(kept)}/{len(targets)} pages")
    return kept
