from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from evolve.config import settings
from evolve.errors import UpstreamTimeout
from evolve.models.search import SearchResult
from evolve.services import logger as log_service

SERVICE = "searxng"

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; EvolveUI/1.0)",
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
}

# Tried in order; the first one answering with usable JSON results wins.
QUERY_VARIANTS: tuple[tuple[str, str, dict[str, str]], ...] = (
    (
        "general",
        "/search",
        {"format": "json", "language": "en", "safesearch": "1", "categories": "general"},
    ),
    ("engines", "/search", {"format": "json", "engines": "google,bing,duckduckgo"}),
    ("root", "/", {"format": "json"}),
)


def parse_results(payload: Any, *, count: int) -> list[SearchResult]:
    """Map a SearXNG JSON payload onto results, dropping entries without an http URL."""
    raw_results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(raw_results, list):
        return []
    usable = [
        item
        for item in raw_results
        if isinstance(item, dict)
        and isinstance(item.get("url"), str)
        and item["url"].startswith("http")
    ]
    mapped: list[SearchResult] = []
    for item in usable[: max(count, 0)]:
        url = item["url"].strip()
        title = str(item.get("title") or url).strip()
        snippet = str(item.get("content") or item.get("snippet") or "").strip()
        if title and url:
            mapped.append(SearchResult(title=title, url=url, snippet=snippet))
    return mapped


async def _try_variants(http: httpx.AsyncClient, query: str, count: int, timeout: float) -> list[SearchResult]:
    base = settings.searxng_base_url
    for name, path, params in QUERY_VARIANTS:
        t0 = time.monotonic()
        try:
            response = await http.get(
                f"{base}{path}",
                params={"q": query, **params},
                headers=HEADERS,
                timeout=timeout,
            )
        except httpx.TimeoutException:
            raise
        except httpx.HTTPError as exc:
            log_service.log_search_call(
                query,
                status="error",
                variant=name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                error=str(exc) or type(exc).__name__,
            )
            continue

        duration_ms = int((time.monotonic() - t0) * 1000)
        if not response.is_success:
            log_service.log_search_call(
                query, status="error", variant=name, duration_ms=duration_ms,
                error=f"HTTP {response.status_code}",
            )
            continue
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            log_service.log_search_call(
                query, status="error", variant=name, duration_ms=duration_ms,
                error=f"non-JSON response ({content_type or 'no content type'})",
            )
            continue
        try:
            payload = response.json()
        except ValueError as exc:
            log_service.log_search_call(
                query, status="error", variant=name, duration_ms=duration_ms, error=str(exc),
            )
            continue

        results = parse_results(payload, count=count)
        log_service.log_search_call(
            query, status="success", results_count=len(results), variant=name, duration_ms=duration_ms,
        )
        if results:
            return results
    return []


async def search(
    query: str,
    *,
    count: int | None = None,
    timeout: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[SearchResult]:
    """Run a SearXNG web search.

    Returns ``[]`` when every query variant fails or comes back empty. Raises
    ``UpstreamTimeout`` when the whole attempt overruns ``timeout``.
    """
    count = settings.search_results_per_query if count is None else count
    timeout = settings.search_timeout_seconds if timeout is None else timeout

    http = client or httpx.AsyncClient(follow_redirects=True)
    try:
        return await asyncio.wait_for(_try_variants(http, query, count, timeout), timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        log_service.log_search_call(query, status="timeout", error=f"timed out after {timeout:g}s")
        raise UpstreamTimeout(SERVICE, timeout) from exc
    finally:
        if client is None:
            await http.aclose()
