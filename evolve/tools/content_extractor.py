from __future__ import annotations

import time

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from evolve.config import settings
from evolve.tools import web_utils

FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; EvolveUI/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

REMOVE_SELECTORS = (
    "script, style, noscript, nav, footer, aside, header, form, iframe, "
    ".advertisement, .ads, .ad, .popup, .cookie-banner"
)
MAIN_SELECTORS = "main, article, [role=main], .content, .post, .entry"


def clean_html(html: str, max_chars: int | None = None) -> str:
    """Readable text of a page: boilerplate removed, main region preferred.

    The main region is the first element, in document order, matching one of
    ``MAIN_SELECTORS``; otherwise ``<body>``; otherwise the whole document.
    """
    max_chars = settings.content_max_chars if max_chars is None else max_chars
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup.select(REMOVE_SELECTORS):
        node.decompose()

    region = soup.select_one(MAIN_SELECTORS) or soup.body or soup
    text = web_utils.collapse_whitespace(region.get_text(" "))
    return web_utils.truncate(text, max_chars)


async def fetch_and_clean(
    url: str,
    *,
    timeout: float | None = None,
    max_chars: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Fetch ``url`` and return its cleaned text, or ``""`` on any failure."""
    timeout = settings.fetch_timeout_seconds if timeout is None else timeout
    if not web_utils.is_valid_url(url):
        logger.debug(f"Skipping fetch of invalid URL: {url!r}")
        return ""

    t0 = time.monotonic()
    http = client or httpx.AsyncClient(follow_redirects=True)
    try:
        response = await http.get(url, headers=FETCH_HEADERS, timeout=timeout, follow_redirects=True)
        if not response.is_success:
            logger.debug(f"Fetch failed: {url} HTTP {response.status_code}")
            return ""
        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type:
            logger.debug(f"Non-HTML content: {url} ({content_type or 'no content type'})")
            return ""
        html = response.text
    except httpx.TimeoutException:
        logger.warning(f"Fetch timed out after {timeout:g}s: {url}")
        return ""
    except httpx.HTTPError as exc:
        logger.warning(f"Fetch error for {url}: {exc!r}")
        return ""
    finally:
        if client is None:
            await http.aclose()

    try:
        text = clean_html(html, max_chars)
    except Exception as exc:  # malformed markup must not fail the turn
        logger.warning(f"Could not parse HTML from {url}: {exc!r}")
        return ""
    logger.debug(
        f"Extracted {len(text)} chars from {web_utils.extract_domain(url)} "
        f"in {int((time.monotonic() - t0) * 1000)}ms"
    )
    return text
