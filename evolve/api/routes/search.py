from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from evolve.config import settings
from evolve.errors import UpstreamUnavailable
from evolve.models.schemas import SearchTestResponse
from evolve.tools import searxng_search

router = APIRouter(prefix="/api/search", tags=["search"])


@router.get("/test", response_model=SearchTestResponse)
async def search_test(q: str = Query(default="test search")):
    """Check the SearXNG connection with a single query."""
    try:
        results = await searxng_search.search(q)
    except UpstreamUnavailable as exc:
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "searxngUrl": settings.searxng_base_url, "query": q},
        )
    return SearchTestResponse(
        query=q,
        searxngUrl=settings.searxng_base_url,
        resultCount=len(results),
        results=[r.to_dict() for r in results[:3]],
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
