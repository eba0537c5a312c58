from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from evolve.agents.orchestrator import ChatOrchestrator, ChatTurn
from evolve.api.deps import get_orchestrator
from evolve.errors import InvalidSessionId
from evolve.llm_client import get_model
from evolve.models.schemas import ChatRequest, ChatResponse
from evolve.services import logger as log_service
from evolve.services.session_store import validate_session_id

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def chat(request: ChatRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    """Run one chat turn; streams SSE events unless ``stream`` is false."""
    if request.session_id is not None:
        try:
            validate_session_id(request.session_id)
        except InvalidSessionId as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    model = request.model or get_model()
    turn = ChatTurn(
        message=request.message,
        session_id=request.session_id,
        model=model,
        auto_search=request.auto_search,
        use_memory=request.use_memory,
    )
    log_service.log_event(
        event_type="chat_started",
        message="Chat turn started",
        session_id=request.session_id,
        model=model,
        stream=request.stream,
        query=request.message[:100],
    )

    if request.stream:
        async def event_generator():
            async for event in orchestrator.run(turn):
                yield event.to_sse()

        return EventSourceResponse(event_generator())

    t0 = time.monotonic()
    outcome = await orchestrator.collect(turn)
    processing_time = int((time.monotonic() - t0) * 1000)
    if not outcome.ok:
        return JSONResponse(
            status_code=500,
            content={"error": outcome.error, "processingTime": processing_time},
        )
    return ChatResponse(
        answer=outcome.answer,
        sources=outcome.sources,
        usedSearch=outcome.used_search,
        memoryAdded=outcome.memory_added,
        retrievedMemory=outcome.retrieved_memory,
        engine="SearXNG" if outcome.used_search else None,
        model=outcome.model,
        processingTime=processing_time,
        queriesUsed=outcome.queries_used,
        thoughts=outcome.thoughts,
    )
