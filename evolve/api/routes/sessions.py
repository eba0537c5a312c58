from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from evolve.api.deps import get_sessions
from evolve.errors import InvalidSessionId
from evolve.models.schemas import (
    SessionCreateRequest,
    SessionDetail,
    SessionRenameRequest,
    SessionsResponse,
    SessionSummary,
)
from evolve.services.session_store import JsonSessionStore, validate_session_id

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _checked(session_id: str) -> str:
    try:
        return validate_session_id(session_id)
    except InvalidSessionId as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.get("", response_model=SessionsResponse)
async def list_sessions(store: JsonSessionStore = Depends(get_sessions)):
    return SessionsResponse(sessions=[SessionSummary(**s) for s in await store.list_sessions()])


@router.post("", response_model=SessionDetail)
async def create_session(
    request: SessionCreateRequest | None = None,
    store: JsonSessionStore = Depends(get_sessions),
):
    request = request or SessionCreateRequest()
    session = await store.create(name=request.name, model=request.model)
    return SessionDetail(**session)


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(session_id: str, store: JsonSessionStore = Depends(get_sessions)):
    session = await store.get(_checked(session_id))
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionDetail(**session)


@router.put("/{session_id}/name", response_model=SessionDetail)
async def rename_session(
    session_id: str,
    request: SessionRenameRequest,
    store: JsonSessionStore = Depends(get_sessions),
):
    session = await store.rename(_checked(session_id), request.name)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return SessionDetail(**session)


@router.delete("/{session_id}")
async def delete_session(session_id: str, store: JsonSessionStore = Depends(get_sessions)):
    if not await store.delete(_checked(session_id)):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True, "id": session_id}
