from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from evolve.api.deps import get_memory
from evolve.models.schemas import MemoryResponse, MemoryStats
from evolve.services.memory_store import MemoryStore

router = APIRouter(prefix="/api/memory", tags=["memory"])


@router.get("", response_model=MemoryResponse)
async def get_memory_document(store: MemoryStore = Depends(get_memory)):
    """Stored memory without raw embeddings, plus summary stats."""
    collection = await store.load()
    stats = await store.stats()
    return MemoryResponse(
        longTerm=[item.to_public_dict() for item in collection.items],
        nextId=collection.next_id,
        stats=MemoryStats(
            totalItems=stats["totalItems"],
            retrievableItems=stats["retrievableItems"],
            lastUpdated=stats["lastUpdated"],
        ),
    )


async def _clear(store: MemoryStore) -> dict:
    await store.clear()
    return {"ok": True, "clearedAt": datetime.now(timezone.utc).isoformat()}


@router.delete("")
async def clear_memory(store: MemoryStore = Depends(get_memory)):
    return await _clear(store)


@router.post("/clear")
async def clear_memory_post(store: MemoryStore = Depends(get_memory)):
    return await _clear(store)


@router.delete("/{item_id}")
async def delete_memory_item(item_id: int, store: MemoryStore = Depends(get_memory)):
    if not await store.delete(item_id):
        raise HTTPException(status_code=404, detail="Memory item not found")
    return {"ok": True, "id": item_id}
