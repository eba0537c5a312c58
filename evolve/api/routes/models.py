from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from evolve.api.deps import get_llm
from evolve.errors import UpstreamUnavailable
from evolve.llm_client import OllamaClient, get_model
from evolve.models.schemas import ModelInfo, ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(llm: OllamaClient = Depends(get_llm)):
    """List the models the generation backend has installed."""
    try:
        models = await llm.list_models()
    except UpstreamUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return ModelsResponse(models=[ModelInfo(**m) for m in models], default=get_model())
