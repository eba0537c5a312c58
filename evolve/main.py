from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from evolve.api.routes import chat, memory, models, search, sessions
from evolve.config import settings
from evolve.llm_client import close_client
from evolve.services import logger as _log_setup  # noqa: F401  configures loguru sinks


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Evolve starting: ollama={settings.ollama_url} searxng={settings.searxng_base_url} "
        f"chat_model={settings.chat_model} embed_model={settings.embed_model} data_dir={settings.data_dir}"
    )
    yield
    await close_client()


app = FastAPI(
    title="Evolve",
    description="Chat assistant with web search and long-term memory, powered by Ollama and SearXNG",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)
app.include_router(sessions.router)
app.include_router(memory.router)
app.include_router(search.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "service": "evolve",
        "time": datetime.now(timezone.utc).isoformat(),
        "services": {
            "ollama": settings.ollama_url,
            "searxng": settings.searxng_base_url,
            "chatModel": settings.chat_model,
            "embedModel": settings.embed_model,
        },
    }
