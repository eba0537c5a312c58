from __future__ import annotations

from evolve.agents.orchestrator import ChatOrchestrator
from evolve.llm_client import OllamaClient, client as llm_client
from evolve.services.memory_store import MemoryStore, get_memory_store
from evolve.services.session_store import JsonSessionStore, get_session_store


def get_llm() -> OllamaClient:
    return llm_client()


def get_memory() -> MemoryStore:
    return get_memory_store()


def get_sessions() -> JsonSessionStore:
    return get_session_store()


def get_orchestrator() -> ChatOrchestrator:
    """A fresh orchestrator per request, wired to the shared stores."""
    return ChatOrchestrator(
        llm=llm_client(),
        memory_store=get_memory_store(),
        session_store=get_session_store(),
    )
