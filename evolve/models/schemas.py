from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


# --- Requests ---


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")
    model: str | None = None
    stream: bool = True
    auto_search: bool = Field(default=True, alias="autoSearch")
    use_memory: bool = Field(default=True, alias="useMemory")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class SessionCreateRequest(BaseModel):
    name: str | None = None
    model: str | None = None

    model_config = {"protected_namespaces": ()}


class SessionRenameRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


# --- Responses ---


class ChatResponse(BaseModel):
    answer: str
    sources: list[dict[str, Any]]
    usedSearch: bool
    memoryAdded: list[dict[str, Any]]
    retrievedMemory: list[dict[str, Any]]
    engine: str | None
    model: str
    processingTime: int
    queriesUsed: list[str]
    thoughts: list[dict[str, Any]]

    model_config = {"protected_namespaces": ()}


class SessionSummary(BaseModel):
    id: str
    name: str
    model: str | None
    created: str | None
    updated: str | None
    messageCount: int

    model_config = {"protected_namespaces": ()}


class SessionDetail(BaseModel):
    id: str
    name: str
    model: str | None
    created: str | None
    updated: str | None
    messages: list[dict[str, Any]]

    model_config = {"protected_namespaces": ()}


class SessionsResponse(BaseModel):
    sessions: list[SessionSummary]


class MemoryStats(BaseModel):
    totalItems: int
    retrievableItems: int
    lastUpdated: str | None


class MemoryResponse(BaseModel):
    longTerm: list[dict[str, Any]]
    nextId: int
    stats: MemoryStats


class ModelInfo(BaseModel):
    name: str
    owned_by: str | None = None


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
    default: str


class SearchTestResponse(BaseModel):
    query: str
    searxngUrl: str
    resultCount: int
    results: list[dict[str, Any]]
    timestamp: str
