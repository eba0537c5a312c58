from __future__ import annotations

import pytest

from conftest import FakeLLM, make_results
from evolve.agents.orchestrator import ChatOrchestrator, ChatTurn, format_sources
from evolve.config import settings
from evolve.errors import UpstreamUnavailable
from evolve.models.events import EventType
from evolve.models.memory import MemoryCandidate
from evolve.services import logger as log_service

PAGE_TEXT = "Paris forecast: sunny with highs of 24C and light winds from the west. " * 3


def make_search(per_query: int = 3, *, fail: bool = False):
    calls: list[str] = []

    async def search(query, *, count=None):
        calls.append(query)
        if fail:
            raise UpstreamUnavailable("searxng", "connection refused")
        return make_results(query.replace(" ", "-"), per_query)

    search.calls = calls
    return search


def make_fetch(text: str = PAGE_TEXT):
    async def fetch(url, *, timeout, max_chars):
        return text

    return fetch


def make_orchestrator(llm, memory_store, session_store=None, *, search=None, fetch=None) -> ChatOrchestrator:
    return ChatOrchestrator(
        llm=llm,
        model="llama3.2:3b",
        memory_store=memory_store,
        session_store=session_store,
        search=search or make_search(),
        fetch=fetch or make_fetch(),
    )


async def drain(orchestrator: ChatOrchestrator, turn: ChatTurn):
    return [event async for event in orchestrator.run(turn)]


def names(events) -> list[str]:
    return [event.event.value for event in events]


@pytest.mark.asyncio
async def test_weather_question_searches_and_emits_canonical_order(fake_llm, memory_store):
    search = make_search()
    orchestrator = make_orchestrator(fake_llm, memory_store, search=search)

    events = await drain(orchestrator, ChatTurn(message="What's the weather in Paris today?"))

    assert names(events) == [
        "thinking_start",
        "thinking_update",
        "thinking_start",
        "thinking_update",
        "thinking_start",
        "thinking_update",
        "search_start",
        "search_results",
        "content_processing",
        "response_generation",
        "response_chunk",
        "response_chunk",
        "response_complete",
        "thinking_start",
        "thinking_update",
        "complete",
    ]
    assert [e.phase for e in events if e.event is EventType.THINKING_START] == [
        "analysis",
        "search_decision",
        "search_planning",
        "evaluation",
    ]
    # three results after one round are enough for a medium question
    assert search.calls == ["paris weather today"]
    assert "search_decision" not in fake_llm.callers()

    final = events[-1].data
    assert final["usedSearch"] is True
    assert final["answer"] == "The answer is 4."
    assert final["sourceCount"] == 3
    assert [s["idx"] for s in final["sources"]] == [1, 2, 3]
    assert final["queriesUsed"] == search.calls == ["paris weather today"]
    assert final["queriesPlanned"] == ["paris weather today", "paris weather forecast"]
    assert final["complexity"] == "medium"
    assert final["evaluation"]["score"] == 8.0
    assert final["thoughtCount"] == len(final["thoughts"])
    assert "Paris forecast: sunny" in fake_llm.last_messages[-1]["content"]


@pytest.mark.asyncio
async def test_arithmetic_question_answers_without_search(fake_llm, memory_store):
    search = make_search()
    orchestrator = make_orchestrator(fake_llm, memory_store, search=search)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    assert "search_start" not in names(events)
    assert "content_processing" not in names(events)
    assert search.calls == []
    assert ("complete", "search_decision") in fake_llm.calls
    final = events[-1].data
    assert final["usedSearch"] is False
    assert final["sources"] == []
    assert final["answer"] == "The answer is 4."
    assert fake_llm.last_messages[-1] == {"role": "user", "content": "What is 2+2?"}
    assert fake_llm.last_messages[0]["role"] == "system"


@pytest.mark.asyncio
async def test_auto_search_off_skips_decision_backend(fake_llm, memory_store):
    orchestrator = make_orchestrator(fake_llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="Latest news today?", auto_search=False))

    decision = events[3].data
    assert decision["needsSearch"] is False
    assert decision["confidence"] == 1.0
    assert events[-1].data["usedSearch"] is False


@pytest.mark.asyncio
async def test_answer_failure_ends_turn_with_single_error(memory_store):
    llm = FakeLLM({"answer": UpstreamUnavailable("ollama", "model not loaded")})
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    assert events[-1].event is EventType.ERROR
    assert names(events).count("error") == 1
    assert "complete" not in names(events)
    assert events[-1].data["failedPhase"] == "response_generation"
    assert "model not loaded" in events[-1].data["message"]

    outcome = await make_orchestrator(llm, memory_store).collect(ChatTurn(message="What is 2+2?"))
    assert not outcome.ok
    assert "Answer generation failed" in outcome.error


@pytest.mark.asyncio
async def test_empty_answer_is_fatal(memory_store):
    orchestrator = make_orchestrator(FakeLLM(answer_chunks=[]), memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    assert events[-1].event is EventType.ERROR
    assert "empty answer" in events[-1].data["message"]


@pytest.mark.asyncio
async def test_search_backend_failure_degrades_to_plain_answer(fake_llm, memory_store):
    search = make_search(fail=True)
    orchestrator = make_orchestrator(fake_llm, memory_store, search=search)

    events = await drain(orchestrator, ChatTurn(message="What's the weather in Paris today?"))

    round_results = [e.data for e in events if e.event is EventType.SEARCH_RESULTS]
    assert len(round_results) == 2
    assert all("connection refused" in data["error"] for data in round_results)
    assert "content_processing" not in names(events)

    final = events[-1]
    assert final.event is EventType.COMPLETE
    assert final.data["usedSearch"] is False
    assert any(t["type"] == "error" for t in final.data["thoughts"])


@pytest.mark.asyncio
async def test_unfetchable_pages_fall_back_to_snippets(fake_llm, memory_store):
    orchestrator = make_orchestrator(fake_llm, memory_store, fetch=make_fetch(""))

    events = await drain(orchestrator, ChatTurn(message="What's the weather in Paris today?"))

    processing = next(e.data for e in events if e.event is EventType.CONTENT_PROCESSING)
    assert processing["extracted"] == 0
    assert processing["usingSnippets"] is True
    assert events[-1].data["usedSearch"] is True

    prompt = fake_llm.last_messages[-1]["content"]
    assert "[#1] paris-weather-today result 1" in prompt
    assert "Snippet 1 about paris-weather-today." in prompt
    assert "only search result snippets are available" in prompt


@pytest.mark.asyncio
async def test_remembered_facts_are_retrieved_and_new_ones_saved(memory_store, embedder):
    await memory_store.upsert([MemoryCandidate(content="User is vegetarian", tags=["constraint"])])
    embedder.vectors["User prefers metric units"] = [0.0, 1.0, 0.0]
    llm = FakeLLM({"memory_extraction": '[{"content": "User prefers metric units", "tags": ["preference"]}]'})
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="Suggest a dinner recipe"))

    final = events[-1].data
    assert [hit["content"] for hit in final["retrievedMemory"]] == ["User is vegetarian"]
    assert final["memoryItemsAdded"] == 1
    assert final["memoryAdded"] == [{"content": "User prefers metric units", "tags": ["preference"]}]
    assert any("User is vegetarian" in m["content"] for m in llm.last_messages if m["role"] == "system")
    assert len((await memory_store.load()).items) == 2


@pytest.mark.asyncio
async def test_use_memory_off_skips_retrieval_and_extraction(memory_store, embedder):
    llm = FakeLLM({"memory_extraction": '[{"content": "Should not be saved", "tags": []}]'})
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?", use_memory=False))

    assert events[-1].data["memoryItemsAdded"] == 0
    assert "memory_extraction" not in llm.callers()
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_turn_is_appended_to_session_and_history_replayed(fake_llm, memory_store, session_store):
    await session_store.append_turn("s1", "My name is Ada.", "Nice to meet you, Ada.", used_search=False)
    orchestrator = make_orchestrator(fake_llm, memory_store, session_store)

    await drain(orchestrator, ChatTurn(message="What is 2+2?", session_id="s1"))

    assert {"role": "user", "content": "My name is Ada."} in fake_llm.last_messages
    session = await session_store.get("s1")
    assert [m["content"] for m in session["messages"]][-2:] == ["What is 2+2?", "The answer is 4."]
    assert session["messages"][-1]["usedSearch"] is False


@pytest.mark.asyncio
async def test_reasoning_in_answer_is_stripped_from_final_answer(memory_store):
    llm = FakeLLM(answer_chunks=["<think>add the numbers", "</think>", "It is 4."])
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    chunks = "".join(e.data["chunk"] for e in events if e.event is EventType.RESPONSE_CHUNK)
    assert chunks == "<think>add the numbers</think>It is 4."
    final = events[-1].data
    assert final["answer"] == "It is 4."
    assert any(t["content"] == "add the numbers" for t in final["thoughts"])


@pytest.mark.asyncio
async def test_configured_chunk_size_rechunks_answer(fake_llm, memory_store, monkeypatch):
    monkeypatch.setattr(settings, "response_chunk_chars", 4)
    orchestrator = make_orchestrator(fake_llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    chunks = [e.data["chunk"] for e in events if e.event is EventType.RESPONSE_CHUNK]
    assert chunks == ["The ", "answ", "er i", "s 4."]


@pytest.mark.asyncio
async def test_client_disconnect_is_logged_and_stops_the_turn(fake_llm, memory_store, monkeypatch):
    logged: list[str] = []
    monkeypatch.setattr(log_service, "log_event", lambda event_type, message, **kw: logged.append(event_type))
    orchestrator = make_orchestrator(fake_llm, memory_store)

    stream = orchestrator.run(ChatTurn(message="What is 2+2?", session_id="s1"))
    first = await anext(stream)
    await stream.aclose()

    assert first.event is EventType.THINKING_START
    assert logged == ["client_disconnected"]
    assert "answer" not in fake_llm.callers()


def test_format_sources_numbers_blocks_and_prefers_page_text():
    results = make_results("site", 2)
    results[0].extracted_content = "Full page body"

    corpus = format_sources(results)

    assert corpus.startswith("[#1] site result 1\nURL: https://site.example.com/page-1\nFull page body")
    assert "\n\n---\n\n[#2] site result 2" in corpus
    assert corpus.endswith("Snippet 2 about site.")


def error_thoughts(final) -> list[str]:
    return [t["content"] for t in final["thoughts"] if t["type"] == "error"]


@pytest.mark.asyncio
async def test_memory_extraction_failure_becomes_error_thought(memory_store):
    llm = FakeLLM({"memory_extraction": UpstreamUnavailable("ollama", "model unloaded")})
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="What is 2+2?"))

    assert events[-1].event is EventType.COMPLETE
    final = events[-1].data
    assert final["memoryItemsAdded"] == 0
    assert any("Saving memory failed" in content for content in error_thoughts(final))


@pytest.mark.asyncio
async def test_retrieval_embedding_failure_becomes_error_thought(fake_llm, memory_store, embedder):
    await memory_store.upsert([MemoryCandidate(content="User is vegetarian")])
    embedder.fail = True
    orchestrator = make_orchestrator(fake_llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="Suggest a dinner recipe"))

    analysis = events[1].data
    assert any(t["type"] == "error" for t in analysis["thoughts"])
    final = events[-1].data
    assert final["retrievedMemory"] == []
    assert any("Memory retrieval failed" in content for content in error_thoughts(final))


@pytest.mark.asyncio
async def test_memory_saved_without_embeddings_becomes_error_thought(memory_store, embedder):
    embedder.fail = True
    llm = FakeLLM({"memory_extraction": '[{"content": "User works night shifts", "tags": ["constraint"]}]'})
    orchestrator = make_orchestrator(llm, memory_store)

    events = await drain(orchestrator, ChatTurn(message="When should I sleep?"))

    final = events[-1].data
    assert final["memoryItemsAdded"] == 1
    assert any("saved without embeddings" in content for content in error_thoughts(final))
    assert (await memory_store.load()).items[0].retrievable is False
