from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

from loguru import logger

from evolve.agents.decision_engine import (
    COMPLEXITY_LEVELS,
    DecisionEngine,
    SearchDecision,
)
from evolve.agents.memory_extractor import extract_memory_candidates
from evolve.config import settings
from evolve.errors import EvolveError, FatalGenerationFailure, UpstreamUnavailable
from evolve.llm_client import OllamaClient, client as llm_client, get_model
from evolve.models.events import EventType, Phase, SSEEvent
from evolve.models.memory import MemoryHit, MemoryItem
from evolve.models.search import SearchResult
from evolve.models.thought import Thought, ThoughtLog, ThoughtType, error_thought
from evolve.services import logger as log_service
from evolve.services import streaming
from evolve.services.memory_store import MemoryStore, get_memory_store
from evolve.services.prompt_store import render_prompt
from evolve.services.reasoning import extract_thoughts
from evolve.services.search_executor import (
    FetchFn,
    SearchFn,
    generate_queries,
    iterate_search_rounds,
    process_content,
)
from evolve.services.session_store import JsonSessionStore
from evolve.tools import content_extractor, searxng_search


@dataclass(slots=True)
class ChatTurn:
    message: str
    session_id: str | None = None
    model: str | None = None
    history: list[dict[str, str]] | None = None
    auto_search: bool = True
    use_memory: bool = True


@dataclass(slots=True)
class TurnOutcome:
    """Drained result of one turn, for callers that do not stream."""

    answer: str = ""
    model: str = ""
    used_search: bool = False
    sources: list[dict[str, Any]] = field(default_factory=list)
    memory_added: list[dict[str, Any]] = field(default_factory=list)
    retrieved_memory: list[dict[str, Any]] = field(default_factory=list)
    thoughts: list[dict[str, Any]] = field(default_factory=list)
    queries_used: list[str] = field(default_factory=list)
    elapsed_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_sources(results: list[SearchResult]) -> str:
    """Numbered ``[#n]`` corpus for the grounded answer prompt."""
    blocks = []
    for idx, result in enumerate(results, start=1):
        body = result.extracted_content or result.snippet or "No snippet available"
        blocks.append(f"[#{idx}] {result.title}\nURL: {result.url}\n{body}")
    return "\n\n---\n\n".join(blocks)


def format_memory_context(hits: list[MemoryHit]) -> str:
    if not hits:
        return ""
    return render_prompt(
        "chat.memory_context",
        items="\n".join(f"- {hit.item.content}" for hit in hits),
    )


class ChatOrchestrator:
    """Runs one chat turn as an ordered stream of SSE events.

    Flow:
      1. analysis: retrieve memory, analyze the message, settle complexity
      2. search_decision: keyword rule, else backend judgement
      3. search_planning, search rounds, content_processing (when searching)
      4. response_generation: plan, then stream the grounded answer
      5. evaluation, then memory extraction and session persistence
      6. complete

    Only a failure of the answer call ends the turn early, with a single
    ``error`` event. Every other failure becomes an ``error`` thought and
    the turn continues on a degraded path.
    """

    def __init__(
        self,
        *,
        llm: OllamaClient | None = None,
        model: str | None = None,
        memory_store: MemoryStore | None = None,
        session_store: JsonSessionStore | None = None,
        search: SearchFn | None = None,
        fetch: FetchFn | None = None,
    ):
        self.llm = llm or llm_client()
        self.model = model or get_model()
        self._memory_store = memory_store
        self.session_store = session_store
        self.search = search or searxng_search.search
        self.fetch = fetch or content_extractor.fetch_and_clean

    @property
    def memory_store(self) -> MemoryStore:
        if self._memory_store is None:
            self._memory_store = get_memory_store()
        return self._memory_store

    async def run(self, turn: ChatTurn) -> AsyncGenerator[SSEEvent, None]:
        t0 = time.monotonic()
        phases = self._phases(turn, t0)
        try:
            async for event in phases:
                yield event
        except (GeneratorExit, asyncio.CancelledError):
            log_service.log_event(
                event_type="client_disconnected",
                message="Chat stream closed by the client",
                session_id=turn.session_id,
                elapsed_ms=int((time.monotonic() - t0) * 1000),
            )
            raise
        except Exception as exc:
            logger.exception(f"Unhandled error in chat turn: {exc!r}")
            yield streaming.error(
                "Chat turn failed unexpectedly.",
                elapsed_ms=int((time.monotonic() - t0) * 1000),
            )
        finally:
            await phases.aclose()

    async def collect(self, turn: ChatTurn) -> TurnOutcome:
        outcome = TurnOutcome(model=turn.model or self.model)
        async for event in self.run(turn):
            if event.event is EventType.COMPLETE:
                data = event.data
                outcome.answer = data["answer"]
                outcome.used_search = data["usedSearch"]
                outcome.sources = data["sources"]
                outcome.memory_added = data["memoryAdded"]
                outcome.retrieved_memory = data["retrievedMemory"]
                outcome.thoughts = data.get("thoughts", [])
                outcome.queries_used = data["queriesUsed"]
                outcome.elapsed_ms = data["elapsedMs"]
            elif event.event is EventType.ERROR:
                outcome.error = event.data.get("message", "Chat turn failed")
                outcome.elapsed_ms = event.data.get("elapsedMs", 0)
        return outcome

    async def _phases(self, turn: ChatTurn, t0: float) -> AsyncGenerator[SSEEvent, None]:
        model = turn.model or self.model
        session_id = turn.session_id
        engine = DecisionEngine(self.llm, model, settings.chat_timeout_seconds)
        log = ThoughtLog()

        def elapsed_ms() -> int:
            return int((time.monotonic() - t0) * 1000)

        # --- analysis ---
        yield streaming.thinking_start(Phase.ANALYSIS, "Analyzing your message")
        log_service.log_turn_phase(session_id, Phase.ANALYSIS.value, "started")
        phase_thoughts: list[Thought] = []
        memory_hits: list[MemoryHit] = []
        if turn.use_memory:
            try:
                recall = await self.memory_store.recall(
                    turn.message,
                    k=settings.memory_top_k,
                    min_similarity=settings.memory_min_similarity,
                )
                memory_hits = recall.hits
                if recall.error:
                    phase_thoughts.append(
                        error_thought(f"Memory retrieval failed, continuing without memory: {recall.error}")
                    )
            except (EvolveError, OSError) as exc:
                phase_thoughts.append(error_thought(f"Memory retrieval failed, continuing without memory: {exc}"))
        memory_context = format_memory_context(memory_hits)

        analysis = await engine.analyze_query(turn.message, memory_context)
        phase_thoughts.extend(analysis.thoughts)
        complexity = analysis.complexity
        override = settings.search_complexity.strip().lower()
        if override in COMPLEXITY_LEVELS:
            complexity = override
        log.extend(phase_thoughts)
        log_service.log_turn_phase(
            session_id, Phase.ANALYSIS.value, "completed",
            {"complexity": complexity, "memory_hits": len(memory_hits)},
        )
        yield streaming.thinking_update(
            Phase.ANALYSIS,
            phase_thoughts,
            complexity=complexity,
            memoryHits=len(memory_hits),
        )

        # --- search decision ---
        yield streaming.thinking_start(Phase.SEARCH_DECISION, "Deciding whether to search the web")
        if turn.auto_search:
            decision = await engine.determine_search_need(turn.message, memory_context)
        else:
            reason = "Web search is turned off for this message."
            decision = SearchDecision(
                needs_search=False,
                confidence=1.0,
                reason=reason,
                thoughts=[Thought(content=reason, type=ThoughtType.SEARCH_DECISION)],
            )
        log.extend(decision.thoughts)
        log_service.log_turn_phase(
            session_id, Phase.SEARCH_DECISION.value, "completed",
            {"needs_search": decision.needs_search, "confidence": decision.confidence},
        )
        yield streaming.thinking_update(
            Phase.SEARCH_DECISION,
            decision.thoughts,
            needsSearch=decision.needs_search,
            confidence=decision.confidence,
            reason=decision.reason,
        )

        # --- search ---
        queries: list[str] = []
        queries_used: list[str] = []
        grounding: list[SearchResult] = []
        if decision.needs_search:
            yield streaming.thinking_start(Phase.SEARCH_PLANNING, "Planning web searches")
            plan = await generate_queries(
                self.llm, model, turn.message, settings.search_max_queries, settings.chat_timeout_seconds,
            )
            queries = plan.queries
            log.extend(plan.thoughts)
            yield streaming.thinking_update(Phase.SEARCH_PLANNING, plan.thoughts, queries=queries)

            results: list[SearchResult] = []
            round_errors: list[str] = []
            async for search_round in iterate_search_rounds(
                queries,
                complexity=complexity,
                max_rounds=settings.search_max_rounds,
                per_query_count=settings.search_results_per_query,
                search=self.search,
            ):
                if not search_round.completed:
                    yield streaming.search_start(
                        search_round.index, search_round.query, max_rounds=settings.search_max_rounds,
                    )
                    continue
                queries_used.append(search_round.query)
                results.extend(search_round.new_results)
                if search_round.error:
                    round_errors.append(search_round.error)
                    log_service.log_turn_phase(
                        session_id, f"{Phase.SEARCH_ROUND.value}_{search_round.index}", "failed",
                        {"error": search_round.error},
                    )
                yield streaming.search_results(
                    search_round.index,
                    search_round.query,
                    search_round.new_results,
                    total_results=search_round.total_results,
                    total_before_dedup=search_round.total_before_dedup,
                    error=search_round.error,
                )

            if round_errors:
                log.append(error_thought(f"Web search failed: {round_errors[0]}"))
            if not results:
                log.append(error_thought("Web search found nothing usable; answering without web sources."))
            else:
                fetch_count = settings.content_fetch_count
                pages = await process_content(
                    results,
                    fetch_count=fetch_count,
                    timeout=settings.fetch_timeout_seconds,
                    max_chars=settings.content_max_chars,
                    min_chars=settings.content_min_chars,
                    fetch=self.fetch,
                )
                using_snippets = not pages
                grounding = pages or results[: max(fetch_count, 1)]
                if using_snippets:
                    log.append(error_thought("No page content could be extracted; using search snippets instead."))
                yield streaming.content_processing(
                    attempted=min(len(results), max(fetch_count, 0)),
                    extracted=len(pages),
                    using_snippets=using_snippets,
                )
                log_service.log_turn_phase(
                    session_id, Phase.CONTENT_PROCESSING.value, "completed",
                    {"results": len(results), "pages": len(pages)},
                )
        used_search = bool(grounding)

        # --- response generation ---
        response_plan = await engine.plan_response(turn.message, analysis, grounding, memory_hits)
        log.extend(response_plan.thoughts)
        yield streaming.response_generation(
            source_count=len(grounding),
            memory_count=len(memory_hits),
            strategy=response_plan.strategy,
        )
        messages = await self._build_messages(turn, memory_context, response_plan.strategy, grounding)

        parts: list[str] = []
        chunk_chars = max(settings.response_chunk_chars, 0)
        buffer = ""
        try:
            try:
                async for piece in self.llm.chat_stream(
                    model, messages, timeout=settings.chat_timeout_seconds, caller="answer",
                ):
                    parts.append(piece)
                    if not chunk_chars:
                        yield streaming.response_chunk(piece)
                        continue
                    buffer += piece
                    while len(buffer) >= chunk_chars:
                        yield streaming.response_chunk(buffer[:chunk_chars])
                        buffer = buffer[chunk_chars:]
            except UpstreamUnavailable as exc:
                raise FatalGenerationFailure(str(exc)) from exc
            if not "".join(parts).strip():
                raise FatalGenerationFailure("the model returned an empty answer")
        except FatalGenerationFailure as exc:
            log_service.log_turn_phase(
                session_id, Phase.RESPONSE_GENERATION.value, "failed", {"error": str(exc)},
            )
            yield streaming.error(
                f"Answer generation failed: {exc}",
                phase=Phase.RESPONSE_GENERATION,
                elapsed_ms=elapsed_ms(),
            )
            return
        if buffer:
            yield streaming.response_chunk(buffer)

        reasoning, answer = extract_thoughts("".join(parts))
        log.extend(reasoning)
        yield streaming.response_complete(answer)
        log_service.log_turn_phase(
            session_id, Phase.RESPONSE_GENERATION.value, "completed", {"chars": len(answer)},
        )

        # --- evaluation ---
        yield streaming.thinking_start(Phase.EVALUATION, "Reviewing the answer")
        evaluation = await engine.evaluate_response(turn.message, answer, len(grounding))
        log.extend(evaluation.thoughts)
        yield streaming.thinking_update(
            Phase.EVALUATION,
            evaluation.thoughts,
            score=evaluation.score,
            assessment=evaluation.assessment,
        )

        # --- memory and session ---
        memory_added: list[MemoryItem] = []
        if turn.use_memory:
            transcript = [
                {"role": "user", "content": turn.message},
                {"role": "assistant", "content": answer},
            ]
            try:
                candidates = await extract_memory_candidates(transcript, llm=self.llm, model=model)
                if candidates:
                    memory_added = await self.memory_store.upsert(candidates)
            except (EvolveError, OSError) as exc:
                log.append(error_thought(f"Saving memory failed: {exc}"))
            # The store keeps items whose embedding failed, unretrievable.
            unembedded = [item for item in memory_added if not item.retrievable]
            if unembedded:
                log.append(error_thought(
                    f"Embedding failed, {len(unembedded)} memory item(s) saved without embeddings."
                ))

        if session_id and self.session_store is not None:
            try:
                await self.session_store.append_turn(
                    session_id, turn.message, answer, used_search=used_search, model=model,
                )
            except (EvolveError, OSError) as exc:
                log.append(error_thought(f"Saving the conversation failed: {exc}"))

        sources = [
            {"idx": idx, "title": result.title, "url": result.url}
            for idx, result in enumerate(grounding, start=1)
        ]
        payload = {
            "answer": answer,
            "usedSearch": used_search,
            "sources": sources,
            "sourceCount": len(sources),
            "thoughtCount": len(log),
            "memoryItemsAdded": len(memory_added),
            "memoryAdded": [{"content": item.content, "tags": list(item.tags)} for item in memory_added],
            "retrievedMemory": [hit.to_dict() for hit in memory_hits],
            "elapsedMs": elapsed_ms(),
            "queriesUsed": queries_used,
            "queriesPlanned": queries,
            "model": model,
            "complexity": complexity,
            "evaluation": {"assessment": evaluation.assessment, "score": evaluation.score},
            "thoughts": log.to_list(),
        }
        log_service.log_turn_phase(
            session_id, Phase.COMPLETE.value, "completed",
            {"used_search": used_search, "sources": len(sources), "elapsed_ms": payload["elapsedMs"]},
        )
        yield streaming.complete(payload)

    async def _build_messages(
        self,
        turn: ChatTurn,
        memory_context: str,
        strategy: str,
        grounding: list[SearchResult],
    ) -> list[dict[str, str]]:
        history = turn.history
        if history is None and turn.session_id and self.session_store is not None:
            try:
                history = await self.session_store.history(turn.session_id, settings.history_window)
            except (EvolveError, OSError) as exc:
                logger.warning(f"Could not load history for session {turn.session_id}: {exc}")
                history = []
        history = (history or [])[-settings.history_window:] if settings.history_window > 0 else []

        messages = [{"role": "system", "content": render_prompt("chat.system_prompt")}]
        if memory_context:
            messages.append({"role": "system", "content": memory_context})
        messages.append({"role": "system", "content": render_prompt("answer.plan_note", plan=strategy)})
        messages.extend(history)

        if grounding:
            using_snippets = not any(result.extracted_content for result in grounding)
            content = render_prompt(
                "answer.grounded_prompt",
                query=turn.message,
                sources=format_sources(grounding),
                note=render_prompt("answer.snippet_note") if using_snippets else "",
            )
        else:
            content = turn.message
        messages.append({"role": "user", "content": content})
        return messages
