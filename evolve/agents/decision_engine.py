"""Per-phase judgement calls of a chat turn.

Every backend-calling phase follows the same shape: render the phase prompt,
run the reply through the reasoning-block parser, keep the extracted blocks
as thoughts and work with the cleaned remainder. Backend failures never
escape; each method falls back to a safe default plus an ``error`` thought.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field

from evolve.config import settings
from evolve.errors import UpstreamUnavailable
from evolve.llm_client import OllamaClient, client as llm_client, get_model
from evolve.models.memory import MemoryHit
from evolve.models.search import SearchResult
from evolve.models.thought import Thought, ThoughtType, error_thought
from evolve.services.prompt_store import render_prompt
from evolve.services.reasoning import extract_thoughts

COMPLEXITY_LEVELS = ("low", "medium", "high")

RECENCY_KEYWORDS = (
    "current",
    "latest",
    "recent",
    "today",
    "tonight",
    "yesterday",
    "tomorrow",
    "now",
    "this week",
    "this month",
    "this year",
    "news",
    "breaking",
    "weather",
    "forecast",
    "price",
    "stock",
    "score",
    "live",
    "update",
)
_RECENCY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k).replace(r"\ ", r"\s+") for k in RECENCY_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
_SEARCH_AFFIRMATIVE_RE = re.compile(r"\b(?:yes|search|web|current)\b", re.IGNORECASE)
_COMPLEXITY_LINE_RE = re.compile(
    r"^[ \t*_#>-]*complexity[ \t*_]*[:=-][ \t*_]*(low|medium|high)\b.*$",
    re.IGNORECASE | re.MULTILINE,
)
_SCORE_LINE_RE = re.compile(r"^[ \t*_#>-]*score[ \t*_]*[:=][ \t*_]*(\d+(?:\.\d+)?)\b.*$", re.IGNORECASE | re.MULTILINE)

_COMPLEX_MARKERS = (
    "compare",
    "comparison",
    "versus",
    " vs ",
    "difference between",
    "pros and cons",
    "trade-off",
    "tradeoff",
    "analyze",
    "analyse",
    "explain why",
    "impact of",
    "history of",
    "step by step",
)


@dataclass(slots=True)
class QueryAnalysis:
    summary: str
    complexity: str
    thoughts: list[Thought] = field(default_factory=list)


@dataclass(slots=True)
class SearchDecision:
    needs_search: bool
    confidence: float
    reason: str
    thoughts: list[Thought] = field(default_factory=list)


@dataclass(slots=True)
class ResponsePlan:
    strategy: str
    thoughts: list[Thought] = field(default_factory=list)


@dataclass(slots=True)
class Evaluation:
    assessment: str
    score: float | None = None
    thoughts: list[Thought] = field(default_factory=list)


def estimate_complexity(message: str) -> str:
    """Lexical complexity guess used when the analysis reply names none."""
    text = f" {(message or '').lower()} "
    words = len(text.split())
    markers = sum(1 for marker in _COMPLEX_MARKERS if marker in text)
    questions = text.count("?")
    if words > 40 or markers >= 2 or (markers and questions > 1):
        return "high"
    if words > 12 or markers or questions > 1:
        return "medium"
    return "low"


def default_strategy(source_count: int, memory_count: int) -> str:
    if source_count:
        return f"Answer from the {source_count} web sources, citing them as [#n]."
    if memory_count:
        return "Answer directly, taking the remembered user context into account."
    return "Answer directly from general knowledge."


class DecisionEngine:
    """Stateless strategy object; holds only the backend, model and timeout."""

    def __init__(
        self,
        llm: OllamaClient | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.llm = llm or llm_client()
        self.model = model or get_model()
        self.timeout = settings.chat_timeout_seconds if timeout is None else timeout

    async def _chat(self, prompt: str, caller: str) -> str:
        return await self.llm.chat(
            self.model,
            [{"role": "user", "content": prompt}],
            timeout=self.timeout,
            caller=caller,
        )

    async def analyze_query(self, message: str, memory_context: str = "") -> QueryAnalysis:
        prompt = render_prompt(
            "analysis.prompt",
            message=message,
            memory_context=memory_context or "(none)",
        )
        try:
            reply = await self._chat(prompt, "analysis")
        except UpstreamUnavailable as exc:
            return QueryAnalysis(
                summary="",
                complexity=estimate_complexity(message),
                thoughts=[error_thought(f"Query analysis failed: {exc}")],
            )

        thoughts, cleaned = extract_thoughts(reply, ThoughtType.ANALYSIS)
        match = _COMPLEXITY_LINE_RE.search(cleaned)
        complexity = match.group(1).lower() if match else estimate_complexity(message)
        summary = _COMPLEXITY_LINE_RE.sub("", cleaned).strip()
        if summary:
            thoughts.append(Thought(content=summary, type=ThoughtType.ANALYSIS))
        return QueryAnalysis(summary=summary, complexity=complexity, thoughts=thoughts)

    async def determine_search_need(self, message: str, memory_context: str = "") -> SearchDecision:
        """Keyword hit wins outright; otherwise the backend decides."""
        hit = _RECENCY_RE.search(message or "")
        if hit:
            reason = f"The message mentions \"{hit.group(0)}\", which calls for current information."
            return SearchDecision(
                needs_search=True,
                confidence=0.9,
                reason=reason,
                thoughts=[Thought(content=reason, type=ThoughtType.SEARCH_DECISION)],
            )

        prompt = render_prompt(
            "search_decision.prompt",
            message=message,
            memory_context=memory_context or "(none)",
        )
        try:
            reply = await self.llm.complete(
                self.model,
                prompt,
                timeout=self.timeout,
                caller="search_decision",
            )
        except UpstreamUnavailable as exc:
            return SearchDecision(
                needs_search=False,
                confidence=0.0,
                reason="Search decision unavailable, answering without search.",
                thoughts=[error_thought(f"Search decision failed: {exc}")],
            )

        thoughts, cleaned = extract_thoughts(reply)
        needs_search = bool(_SEARCH_AFFIRMATIVE_RE.search(cleaned))
        if needs_search:
            reason = "The question needs facts a web search can confirm."
        else:
            reason = "The question can be answered without a web search."
        thoughts.append(Thought(content=reason, type=ThoughtType.SEARCH_DECISION))
        return SearchDecision(needs_search=needs_search, confidence=0.6, reason=reason, thoughts=thoughts)

    async def plan_response(
        self,
        message: str,
        analysis: QueryAnalysis,
        sources: list[SearchResult],
        memory_hits: list[MemoryHit],
    ) -> ResponsePlan:
        fallback = default_strategy(len(sources), len(memory_hits))
        prompt = render_prompt(
            "response_plan.prompt",
            message=message,
            analysis=analysis.summary or "(none)",
            source_count=len(sources),
            memory_count=len(memory_hits),
        )
        try:
            reply = await self._chat(prompt, "response_plan")
        except UpstreamUnavailable as exc:
            return ResponsePlan(strategy=fallback, thoughts=[error_thought(f"Response planning failed: {exc}")])

        thoughts, cleaned = extract_thoughts(reply)
        strategy = cleaned.strip() or fallback
        thoughts.append(Thought(content=strategy, type=ThoughtType.REASONING))
        return ResponsePlan(strategy=strategy, thoughts=thoughts)

    async def evaluate_response(self, message: str, answer: str, source_count: int) -> Evaluation:
        prompt = render_prompt(
            "evaluation.prompt",
            message=message,
            answer=answer,
            source_count=source_count,
        )
        try:
            reply = await self._chat(prompt, "evaluation")
        except UpstreamUnavailable as exc:
            return Evaluation(assessment="", thoughts=[error_thought(f"Response evaluation failed: {exc}")])

        thoughts, cleaned = extract_thoughts(reply)
        score: float | None = None
        match = _SCORE_LINE_RE.search(cleaned)
        if match:
            value = float(match.group(1))
            score = value if 0 <= value <= 10 else None
        assessment = _SCORE_LINE_RE.sub("", cleaned).strip()
        if assessment:
            thoughts.append(Thought(content=assessment, type=ThoughtType.REASONING))
        return Evaluation(assessment=assessment, score=score, thoughts=thoughts)
