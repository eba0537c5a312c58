from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    THINKING_START = "thinking_start"
    THINKING_UPDATE = "thinking_update"
    SEARCH_START = "search_start"
    SEARCH_RESULTS = "search_results"
    CONTENT_PROCESSING = "content_processing"
    RESPONSE_GENERATION = "response_generation"
    RESPONSE_CHUNK = "response_chunk"
    RESPONSE_COMPLETE = "response_complete"
    COMPLETE = "complete"
    ERROR = "error"


class Phase(str, Enum):
    ANALYSIS = "analysis"
    SEARCH_DECISION = "search_decision"
    SEARCH_PLANNING = "search_planning"
    SEARCH_ROUND = "search_round"
    CONTENT_PROCESSING = "content_processing"
    RESPONSE_GENERATION = "response_generation"
    EVALUATION = "evaluation"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def phase(self) -> str | None:
        return self.data.get("phase")

    def to_sse(self) -> dict[str, str]:
        return {"event": self.event.value, "data": json.dumps(self.data)}
