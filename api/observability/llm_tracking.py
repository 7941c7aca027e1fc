"""
Per-turn tracking of language model calls.

Every auxiliary and streaming call made while answering one chat message is
recorded here and summarised in a single structured log line when the turn
finishes.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class LLMCallRecord:
    call_type: str
    model: str
    duration_ms: float
    prompt_tokens: int
    completion_tokens: int
    error: Optional[str] = None


@dataclass
class LLMCallTracker:
    """
    Aggregates the model calls made during one request.

    Usage:
        tracker = LLMCallTracker(conversation_id="c1")
        tracker.record("title_generation", "fast-model", 120.5, 80, 6)
        tracker.log_summary()
    """

    conversation_id: Optional[str] = None
    request_type: str = "user_chat"
    calls: List[LLMCallRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def record(
        self,
        call_type: str,
        model: str,
        duration_ms: float,
        prompt_tokens: int,
        completion_tokens: int,
        error: Optional[str] = None,
    ) -> None:
        self.calls.append(
            LLMCallRecord(
                call_type=call_type,
                model=model,
                duration_ms=round(duration_ms, 2),
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                error=error,
            )
        )

    def counts_by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for call in self.calls:
            counts[call.call_type] = counts.get(call.call_type, 0) + 1
        return counts

    @property
    def total_tokens(self) -> int:
        return sum(c.prompt_tokens + c.completion_tokens for c in self.calls)

    def log_summary(self) -> None:
        logger.info(
            "LLM calls for request",
            conversation_id=self.conversation_id,
            request_type=self.request_type,
            call_count=len(self.calls),
            calls=self.counts_by_type(),
            failed=sum(1 for c in self.calls if c.error),
            estimated_tokens=self.total_tokens,
            duration_ms=round((time.time() - self.started_at) * 1000, 2),
        )
