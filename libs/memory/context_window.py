"""
Context window management for conversation history.

Fits prior messages into a token budget before the final prompt is built:
- sliding: keep the last N messages
- token: keep the longest suffix that fits the remaining budget
- smart: keep the last N verbatim and summarise everything older

History that already fits is returned untouched, with no model call.
Token counts are ``ceil(chars / 4)`` estimates.
"""

from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ConfigDict, Field

from libs.common.tokens import estimate_message_tokens, estimate_messages_tokens, estimate_tokens
from libs.memory.summarizer import HistorySummarizer, summary_message

logger = structlog.get_logger(__name__)

ContextStrategy = Literal["sliding", "token", "smart"]


class ContextBudget(BaseModel):
    """Token budget for history trimming. Immutable within a turn."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(gt=0)
    strategy: ContextStrategy = "smart"
    window_size: int = Field(default=10, gt=0)


@dataclass
class ManagedContext:
    messages: List[BaseMessage]
    summary: Optional[str] = None
    strategy_applied: Optional[str] = None
    system_prompt_tokens: int = 0

    def prompt_messages(self) -> List[BaseMessage]:
        """History as it should appear after the system prompt: summary first, then messages."""
        if self.summary:
            return [summary_message(self.summary), *self.messages]
        return list(self.messages)

    @property
    def estimated_tokens(self) -> int:
        return self.system_prompt_tokens + estimate_messages_tokens(self.prompt_messages())


def fit_suffix(messages: Sequence[BaseMessage], available_tokens: int) -> List[BaseMessage]:
    """
    Longest contiguous suffix of ``messages`` whose estimate fits ``available_tokens``.

    Walks backward from the newest message and stops at the first one that
    does not fit; messages are never truncated.
    """
    kept: List[BaseMessage] = []
    used = 0
    for message in reversed(messages):
        tokens = estimate_message_tokens(message)
        if used + tokens > available_tokens:
            break
        kept.append(message)
        used += tokens
    kept.reverse()
    return kept


class ContextWindowManager:
    """
    Trims conversation history to a token budget.

    Features:
    - Three interchangeable strategies (sliding, token, smart)
    - No model call when the history already fits
    - Summarisation failures degrade to recent messages only
    - Output (system + summary + messages) always fits the budget

    Usage:
        manager = ContextWindowManager(HistorySummarizer(models))
        managed = await manager.manage(history, system_prompt, budget)
        messages = [SystemMessage(system_prompt), *managed.prompt_messages(), HumanMessage(query)]
    """

    def __init__(self, summarizer: Optional[HistorySummarizer] = None):
        self.summarizer = summarizer

    async def manage(
        self,
        history: Sequence[BaseMessage],
        system_prompt: str,
        budget: ContextBudget,
    ) -> ManagedContext:
        """
        Fit ``history`` (excluding the current message) into ``budget``.

        Args:
            history: Prior conversation messages, oldest first
            system_prompt: Rendered system prompt for this turn
            budget: Token budget and strategy

        Returns:
            ManagedContext with the kept messages and an optional summary
        """
        system_tokens = estimate_tokens(system_prompt)
        available = budget.max_tokens - system_tokens
        history_tokens = estimate_messages_tokens(history)

        if history_tokens <= available:
            return ManagedContext(list(history), None, None, system_tokens)

        if available <= 0:
            logger.warning(
                "System prompt exceeds context budget, dropping history",
                system_tokens=system_tokens,
                max_tokens=budget.max_tokens,
            )
            return ManagedContext([], None, budget.strategy, system_tokens)

        if budget.strategy == "sliding":
            kept = fit_suffix(history[-budget.window_size:], available)
            managed = ManagedContext(kept, None, "sliding", system_tokens)
        elif budget.strategy == "token":
            managed = ManagedContext(fit_suffix(history, available), None, "token", system_tokens)
        else:
            managed = await self._smart(history, available, budget.window_size, system_tokens)

        logger.info(
            "Context window trimmed",
            strategy=managed.strategy_applied,
            original_messages=len(history),
            kept_messages=len(managed.messages),
            summarized=managed.summary is not None,
            history_tokens=history_tokens,
            estimated_tokens=managed.estimated_tokens,
            max_tokens=budget.max_tokens,
        )
        return managed

    def refit(self, context: ManagedContext, system_prompt: str, budget: ContextBudget) -> ManagedContext:
        """
        Re-trim already managed history against a replacement system prompt.

        Used after the system prompt grows mid-turn. Makes no model call: an
        existing summary is kept if it still fits, otherwise dropped, and the
        kept messages shrink to the longest suffix that fits.
        """
        system_tokens = estimate_tokens(system_prompt)
        if system_tokens + estimate_messages_tokens(context.prompt_messages()) <= budget.max_tokens:
            return ManagedContext(context.messages, context.summary, context.strategy_applied, system_tokens)

        available = max(budget.max_tokens - system_tokens, 0)
        summary = context.summary
        if summary:
            summary_tokens = estimate_message_tokens(summary_message(summary))
            if summary_tokens >= available:
                summary = None
            else:
                available -= summary_tokens

        refitted = ManagedContext(
            fit_suffix(context.messages, available),
            summary,
            context.strategy_applied or budget.strategy,
            system_tokens,
        )
        logger.info(
            "Context window refitted to a larger system prompt",
            previous_messages=len(context.messages),
            kept_messages=len(refitted.messages),
            summary_kept=summary is not None,
            system_tokens=system_tokens,
            estimated_tokens=refitted.estimated_tokens,
            max_tokens=budget.max_tokens,
        )
        return refitted

        return managed

    async def _smart(
        self,
        history: Sequence[BaseMessage],
        available: int,
        window_size: int,
        system_tokens: int,
    ) -> ManagedContext:
        recent = list(history[-window_size:])
        old = list(history[:-window_size]) if len(history) > window_size else []

        summary: Optional[str] = None
        if old and self.summarizer is not None:
            try:
                summary = await self.summarizer.summarize(old)
            except Exception as e:
                logger.warning("Summarization failed, keeping recent messages only", error=str(e))

        summary_tokens = 0
        if summary:
            summary_tokens = estimate_message_tokens(summary_message(summary))
            if summary_tokens >= available:
                logger.warning(
                    "Summary does not fit context budget, dropping it",
                    summary_tokens=summary_tokens,
                    available_tokens=available,
                )
                summary, summary_tokens = None, 0

        kept = fit_suffix(recent, available - summary_tokens)
        return ManagedContext(kept, summary, "smart", system_tokens)
