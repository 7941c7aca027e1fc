"""
Conversation history summarisation.

Compresses the older part of a conversation into a short summary so the
context window manager can keep long-range memory within a token budget.
"""

from typing import List, Sequence

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from libs.common.tokens import estimate_messages_tokens, estimate_tokens, message_text

logger = structlog.get_logger(__name__)

SUMMARY_PROMPT = """Summarize the following conversation history in 2-3 concise paragraphs. Keep the facts, names, decisions and open questions that later messages may refer to.

{history}

Summary:"""

SUMMARY_MESSAGE_PREFIX = "Previous conversation summary:\n"


def format_transcript(messages: Sequence[BaseMessage]) -> str:
    """Render messages as ``User: ...`` / ``Assistant: ...`` lines."""
    lines: List[str] = []
    for message in messages:
        if isinstance(message, HumanMessage):
            role = "User"
        elif isinstance(message, AIMessage):
            role = "Assistant"
        elif isinstance(message, SystemMessage):
            role = "System"
        else:
            role = message.type.capitalize()
        lines.append(f"{role}: {message_text(message)}")
    return "\n".join(lines)


def summary_message(summary: str) -> SystemMessage:
    return SystemMessage(content=f"{SUMMARY_MESSAGE_PREFIX}{summary}")


class HistorySummarizer:
    """
    Summarises old conversation messages with the fast model.

    Features:
    - One model call per summary
    - Raises on failure so the caller decides how to degrade
    - Logs the compression ratio

    Usage:
        summarizer = HistorySummarizer(models)
        summary = await summarizer.summarize(old_messages)
    """

    def __init__(self, models):
        """
        Initialize history summarizer.

        Args:
            models: Client exposing ``complete(messages, call_type=..., fast=...)``
        """
        self.models = models

    async def summarize(self, messages: Sequence[BaseMessage]) -> str:
        prompt = SUMMARY_PROMPT.format(history=format_transcript(messages))
        summary = await self.models.complete(
            [HumanMessage(content=prompt)],
            call_type="context_summary",
            fast=True,
        )
        summary = summary.strip()
        if not summary:
            raise ValueError("Summarizer returned an empty summary")

        original_tokens = estimate_messages_tokens(messages)
        logger.debug(
            "History summarized",
            message_count=len(messages),
            original_tokens=original_tokens,
            summary_tokens=estimate_tokens(summary),
        )
        return summary
