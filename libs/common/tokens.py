"""
Token estimation for budgeting decisions.

A character-based approximation (about four characters per token) with no
model-specific tokenizer and no external calls. Use it for comparisons
against budgets only.
"""

import math
from typing import Iterable

from langchain_core.messages import BaseMessage

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` as ``ceil(len / 4)``."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Multimodal content: count only the text parts
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def estimate_message_tokens(message: BaseMessage) -> int:
    return estimate_tokens(message_text(message))


def estimate_messages_tokens(messages: Iterable[BaseMessage]) -> int:
    """Sum of per-message estimates."""
    return sum(estimate_message_tokens(m) for m in messages)
