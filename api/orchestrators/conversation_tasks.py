"""
Conversation side tasks run after an answer completes.

Title generation for new conversations, topic extraction for young
conversations, and the source analysis hook. None of these may fail a turn:
errors are logged and the answer stands.
"""

import re
from typing import List, Optional, Protocol, Sequence

import structlog
from langchain_core.messages import HumanMessage

from api.composer.prompts import TITLE_GENERATION_PROMPT, TOPIC_EXTRACTION_PROMPT, interpolate
from api.llm.constrained import parse_string_list
from api.schemas.turn_state import SourceAttribution
from libs.persistence.conversations import ConversationStore

logger = structlog.get_logger(__name__)

_SURROUNDING_QUOTES = re.compile(r"^[\"']|[\"']$")
TITLE_MAX_CHARS = 120
TOPIC_MIN_TURNS = 2
TOPIC_MAX_TURNS = 5


def clean_title(raw: str) -> str:
    return _SURROUNDING_QUOTES.sub("", raw.strip()).strip()[:TITLE_MAX_CHARS]


async def generate_title(user_message: str, assistant_message: str, models) -> Optional[str]:
    """Title for a new conversation, or None if the model call fails or returns nothing."""
    prompt = interpolate(
        TITLE_GENERATION_PROMPT,
        {"userMessage": user_message, "assistantMessage": assistant_message[:1000]},
    )
    try:
        raw = await models.complete([HumanMessage(content=prompt)], call_type="title_generation")
    except Exception as e:
        logger.warning("Title generation failed", error=str(e))
        return None
    title = clean_title(raw)
    return title or None


async def update_topics(
    store: ConversationStore,
    conversation_id: str,
    new_message: str,
    models,
) -> List[str]:
    """
    Refresh a conversation's topics while it is still young (2-5 turns).

    Returns:
        The topics now stored, or the previous ones when nothing changed.
    """
    try:
        conversation = await store.get_conversation(conversation_id)
        if conversation is None:
            return []
        existing = conversation.get("topics", [])
        turns = await store.get_history(conversation_id)
        if not TOPIC_MIN_TURNS <= len(turns) <= TOPIC_MAX_TURNS:
            return existing

        transcript = "\n".join(
            f"{'User' if t['role'] == 'user' else 'Assistant'}: {t['content']}" for t in turns
        )
        prompt = interpolate(TOPIC_EXTRACTION_PROMPT, {"history": transcript, "message": new_message})
        reply = await models.complete([HumanMessage(content=prompt)], call_type="topic_extraction")
        topics = parse_string_list(reply)
        if not topics:
            return existing

        await store.set_topics(conversation_id, topics)
        logger.info("Conversation topics updated", conversation_id=conversation_id, topics=topics)
        return topics
    except Exception as e:
        logger.warning("Topic extraction failed", conversation_id=conversation_id, error=str(e))
        return []


class SourceAnalyzer(Protocol):
    """Marks which sources an answer actually used (sets ``is_referenced``)."""

    async def analyze(self, answer: str, sources: Sequence[SourceAttribution]) -> List[SourceAttribution]:
        ...


class PassthroughSourceAnalyzer:
    """Default hook: leaves sources unannotated."""

    async def analyze(self, answer: str, sources: Sequence[SourceAttribution]) -> List[SourceAttribution]:
        return list(sources)
