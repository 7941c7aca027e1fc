"""
Search query preparation.

Follow-up questions that lean on earlier turns ("what about the second
one?") retrieve poorly as-is, so they are rewritten into self-contained
questions using recent history. First messages are instead enriched with
the user's profile.
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage, HumanMessage

from api.composer.prompts import REPHRASE_PROMPT, build_search_query_with_user_context, interpolate
from api.schemas.turn_state import QueryRoute, UserProfile
from libs.memory.summarizer import format_transcript

logger = structlog.get_logger(__name__)

REPHRASE_HISTORY_MESSAGES = 5
SHORT_QUERY_CHARS = 20

_REFERENCE = re.compile(r"\b(it|this|that|these|those|they|them|he|she|his|her|their)\b", re.IGNORECASE)


@dataclass
class SearchQuery:
    text: str
    was_rephrased: bool = False


def needs_rephrasing(query: str, history: Sequence[BaseMessage]) -> bool:
    """True for follow-ups with reference words, continuation openers, or very short text."""
    if not history:
        return False
    lowered = query.strip().lower()
    return bool(
        _REFERENCE.search(query)
        or lowered.startswith(("what about", "how about", "and "))
        or len(query.strip()) < SHORT_QUERY_CHARS
    )


async def rephrase_query(query: str, history: Sequence[BaseMessage], models) -> SearchQuery:
    """
    Rewrite a follow-up into a self-contained question.

    Args:
        query: Current user query
        history: Prior messages, oldest first
        models: Client exposing ``complete``

    Returns:
        SearchQuery; the raw query unchanged when no rewrite is needed or
        the model call fails.
    """
    if not needs_rephrasing(query, history):
        return SearchQuery(query)

    prompt = interpolate(
        REPHRASE_PROMPT,
        {"history": format_transcript(history[-REPHRASE_HISTORY_MESSAGES:]), "question": query},
    )
    try:
        rephrased = await models.complete([HumanMessage(content=prompt)], call_type="query_rephrasing")
    except Exception as e:
        logger.warning("Query rephrasing failed, using original query", error=str(e))
        return SearchQuery(query)

    rephrased = rephrased.strip().strip('"').strip()
    if not rephrased:
        return SearchQuery(query)

    logger.info("Follow-up query rephrased", original=query, rephrased=rephrased)
    return SearchQuery(rephrased, was_rephrased=True)


async def prepare_search_query(
    query: str,
    history: Sequence[BaseMessage],
    route: QueryRoute,
    models,
    profile: Optional[UserProfile] = None,
) -> SearchQuery:
    """Search text for this turn: profile-enriched on the first message, rephrased on slow follow-ups."""
    if not history:
        return SearchQuery(build_search_query_with_user_context(query, profile))
    if route.skip_rephrasing:
        return SearchQuery(query)
    return await rephrase_query(query, history, models)
