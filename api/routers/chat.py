"""Chat endpoint: one streamed answer per user message."""

from __future__ import annotations

from typing import List

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from api.dependencies import AppServices, get_services
from api.models import ChatMessageIn, ChatRequest
from api.observability.llm_tracking import LLMCallTracker
from api.orchestrators.chat_pipeline import ChatPipeline, budget_from_settings
from api.orchestrators.response_stream import ResponseStreamController, StreamTurn

logger = structlog.get_logger(__name__)

router = APIRouter()


def to_langchain_messages(messages: List[ChatMessageIn]) -> List[BaseMessage]:
    return [
        HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
        for m in messages
    ]


@router.post("/chat", tags=["Chat"])
async def chat(payload: ChatRequest, services: AppServices = Depends(get_services)) -> StreamingResponse:
    """
    Answer the last user message as a plain-text token stream.

    The body is the answer text followed by one trailer line:
    ``\\n__SOURCES__:{"type": "sources", "sources": [...], "conversationId": "..."}``.
    A body that ends without the trailer means the answer was interrupted.

    Args:
        payload: Conversation so far plus retrieval options
        services: Shared process services

    Returns:
        StreamingResponse: ``text/plain`` answer stream
    """
    settings = services.settings
    store = services.store

    conversation_id = payload.conversation_id
    if not conversation_id or await store.get_conversation(conversation_id) is None:
        conversation_id = await store.create_conversation()
    await store.add_turn(conversation_id, "user", payload.query)

    tracker = LLMCallTracker(conversation_id=conversation_id)
    models = services.models.with_tracker(tracker)
    history = to_langchain_messages(payload.history)

    pipeline = ChatPipeline(services.gateway, models, budget_from_settings(settings))
    prepared = await pipeline.prepare(
        payload.query,
        history,
        source_filter=payload.resolved_source_filter,
        source_count=payload.source_count,
        profile=payload.profile,
    )
    sources = prepared.sources

    assistant_turn_id = await store.add_turn(
        conversation_id,
        "assistant",
        "",
        sources=[s.model_dump(mode="json", by_alias=True) for s in sources],
    )

    controller = ResponseStreamController(
        StreamTurn(
            conversation_id=conversation_id,
            assistant_turn_id=assistant_turn_id,
            user_message=payload.query,
            is_first_message=not history,
            sources=sources,
            skip_source_analysis=prepared.route.skip_source_analysis,
        ),
        store,
        models,
        background=services.background,
        source_analyzer=services.source_analyzer,
        tracker=tracker,
        persist_interval_seconds=settings.persist_interval_seconds,
        persist_min_chars=settings.persist_min_chars,
    )

    logger.info(
        "Streaming answer",
        conversation_id=conversation_id,
        assistant_turn_id=assistant_turn_id,
        route=prepared.route.path.value,
        sources=len(sources),
    )
    return StreamingResponse(
        controller.stream(models.stream(prepared.messages)),
        media_type="text/plain; charset=utf-8",
        headers={
            "X-Conversation-Id": conversation_id,
            "X-Query-Route": prepared.route.path.value,
        },
    )
