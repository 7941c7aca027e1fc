"""
Chat turn pipeline.

Prepares everything the answer stream needs for one user message:

    route -> search query -> retrieval -> system prompt -> history trimming
          -> escape hatch (fast path) -> iterative retrieval (slow path)

The result is the final prompt message list plus the chunks and sources the
answer is grounded on. Only the answer stream itself can fail a turn; every
step here degrades on error.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from api.composer.prompts import build_system_prompt
from api.orchestrators.iterative_retrieval import EscalationOutcome, IterativeRetrievalController
from api.orchestrators.query_rewriter import SearchQuery, prepare_search_query
from api.orchestrators.query_router import check_escape_hatch, route_query
from api.schemas.turn_state import (
    ContextBlock,
    QueryRoute,
    RetrievalResult,
    RetrievedChunk,
    SourceAttribution,
    SourceFilter,
    UserProfile,
)
from api.tools.retrieval_gateway import RetrievalGateway
from libs.common.settings import Settings
from libs.memory.context_window import ContextBudget, ContextWindowManager, ManagedContext
from libs.memory.summarizer import HistorySummarizer

logger = structlog.get_logger(__name__)


@dataclass
class PreparedTurn:
    """Prompt and grounding for one answer."""

    messages: List[BaseMessage]
    route: QueryRoute
    search_query: SearchQuery
    retrieval: RetrievalResult
    context: ManagedContext
    system_prompt: str
    chunks: List[RetrievedChunk] = field(default_factory=list)
    escalation: Optional[EscalationOutcome] = None

    @property
    def sources(self) -> List[SourceAttribution]:
        return [SourceAttribution.from_chunk(chunk) for chunk in self.chunks]


def budget_from_settings(settings: Settings) -> ContextBudget:
    return ContextBudget(
        max_tokens=settings.max_context_tokens,
        strategy=settings.context_strategy,
        window_size=settings.sliding_window_size,
    )


class ChatPipeline:
    """
    Orchestrates context assembly for a chat turn.

    Features:
    - Deterministic fast/slow routing before any model call
    - Follow-up rephrasing and first-message profile enrichment
    - Token-budgeted history with optional summary
    - Escape hatch and iterative retrieval, never both on one chunk set

    Usage:
        pipeline = ChatPipeline(gateway, models, budget)
        prepared = await pipeline.prepare(query, history, source_filter="all")
        async for token in models.stream(prepared.messages):
            ...
    """

    def __init__(self, gateway: RetrievalGateway, models, budget: ContextBudget):
        self.gateway = gateway.with_models(models)
        self.models = models
        self.budget = budget
        self.context_manager = ContextWindowManager(HistorySummarizer(models))

    async def prepare(
        self,
        query: str,
        history: Sequence[BaseMessage],
        *,
        source_filter: SourceFilter = "all",
        source_count: Optional[int] = None,
        profile: Optional[UserProfile] = None,
    ) -> PreparedTurn:
        """
        Build the prompt for ``query``.

        Args:
            query: Current user message
            history: Prior messages, oldest first
            source_filter: "all", "none" or an allow-list of source kinds
            source_count: Requested chunk ceiling (clamped to [1, 35])
            profile: Optional user profile

        Returns:
            PreparedTurn with the final messages, route and grounding
        """
        start_time = time.time()
        is_first_message = not history
        use_sources = source_filter != "none"
        chunk_limit = self.gateway.clamp(source_count)

        route = route_query(query, is_first_message, history)
        search_query = await prepare_search_query(query, history, route, self.models, profile)
        retrieval = await self.gateway.retrieve(search_query.text, route, source_filter, chunk_limit)

        def render(blocks: List[ContextBlock]) -> str:
            return build_system_prompt(blocks, profile, use_sources)

        system_prompt = render(retrieval.blocks)
        context = await self.context_manager.manage(history, system_prompt, self.budget)
        messages: List[BaseMessage] = [
            SystemMessage(content=system_prompt),
            *context.prompt_messages(),
            HumanMessage(content=query),
        ]

        if use_sources:
            route = await check_escape_hatch(route, retrieval.count, system_prompt, query, self.models)

        controller = IterativeRetrievalController(self.gateway, self.models, chunk_limit)
        escalation = await controller.maybe_expand(
            query=search_query.text,
            route=route,
            messages=messages,
            chunks=retrieval.chunks,
            source_filter=source_filter,
            build_prompt=render,
        )
        if escalation.system_prompt is not None:
            system_prompt = escalation.system_prompt
            context = self.context_manager.refit(context, system_prompt, self.budget)
            messages[1:-1] = context.prompt_messages()

        logger.info(
            "Turn prepared",
            path=route.path.value,
            upgraded=route.upgraded,
            rephrased=search_query.was_rephrased,
            retrieval_strategy=retrieval.strategy,
            chunks=len(escalation.chunks),
            escalated=escalation.escalated,
            history_kept=len(context.messages),
            summarized=context.summary is not None,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return PreparedTurn(
            messages=messages,
            route=route,
            search_query=search_query,
            retrieval=retrieval,
            context=context,
            system_prompt=system_prompt,
            chunks=escalation.chunks,
            escalation=escalation,
        )
