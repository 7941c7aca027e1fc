"""
Iterative retrieval: fetch more context when the model signals it needs it.

Runs after the prompt has been assembled and before the answer is streamed.
A cheap preview call asks the fast model whether the context is sufficient;
on NEED_MORE_CONTEXT an uncertainty pre-filter and a JSON analysis decide how
many extra chunks to fetch. New chunks are deduplicated by exact content,
capped at the turn's chunk ceiling, and the system prompt is rebuilt in place.

Every step is best effort: on any failure the turn keeps its existing context.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field

from api.composer.prompts import PREVIEW_CHECK_PROMPT, RETRIEVAL_ANALYSIS_PROMPT, interpolate
from api.llm.constrained import contains_marker, parse_json_object
from api.schemas.turn_state import ContextBlock, QueryRoute, RetrievedChunk, SourceFilter
from api.tools.retrieval_gateway import MAX_TOTAL_CHUNKS, RetrievalGateway, dedupe

logger = structlog.get_logger(__name__)

NEED_MORE_CONTEXT = "NEED_MORE_CONTEXT"
DEFAULT_SUGGESTED_COUNT = 5

UNCERTAINTY_PHRASES = (
    "i don't have",
    "i don't see",
    "i cannot find",
    "i'm not sure",
    "i don't know",
    "no information",
    "not enough information",
    "insufficient",
    "unable to find",
    "cannot determine",
    "more context needed",
    "need more details",
    "need more context",
    "need_more_context",
)


class RetrievalAnalysis(BaseModel):
    """Expected shape of the escalation analysis reply."""

    model_config = ConfigDict(populate_by_name=True)

    should_retrieve: bool = Field(default=False, alias="shouldRetrieve")
    reason: Optional[str] = None
    suggested_count: Optional[int] = Field(default=None, alias="suggestedCount")


@dataclass
class EscalationDecision:
    should_retrieve: bool
    reason: Optional[str] = None
    suggested_count: int = 0


def shows_uncertainty(response: str) -> bool:
    lowered = (response or "").lower()
    return any(phrase in lowered for phrase in UNCERTAINTY_PHRASES)


async def should_retrieve_more(
    query: str,
    partial_response: str,
    current_count: int,
    max_chunks: int,
    models,
) -> EscalationDecision:
    """
    Decide whether more chunks would improve the answer.

    Args:
        query: The search query for this turn
        partial_response: Model output so far (a preview verdict or a draft)
        current_count: Chunks already in context
        max_chunks: The turn's chunk ceiling
        models: Client exposing ``complete``

    Returns:
        EscalationDecision; ``should_retrieve`` is False whenever the reply
        cannot be decoded or the model call fails.
    """
    if current_count >= max_chunks:
        return EscalationDecision(False, "at chunk ceiling")
    if not shows_uncertainty(partial_response):
        return EscalationDecision(False, "no uncertainty")

    prompt = interpolate(
        RETRIEVAL_ANALYSIS_PROMPT,
        {
            "question": query,
            "response": partial_response[:500],
            "current": str(current_count),
            "maximum": str(max_chunks),
        },
    )
    try:
        reply = await models.complete([HumanMessage(content=prompt)], call_type="iterative_preview")
    except Exception as e:
        logger.warning("Retrieval analysis failed", error=str(e))
        return EscalationDecision(False, "analysis failed")

    analysis = parse_json_object(reply, RetrievalAnalysis)
    if analysis is None:
        logger.info("Retrieval analysis unparseable, not escalating")
        return EscalationDecision(False, "unparseable analysis")

    suggested = analysis.suggested_count if analysis.suggested_count and analysis.suggested_count > 0 else DEFAULT_SUGGESTED_COUNT
    return EscalationDecision(
        should_retrieve=analysis.should_retrieve,
        reason=analysis.reason,
        suggested_count=min(suggested, max_chunks - current_count),
    )


@dataclass
class EscalationOutcome:
    chunks: List[RetrievedChunk]
    blocks: Optional[List[ContextBlock]] = None
    system_prompt: Optional[str] = None
    added: int = 0
    reason: Optional[str] = None
    steps: List[str] = field(default_factory=list)

    @property
    def escalated(self) -> bool:
        return self.added > 0


class IterativeRetrievalController:
    """
    Optional mid-turn context expansion.

    Features:
    - Preview check only on routes that allow iterative retrieval
    - Routes upgraded by the escape hatch skip the preview (already judged insufficient)
    - Exact-content dedupe and a hard chunk ceiling
    - System prompt replaced in place exactly once on success

    Usage:
        controller = IterativeRetrievalController(gateway, models)
        outcome = await controller.maybe_expand(
            query=search_query, route=route, messages=messages,
            chunks=result.chunks, source_filter="all", build_prompt=render,
        )
    """

    def __init__(self, gateway: RetrievalGateway, models, max_total_chunks: int = MAX_TOTAL_CHUNKS):
        self.gateway = gateway
        self.models = models
        self.max_total_chunks = max(1, min(max_total_chunks, MAX_TOTAL_CHUNKS))

    async def _preview(self, messages: Sequence[BaseMessage]) -> str:
        return await self.models.complete(
            [*messages, HumanMessage(content=PREVIEW_CHECK_PROMPT)],
            call_type="iterative_preview",
        )

    async def maybe_expand(
        self,
        *,
        query: str,
        route: QueryRoute,
        messages: List[BaseMessage],
        chunks: List[RetrievedChunk],
        source_filter: SourceFilter,
        build_prompt: Callable[[List[ContextBlock]], str],
    ) -> EscalationOutcome:
        """
        Expand the context if the model asks for more.

        ``messages[0]`` must be the system prompt; it is replaced only when
        new chunks were actually added.
        """
        outcome = EscalationOutcome(chunks=list(chunks))
        count = len(chunks)
        if route.skip_iterative_retrieval:
            outcome.reason = "route skips iterative retrieval"
            return outcome
        if not 0 < count < self.max_total_chunks:
            outcome.reason = f"chunk count {count} outside (0, {self.max_total_chunks})"
            return outcome

        try:
            if route.upgraded:
                signal = NEED_MORE_CONTEXT
                outcome.steps.append("escape_hatch_signal")
            else:
                signal = await self._preview(messages)
                outcome.steps.append("preview")
                if not contains_marker(signal, NEED_MORE_CONTEXT):
                    outcome.reason = "preview sufficient"
                    return outcome

            decision = await should_retrieve_more(query, signal, count, self.max_total_chunks, self.models)
            outcome.steps.append("analysis")
            if not decision.should_retrieve or decision.suggested_count <= 0:
                outcome.reason = decision.reason or "analysis declined"
                return outcome

            fetched = await self.gateway.smart_search(
                query, source_filter, decision.suggested_count, use_model_judgment=False
            )
            outcome.steps.append("fetch")
            new_chunks = dedupe(chunks, fetched.chunks)[: self.max_total_chunks - count]
            if not new_chunks:
                outcome.reason = "no new chunks"
                return outcome

            expanded = [*chunks, *new_chunks]
            blocks = await self.gateway.build_context_blocks(expanded)
            system_prompt = build_prompt(blocks)
        except Exception as e:
            logger.warning("Iterative retrieval failed, keeping existing context", error=str(e))
            outcome.reason = "failed"
            return outcome

        messages[0] = SystemMessage(content=system_prompt)
        outcome.chunks = expanded
        outcome.blocks = blocks
        outcome.system_prompt = system_prompt
        outcome.added = len(new_chunks)
        outcome.reason = decision.reason
        logger.info(
            "Iterative retrieval added context",
            added=len(new_chunks),
            total=len(expanded),
            reason=decision.reason,
        )
        return outcome
