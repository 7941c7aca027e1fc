"""
Response stream controller.

Turns the model's token stream into the HTTP response body while keeping the
in-progress answer durable:

    STREAMING -> FINALIZING -> DONE      stream ended normally
    STREAMING -> CANCELLED  -> DONE      client went away
    STREAMING -> ERRORED    -> DONE      model stream raised

Tokens are forwarded as soon as they arrive. The accumulated answer is
handed to a non-blocking writer whenever the persist interval has elapsed or
enough new characters have accumulated. Every exit path ends with a flush of
whatever was produced. A normal finish also titles new conversations, runs
the source analysis hook and appends the sources trailer.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import structlog

from api.observability.llm_tracking import LLMCallTracker
from api.orchestrators.conversation_tasks import (
    PassthroughSourceAnalyzer,
    SourceAnalyzer,
    generate_title,
    update_topics,
)
from api.schemas.turn_state import SourceAttribution, StreamPhase, StreamState
from libs.common.background import BackgroundTaskGroup, LatestValueWriter
from libs.persistence.conversations import ConversationStore

logger = structlog.get_logger(__name__)

SOURCES_SENTINEL = "\n__SOURCES__:"


class ResponseStreamError(RuntimeError):
    """The model stream failed after the partial answer was flushed."""


@dataclass
class StreamTurn:
    """What the controller needs to know about the turn it is streaming."""

    conversation_id: str
    assistant_turn_id: str
    user_message: str
    is_first_message: bool = False
    sources: List[SourceAttribution] = field(default_factory=list)
    skip_source_analysis: bool = False


def build_trailer(sources: List[SourceAttribution], conversation_id: str) -> str:
    payload = {
        "type": "sources",
        "sources": [s.model_dump(mode="json", by_alias=True) for s in sources],
        "conversationId": conversation_id,
    }
    return SOURCES_SENTINEL + json.dumps(payload)


class ResponseStreamController:
    """
    Streams one answer and persists it as it grows.

    Features:
    - Immediate token forwarding, persistence never awaited inline
    - Time- or size-triggered background persists through ``LatestValueWriter``
    - Final synchronous persist after pending writes drain
    - Partial answers flushed on disconnect and on model errors
    - Title, topics and source analysis on normal completion

    Usage:
        controller = ResponseStreamController(turn, store, models)
        return StreamingResponse(controller.stream(models.stream(messages)), media_type="text/plain")
    """

    def __init__(
        self,
        turn: StreamTurn,
        store: ConversationStore,
        models,
        *,
        writer: Optional[LatestValueWriter] = None,
        background: Optional[BackgroundTaskGroup] = None,
        source_analyzer: Optional[SourceAnalyzer] = None,
        tracker: Optional[LLMCallTracker] = None,
        persist_interval_seconds: float = 2.0,
        persist_min_chars: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.turn = turn
        self.store = store
        self.models = models
        self.writer = writer or LatestValueWriter(store.persist_answer)
        self.background = background or BackgroundTaskGroup("response_stream")
        self.source_analyzer = source_analyzer or PassthroughSourceAnalyzer()
        self.tracker = tracker
        self.persist_interval_seconds = persist_interval_seconds
        self.persist_min_chars = persist_min_chars
        self.clock = clock
        self.state = StreamState(assistant_turn_id=turn.assistant_turn_id, last_persist_time=clock())
        self.sources: List[SourceAttribution] = list(turn.sources)

    def _maybe_persist(self) -> None:
        now = self.clock()
        grown = len(self.state.full_response) - self.state.last_persist_length
        if now - self.state.last_persist_time < self.persist_interval_seconds and grown < self.persist_min_chars:
            return
        self.writer.submit(self.state.assistant_turn_id, self.state.full_response)
        self.state.last_persist_time = now
        self.state.last_persist_length = len(self.state.full_response)

    async def _flush_partial(self, phase: StreamPhase) -> None:
        """Persist what has accumulated; the write survives a cancelled caller."""
        self.state.phase = phase
        task = self.background.spawn(
            self.writer.flush(self.state.assistant_turn_id, self.state.full_response),
            "flush_partial",
        )
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.debug("Partial flush continuing in background", turn_id=self.state.assistant_turn_id)
            raise
        finally:
            logger.info(
                "Partial answer flushed",
                phase=phase.value,
                turn_id=self.state.assistant_turn_id,
                chars=len(self.state.full_response),
            )
            self.state.phase = StreamPhase.DONE
            if self.tracker is not None:
                self.tracker.log_summary()

    async def stream(
        self,
        tokens: AsyncIterator[str],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        """
        Body generator for the HTTP response.

        Args:
            tokens: Model token stream (finite, not restartable)
            is_disconnected: Optional probe for client disconnects

        Raises:
            ResponseStreamError: When the model stream fails; raised after the
                partial answer was flushed so the response ends abnormally.
        """
        start_time = time.time()
        try:
            try:
                async for token in tokens:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info("Client disconnected during stream", turn_id=self.state.assistant_turn_id)
                        await self._flush_partial(StreamPhase.CANCELLED)
                        return
                    self.state.full_response += token
                    self._maybe_persist()
                    yield token.encode("utf-8")
            finally:
                await self._close_upstream(tokens)
        except (asyncio.CancelledError, GeneratorExit):
            await self._flush_partial(StreamPhase.CANCELLED)
            raise
        except Exception as e:
            logger.error(
                "Model stream failed",
                turn_id=self.state.assistant_turn_id,
                chars=len(self.state.full_response),
                error=str(e),
                exc_info=True,
            )
            await self._flush_partial(StreamPhase.ERRORED)
            raise ResponseStreamError(str(e)) from e

        trailer = await self._finalize()
        logger.info(
            "Stream completed",
            turn_id=self.state.assistant_turn_id,
            chars=len(self.state.full_response),
            sources=len(self.sources),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        if self.tracker is not None:
            self.tracker.log_summary()
        yield trailer.encode("utf-8")

    async def _close_upstream(self, tokens: AsyncIterator[str]) -> None:
        """Release the model stream; a no-op once it is exhausted or already closed."""
        aclose = getattr(tokens, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("Closing model stream failed", turn_id=self.state.assistant_turn_id, error=str(e))

    async def _finalize(self) -> str:
        self.state.phase = StreamPhase.FINALIZING
        turn = self.turn
        answer = self.state.full_response

        if not await self.writer.flush(turn.assistant_turn_id, answer):
            logger.error("Final answer persist failed", turn_id=turn.assistant_turn_id)

        if turn.is_first_message:
            title = await generate_title(turn.user_message, answer, self.models)
            if title:
                try:
                    await self.store.set_title(turn.conversation_id, title)
                except Exception as e:
                    logger.warning("Saving conversation title failed", error=str(e))

        self.background.spawn(
            update_topics(self.store, turn.conversation_id, answer, self.models),
            "topic_extraction",
        )

        if self.sources and not turn.skip_source_analysis:
            try:
                self.sources = await self.source_analyzer.analyze(answer, self.sources)
            except Exception as e:
                logger.warning("Source analysis failed", error=str(e))

        if self.sources:
            try:
                await self.store.update_sources(
                    turn.assistant_turn_id,
                    [s.model_dump(mode="json", by_alias=True) for s in self.sources],
                )
            except Exception as e:
                logger.warning("Saving analyzed sources failed", error=str(e))

        self.state.phase = StreamPhase.DONE
        return build_trailer(self.sources, turn.conversation_id)
