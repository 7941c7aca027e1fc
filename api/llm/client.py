"""
Chat model client used by the orchestration pipeline.

Wraps two LangChain chat models, the main model that streams answers and a
fast model for cheap auxiliary calls (routing escape hatch, preview check,
summarisation, title generation, escalation analysis). Auxiliary calls are
bounded by a timeout; every failure is raised as ``LLMCallError`` so callers
can choose their degraded branch.
"""

import asyncio
import time
from typing import AsyncIterator, List, Optional, Sequence

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI

from api.observability.llm_tracking import LLMCallTracker
from libs.common.settings import Settings
from libs.common.tokens import estimate_messages_tokens, estimate_tokens, message_text

logger = structlog.get_logger(__name__)


class LLMCallError(RuntimeError):
    """An auxiliary model call failed or timed out."""


def _model_name(model: BaseChatModel) -> str:
    return getattr(model, "model_name", None) or type(model).__name__


class ChatModels:
    """
    Main and fast chat models behind one small interface.

    Features:
    - ``complete()`` for single-shot auxiliary calls with a timeout
    - ``stream()`` for answer tokens from the main model
    - Optional per-turn ``LLMCallTracker`` via ``with_tracker()``

    Usage:
        models = build_chat_models(settings)
        verdict = await models.complete([HumanMessage(...)], call_type="iterative_preview")
        async for token in models.stream(messages):
            ...
    """

    def __init__(
        self,
        chat_model: BaseChatModel,
        fast_model: Optional[BaseChatModel] = None,
        timeout_seconds: float = 15.0,
        tracker: Optional[LLMCallTracker] = None,
    ):
        self.chat_model = chat_model
        self.fast_model = fast_model or chat_model
        self.timeout_seconds = timeout_seconds
        self.tracker = tracker

    def with_tracker(self, tracker: LLMCallTracker) -> "ChatModels":
        return ChatModels(self.chat_model, self.fast_model, self.timeout_seconds, tracker)

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        call_type: str,
        fast: bool = True,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run one request/response call and return the reply text.

        Args:
            messages: Prompt messages
            call_type: Label used for tracking and logs
            fast: Use the fast model instead of the main model
            timeout: Override for the default auxiliary timeout

        Raises:
            LLMCallError: On timeout or any model error
        """
        model = self.fast_model if fast else self.chat_model
        start_time = time.time()
        error: Optional[str] = None
        text = ""
        try:
            response = await asyncio.wait_for(
                model.ainvoke(list(messages)),
                timeout=timeout or self.timeout_seconds,
            )
            text = message_text(response).strip()
            return text
        except asyncio.TimeoutError as e:
            error = "timeout"
            raise LLMCallError(f"{call_type} timed out") from e
        except Exception as e:
            error = str(e)
            raise LLMCallError(f"{call_type} failed: {e}") from e
        finally:
            self._track(call_type, model, start_time, messages, text, error)

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        """Yield answer tokens from the main model. Errors propagate to the caller."""
        start_time = time.time()
        produced: List[str] = []
        error: Optional[str] = None
        try:
            async for chunk in self.chat_model.astream(list(messages)):
                text = message_text(chunk)
                if text:
                    produced.append(text)
                    yield text
        except Exception as e:
            error = str(e)
            raise
        finally:
            self._track("chat_completion", self.chat_model, start_time, messages, "".join(produced), error)

    def _track(self, call_type, model, start_time, messages, reply, error) -> None:
        duration_ms = (time.time() - start_time) * 1000
        if error:
            logger.debug("LLM call failed", call_type=call_type, error=error)
        if self.tracker is None:
            return
        self.tracker.record(
            call_type,
            _model_name(model),
            duration_ms,
            estimate_messages_tokens(messages),
            estimate_tokens(reply),
            error,
        )


def build_chat_models(settings: Settings) -> ChatModels:
    """Create the OpenAI-compatible main and fast models from settings."""
    chat_model = ChatOpenAI(
        model=settings.chat_model,
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        temperature=settings.llm_temperature,
        streaming=True,
    )
    fast_model = ChatOpenAI(
        model=settings.fast_chat_model,
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        temperature=0,
        max_tokens=512,
        timeout=settings.auxiliary_timeout_seconds,
    )
    logger.info(
        "Chat models configured",
        chat_model=settings.chat_model,
        fast_chat_model=settings.fast_chat_model,
        base_url=settings.llm_base_url,
    )
    return ChatModels(chat_model, fast_model, timeout_seconds=settings.auxiliary_timeout_seconds)
