"""
Tests for context window management.

Tests verify:
- History that fits is returned untouched with no model call
- Sliding keeps a suffix of at most N messages
- Token keeps the longest suffix that fits the remaining budget
- Smart summarises old messages, and degrades when summarisation fails
- Output never exceeds the budget, including the system prompt
"""

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from pydantic import ValidationError

from libs.common.tokens import estimate_messages_tokens, estimate_tokens
from libs.memory.context_window import ContextBudget, ContextWindowManager, fit_suffix
from libs.memory.summarizer import SUMMARY_MESSAGE_PREFIX, HistorySummarizer


def conversation(turns: int, chars: int = 40):
    """Alternating user/assistant messages of ``chars`` characters each (10 tokens at 40)."""
    messages = []
    for i in range(turns):
        body = f"{i:03d}".ljust(chars, "x")
        messages.append(HumanMessage(content=body) if i % 2 == 0 else AIMessage(content=body))
    return messages


SYSTEM_PROMPT = "s" * 80  # 20 tokens


def test_budget_rejects_non_positive_values():
    with pytest.raises(ValidationError):
        ContextBudget(max_tokens=0)
    with pytest.raises(ValidationError):
        ContextBudget(max_tokens=100, window_size=0)


def test_fit_suffix_stops_at_first_message_that_does_not_fit():
    messages = [
        HumanMessage(content="a" * 40),
        AIMessage(content="b" * 400),
        HumanMessage(content="c" * 40),
    ]

    kept = fit_suffix(messages, 30)

    # The small first message would fit, but the suffix must stay contiguous
    assert kept == messages[2:]


@pytest.mark.asyncio
async def test_history_that_fits_is_untouched(make_models):
    models = make_models()
    manager = ContextWindowManager(HistorySummarizer(models))
    history = conversation(4)

    managed = await manager.manage(history, SYSTEM_PROMPT, ContextBudget(max_tokens=1000))

    assert managed.messages == history
    assert managed.summary is None
    assert managed.strategy_applied is None
    assert models.calls == []


@pytest.mark.asyncio
async def test_sliding_keeps_last_n_messages():
    manager = ContextWindowManager()
    history = conversation(20)
    budget = ContextBudget(max_tokens=150, strategy="sliding", window_size=6)

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    assert managed.messages == history[-6:]
    assert managed.strategy_applied == "sliding"


@pytest.mark.asyncio
async def test_sliding_is_clamped_to_budget():
    manager = ContextWindowManager()
    history = conversation(20)
    budget = ContextBudget(max_tokens=60, strategy="sliding", window_size=10)

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    # 40 tokens left after the system prompt: four 10-token messages
    assert managed.messages == history[-4:]
    assert managed.estimated_tokens <= budget.max_tokens


@pytest.mark.asyncio
async def test_token_strategy_keeps_longest_fitting_suffix():
    manager = ContextWindowManager()
    history = conversation(20)
    budget = ContextBudget(max_tokens=95, strategy="token")

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    # 75 tokens left: seven messages fit, an eighth would not
    assert managed.messages == history[-7:]
    assert estimate_tokens(SYSTEM_PROMPT) + estimate_messages_tokens(managed.messages) <= 95
    assert estimate_tokens(SYSTEM_PROMPT) + estimate_messages_tokens(history[-8:]) > 95


@pytest.mark.asyncio
async def test_smart_summarizes_old_messages(make_models):
    models = make_models({"context_summary": "User planned a trip to Lisbon in May."})
    manager = ContextWindowManager(HistorySummarizer(models))
    history = conversation(30)
    budget = ContextBudget(max_tokens=200, strategy="smart", window_size=10)

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    assert managed.strategy_applied == "smart"
    assert managed.summary == "User planned a trip to Lisbon in May."
    assert managed.messages == history[-10:]
    assert models.call_types() == ["context_summary"]

    prompt_messages = managed.prompt_messages()
    assert prompt_messages[0].content.startswith(SUMMARY_MESSAGE_PREFIX)
    assert prompt_messages[1:] == history[-10:]
    assert managed.estimated_tokens <= budget.max_tokens

    summary_prompt = models.calls[0]["messages"][0].content
    assert "User: 000" in summary_prompt
    assert "019" in summary_prompt
    assert "020" not in summary_prompt


@pytest.mark.asyncio
async def test_smart_falls_back_to_recent_messages_when_summary_fails(make_models):
    models = make_models({"context_summary": RuntimeError("model offline")})
    manager = ContextWindowManager(HistorySummarizer(models))
    history = conversation(30)
    budget = ContextBudget(max_tokens=200, strategy="smart", window_size=10)

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    assert managed.summary is None
    assert managed.messages == history[-10:]


@pytest.mark.asyncio
async def test_smart_drops_summary_that_does_not_fit(make_models):
    models = make_models({"context_summary": "z" * 2000})
    manager = ContextWindowManager(HistorySummarizer(models))
    history = conversation(30)
    budget = ContextBudget(max_tokens=100, strategy="smart", window_size=10)

    managed = await manager.manage(history, SYSTEM_PROMPT, budget)

    assert managed.summary is None
    assert managed.estimated_tokens <= budget.max_tokens


@pytest.mark.asyncio
async def test_system_prompt_larger_than_budget_drops_history():
    manager = ContextWindowManager()
    history = conversation(4)

    managed = await manager.manage(history, "s" * 4000, ContextBudget(max_tokens=500, strategy="token"))

    assert managed.messages == []


class TestRefit:
    """Re-trimming after the system prompt grows mid-turn."""

    @pytest.mark.asyncio
    async def test_history_that_still_fits_is_kept(self):
        manager = ContextWindowManager()
        history = conversation(4)
        budget = ContextBudget(max_tokens=200, strategy="token")
        managed = await manager.manage(history, SYSTEM_PROMPT, budget)

        refitted = manager.refit(managed, "s" * 200, budget)

        assert refitted.messages == history
        assert refitted.system_prompt_tokens == 50

    @pytest.mark.asyncio
    async def test_larger_prompt_trims_to_a_suffix_within_budget(self):
        manager = ContextWindowManager()
        history = conversation(10)
        budget = ContextBudget(max_tokens=130, strategy="token")
        managed = await manager.manage(history, SYSTEM_PROMPT, budget)
        assert managed.messages == history

        refitted = manager.refit(managed, "s" * 400, budget)

        assert refitted.messages == history[-3:]
        assert refitted.estimated_tokens <= budget.max_tokens

    @pytest.mark.asyncio
    async def test_summary_is_kept_without_another_model_call(self, make_models):
        models = make_models({"context_summary": "User planned a trip to Lisbon in May."})
        manager = ContextWindowManager(HistorySummarizer(models))
        history = conversation(30)
        budget = ContextBudget(max_tokens=200, strategy="smart", window_size=10)
        managed = await manager.manage(history, SYSTEM_PROMPT, budget)

        refitted = manager.refit(managed, "s" * 400, budget)

        assert refitted.summary == managed.summary
        assert refitted.messages == history[-len(refitted.messages):]
        assert len(refitted.messages) < 10
        assert refitted.estimated_tokens <= budget.max_tokens
        assert models.call_types() == ["context_summary"]
