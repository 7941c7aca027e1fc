"""
Tests for the Redis conversation store.

Tests verify:
- Conversations and turns are created and read back in order
- Answer persistence is a full replace and idempotent
- Unknown turns are reported rather than silently created
- Sources, titles and topics round-trip as JSON
"""

import pytest


@pytest.mark.asyncio
async def test_create_and_read_conversation(store):
    conversation_id = await store.create_conversation()

    conversation = await store.get_conversation(conversation_id)

    assert conversation["id"] == conversation_id
    assert conversation["title"] == "New Conversation"
    assert conversation["topics"] == []


@pytest.mark.asyncio
async def test_missing_conversation_is_none(store):
    assert await store.get_conversation("does-not-exist") is None


@pytest.mark.asyncio
async def test_turns_are_kept_in_order(store):
    conversation_id = await store.create_conversation()
    await store.add_turn(conversation_id, "user", "When is my dentist appointment?")
    await store.add_turn(conversation_id, "assistant", "Tuesday at 10:00.")
    await store.add_turn(conversation_id, "user", "Can I move it?")

    history = await store.get_history(conversation_id)

    assert [t["role"] for t in history] == ["user", "assistant", "user"]
    assert history[1]["content"] == "Tuesday at 10:00."
    assert await store.count_turns(conversation_id) == 3

    recent = await store.get_history(conversation_id, limit=2)
    assert [t["content"] for t in recent] == ["Tuesday at 10:00.", "Can I move it?"]


@pytest.mark.asyncio
async def test_persist_answer_is_idempotent_full_replace(store):
    conversation_id = await store.create_conversation()
    turn_id = await store.add_turn(conversation_id, "assistant", "")

    assert await store.persist_answer(turn_id, "Partial") is True
    assert await store.persist_answer(turn_id, "Partial answer") is True
    assert await store.persist_answer(turn_id, "Partial answer") is True

    turn = await store.get_turn(turn_id)
    assert turn["content"] == "Partial answer"


@pytest.mark.asyncio
async def test_persist_answer_for_unknown_turn_returns_false(store, redis_client):
    assert await store.persist_answer("missing", "text") is False
    assert await redis_client.exists("turn:missing") == 0


@pytest.mark.asyncio
async def test_sources_title_and_topics_round_trip(store):
    conversation_id = await store.create_conversation()
    turn_id = await store.add_turn(
        conversation_id,
        "assistant",
        "",
        sources=[{"fileName": "plan.md", "score": 0.9}],
    )

    assert (await store.get_turn(turn_id))["sources"] == [{"fileName": "plan.md", "score": 0.9}]

    await store.update_sources(turn_id, [{"fileName": "plan.md", "isReferenced": True}])
    await store.set_title(conversation_id, "Trip planning")
    await store.set_topics(conversation_id, ["travel", "budget"])

    conversation = await store.get_conversation(conversation_id)
    assert (await store.get_turn(turn_id))["sources"] == [{"fileName": "plan.md", "isReferenced": True}]
    assert conversation["title"] == "Trip planning"
    assert conversation["topics"] == ["travel", "budget"]


@pytest.mark.asyncio
async def test_keys_expire(store, redis_client):
    conversation_id = await store.create_conversation()
    turn_id = await store.add_turn(conversation_id, "user", "hello")

    assert 0 < await redis_client.ttl(f"turn:{turn_id}") <= 3600
    assert 0 < await redis_client.ttl(f"conversation:{conversation_id}:turns") <= 3600
