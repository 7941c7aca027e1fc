"""
Pytest configuration and fixtures for Attic tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis) and a conversation store on top of it
- Scripted chat models for auxiliary and streaming calls
- An in-memory vector search over a fixed chunk corpus
"""

from typing import Dict, List, Optional, Sequence, Union

import pytest

from api.schemas.turn_state import RetrievedChunk, SourceKind


Reply = Union[str, Exception]


class ScriptedModels:
    """
    Stand-in for ``ChatModels``.

    ``replies`` maps a call type to one reply or a list of replies consumed in
    order; an ``Exception`` instance is raised instead of returned. Calls
    with no scripted reply raise, like a model that is down.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Union[Reply, List[Reply]]]] = None,
        tokens: Sequence[str] = (),
        stream_error: Optional[Exception] = None,
    ):
        self.replies = {
            key: list(value) if isinstance(value, list) else [value]
            for key, value in (replies or {}).items()
        }
        self.tokens = list(tokens)
        self.stream_error = stream_error
        self.calls: List[dict] = []

    def call_types(self) -> List[str]:
        return [call["call_type"] for call in self.calls]

    async def complete(self, messages, *, call_type, fast=True, timeout=None):
        self.calls.append({"call_type": call_type, "messages": list(messages), "fast": fast})
        queue = self.replies.get(call_type)
        if not queue:
            raise RuntimeError(f"no scripted reply for {call_type}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream(self, messages):
        self.calls.append({"call_type": "chat_completion", "messages": list(messages), "fast": False})
        for token in self.tokens:
            yield token
        if self.stream_error is not None:
            raise self.stream_error


class FakeVectorSearch:
    """Returns the highest-scoring corpus chunks allowed by the source filter."""

    def __init__(self, corpus: Sequence[RetrievedChunk] = (), error: Optional[Exception] = None):
        self.corpus = list(corpus)
        self.error = error
        self.calls: List[dict] = []

    async def search(self, query, max_results, source_filter="all"):
        self.calls.append({"query": query, "k": max_results, "source_filter": source_filter})
        if self.error is not None:
            raise self.error
        if source_filter == "none":
            return []
        hits = [
            chunk for chunk in self.corpus
            if source_filter == "all" or chunk.source_kind in source_filter
        ]
        hits.sort(key=lambda c: c.score, reverse=True)
        return hits[:max_results]


def build_chunk(
    content: str,
    file_path: str = "notes/plan.md",
    score: float = 0.5,
    source_kind: SourceKind = SourceKind.UPLOADED,
    total_chunks: Optional[int] = 100,
    chunk_index: Optional[int] = None,
) -> RetrievedChunk:
    return RetrievedChunk(
        content=content,
        source_id=file_path,
        file_name=file_path.rsplit("/", 1)[-1],
        file_path=file_path,
        score=score,
        source_kind=source_kind,
        total_chunks=total_chunks,
        chunk_index=chunk_index,
    )


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in the test environment with fresh settings."""
    from libs.common.settings import get_settings

    monkeypatch.setenv("ATTIC_APP_ENV", "test")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture
def store(redis_client):
    from libs.persistence.conversations import ConversationStore

    return ConversationStore(redis_client, ttl_seconds=3600)


@pytest.fixture
def make_models():
    return ScriptedModels


@pytest.fixture
def make_vector_search():
    return FakeVectorSearch


@pytest.fixture
def make_chunk():
    return build_chunk
