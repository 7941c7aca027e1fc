"""
Conversation storage in Redis.

Stores conversations and their ordered turns:
- ``conversation:{id}`` hash with title, topics and timestamps
- ``conversation:{id}:turns`` list of turn ids, oldest first
- ``turn:{id}`` hash with role, content and sources

A turn's content is only ever written as a full replacement, so repeated
``persist_answer`` calls with the same content are harmless.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationStore:
    """
    Redis-backed conversation and turn persistence.

    Features:
    - Append-only turn list per conversation
    - Idempotent full-replace answer writes
    - Sliding TTL refreshed on every write

    Usage:
        store = ConversationStore(redis_client)
        conversation_id = await store.create_conversation()
        turn_id = await store.add_turn(conversation_id, "user", "When is my dentist appointment?")
        await store.persist_answer(assistant_turn_id, "Next Tuesday at 10:00.")
    """

    def __init__(self, redis_client, ttl_seconds: int = 60 * 60 * 24 * 30):
        """
        Initialize conversation store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            ttl_seconds: Expiry applied to every key on write
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _conversation_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}"

    @staticmethod
    def _turns_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}:turns"

    @staticmethod
    def _turn_key(turn_id: str) -> str:
        return f"turn:{turn_id}"

    async def create_conversation(self, title: str = "New Conversation") -> str:
        conversation_id = uuid.uuid4().hex
        key = self._conversation_key(conversation_id)
        now = _now()
        await self.redis.hset(
            key,
            mapping={
                "id": conversation_id,
                "title": title,
                "topics": "[]",
                "created_at": now,
                "updated_at": now,
            },
        )
        await self.redis.expire(key, self.ttl_seconds)
        logger.info("Conversation created", conversation_id=conversation_id)
        return conversation_id

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        data = await self.redis.hgetall(self._conversation_key(conversation_id))
        if not data:
            return None
        data["topics"] = json.loads(data.get("topics") or "[]")
        return data

    async def add_turn(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """
        Append a turn to a conversation.

        Args:
            conversation_id: Conversation identifier
            role: "user" or "assistant"
            content: Initial content (empty for an assistant turn about to stream)
            sources: Optional source attribution records

        Returns:
            The new turn id
        """
        turn_id = uuid.uuid4().hex
        turn_key = self._turn_key(turn_id)
        turns_key = self._turns_key(conversation_id)
        conversation_key = self._conversation_key(conversation_id)
        now = _now()

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                turn_key,
                mapping={
                    "id": turn_id,
                    "conversation_id": conversation_id,
                    "role": role,
                    "content": content,
                    "sources": json.dumps(sources or []),
                    "created_at": now,
                },
            )
            pipe.rpush(turns_key, turn_id)
            pipe.hset(conversation_key, "updated_at", now)
            for key in (turn_key, turns_key, conversation_key):
                pipe.expire(key, self.ttl_seconds)
            await pipe.execute()

        logger.debug(
            "Turn added",
            conversation_id=conversation_id,
            turn_id=turn_id,
            role=role,
            content_length=len(content),
        )
        return turn_id

    async def persist_answer(self, turn_id: str, content: str) -> bool:
        """Overwrite a turn's content. Returns False when the turn is missing or the write fails."""
        key = self._turn_key(turn_id)
        try:
            if not await self.redis.exists(key):
                logger.warning("Cannot persist answer for unknown turn", turn_id=turn_id)
                return False
            await self.redis.hset(key, "content", content)
            return True
        except Exception as e:
            logger.warning("Answer persistence failed", turn_id=turn_id, error=str(e))
            return False

    async def get_turn(self, turn_id: str) -> Optional[Dict[str, Any]]:
        data = await self.redis.hgetall(self._turn_key(turn_id))
        if not data:
            return None
        data["sources"] = json.loads(data.get("sources") or "[]")
        return data

    async def update_sources(self, turn_id: str, sources: List[Dict[str, Any]]) -> None:
        await self.redis.hset(self._turn_key(turn_id), "sources", json.dumps(sources))

    async def get_history(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Get turns in chronological order.

        Args:
            conversation_id: Conversation identifier
            limit: Return only the most recent ``limit`` turns

        Returns:
            List of turn dicts, oldest first
        """
        start = -limit if limit else 0
        turn_ids = await self.redis.lrange(self._turns_key(conversation_id), start, -1)
        turns = []
        for turn_id in turn_ids:
            turn = await self.get_turn(turn_id)
            if turn is not None:
                turns.append(turn)
        return turns

    async def count_turns(self, conversation_id: str) -> int:
        return await self.redis.llen(self._turns_key(conversation_id))

    async def set_title(self, conversation_id: str, title: str) -> None:
        await self.redis.hset(self._conversation_key(conversation_id), "title", title)
        logger.info("Conversation titled", conversation_id=conversation_id, title=title)

    async def set_topics(self, conversation_id: str, topics: List[str]) -> None:
        await self.redis.hset(self._conversation_key(conversation_id), "topics", json.dumps(topics))
