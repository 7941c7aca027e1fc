"""Pydantic models for the Attic API.

This module defines the request and response models used by the HTTP
endpoints. The chat response itself is a plain-text stream, not a model.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from api.schemas.turn_state import SourceFilter, UserProfile, normalize_source_filter


class ChatMessageIn(BaseModel):
    """One message of the conversation as sent by the client."""

    role: Literal["user", "assistant"]
    content: str = Field(max_length=32_000)


class ChatRequest(BaseModel):
    """Request model for a chat turn.

    Attributes:
        messages: Conversation so far; the last entry is the new user message
        conversation_id: Existing conversation to append to, if any
        source_filter: "all", "none", one source kind or a list of kinds
        source_count: Maximum chunks to ground the answer on
        profile: Optional user profile for personalisation
    """

    messages: List[ChatMessageIn] = Field(min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    source_filter: Union[str, List[str]] = Field(default="all", alias="sourceFilter")
    source_count: int = Field(default=35, alias="sourceCount")
    profile: Optional[UserProfile] = None

    model_config = {"populate_by_name": True}

    @field_validator("source_filter")
    @classmethod
    def source_filter_must_be_known(cls, v: Union[str, List[str]]) -> Union[str, List[str]]:
        """Reject unknown source kinds early."""
        normalize_source_filter(v)
        return v

    @model_validator(mode="after")
    def last_message_must_be_user(self) -> "ChatRequest":
        last = self.messages[-1]
        if last.role != "user" or not last.content.strip():
            raise ValueError("The last message must be a non-empty user message")
        return self

    @property
    def query(self) -> str:
        return self.messages[-1].content

    @property
    def history(self) -> List[ChatMessageIn]:
        return self.messages[:-1]

    @property
    def resolved_source_filter(self) -> SourceFilter:
        return normalize_source_filter(self.source_filter)


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/unhealthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"]
    service: str = "attic-api"
    version: str
    timestamp: float = Field(default_factory=time.time)
    details: Optional[Dict[str, Any]] = None
