"""Durable conversation storage."""

from libs.persistence.conversations import ConversationStore

__all__ = ["ConversationStore"]
