"""Language model access: chat client wrapper and constrained reply parsing."""

from .client import ChatModels, LLMCallError, build_chat_models

__all__ = ["ChatModels", "LLMCallError", "build_chat_models"]
