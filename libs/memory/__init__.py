"""
Conversation memory for the Attic assistant.

Provides:
- Token-budgeted context window management (sliding, token, smart)
- History summarization for the smart strategy
"""

from libs.memory.context_window import ContextBudget, ContextWindowManager, ManagedContext
from libs.memory.summarizer import HistorySummarizer

__all__ = ["ContextBudget", "ContextWindowManager", "ManagedContext", "HistorySummarizer"]
