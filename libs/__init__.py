"""Attic shared libraries.

This package contains reusable components with no dependency on ``api``:
- common: Settings, token estimation, lifecycle and background tasks
- caching: Redis client factory
- memory: Context window management and history summarization
- persistence: Conversation store
- documents: Full-document loading
"""
