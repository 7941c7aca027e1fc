"""Attic API Service.

This package contains the FastAPI application and the query-time pipeline
of the Attic personal knowledge assistant.

Main components:
- main.py: FastAPI application and health endpoints
- routers/chat.py: Streamed chat endpoint
- orchestrators/: Routing, iterative retrieval and response streaming
- tools/: Retrieval gateway and vector search adapter
"""

# Avoid importing the FastAPI app at package import time.
__all__ = []
