"""Attic API Service.

FastAPI application for the Attic personal knowledge assistant. Shared
services are built once by a ``ProcessLifecycle`` in the app lifespan.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from api.dependencies import AppServices, create_lifecycle
from api.models import HealthResponse
from api.routers import chat as chat_router
from libs.caching.redis_client import health_check as redis_health_check
from libs.common.lifecycle import ProcessLifecycle
from libs.common.settings import get_settings

API_VERSION = "0.1.0"


def configure_logging(log_level: str) -> None:
    """Route structlog through stdlib logging as JSON lines at ``log_level``."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def create_app(lifecycle: Optional[ProcessLifecycle[AppServices]] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifecycle: Process lifecycle to run in the lifespan; built from
            settings when omitted. Tests inject one with fake collaborators.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    lifecycle = lifecycle or create_lifecycle(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await lifecycle.init()
        try:
            yield
        finally:
            await lifecycle.shutdown()

    app = FastAPI(
        title="Attic Assistant API",
        description="Personal knowledge assistant with streamed, source-grounded answers",
        version=API_VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.lifecycle = lifecycle

    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False if settings.is_development else True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id", "X-Query-Route", "X-Request-ID"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        # Streaming bodies are still being produced at this point
        logger.info(
            "Request completed",
            request_id=request_id,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(chat_router.router, prefix="/api")

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        """Liveness probe with a Redis ping in the details.

        Example:
            ```bash
            curl http://localhost:8000/healthz
            ```
        """
        redis_ok = False
        if lifecycle.is_initialized():
            redis_ok = await redis_health_check(lifecycle.services.redis)
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            details={"initialized": lifecycle.is_initialized(), "redis": redis_ok},
        )

    @app.get("/readyz", response_model=HealthResponse, tags=["Health"])
    async def ready():
        """Readiness probe: ready once the process lifecycle is initialized."""
        if not lifecycle.is_initialized():
            return ORJSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=HealthResponse(status="not_ready", version=API_VERSION).model_dump(),
            )
        return HealthResponse(status="ready", version=API_VERSION)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
