"""
Process-wide services for the API.

Built once by the process lifecycle at startup and handed to request
handlers through ``app.state.lifecycle``.
"""

from dataclasses import dataclass, field
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status
from langchain_core.vectorstores import InMemoryVectorStore, VectorStore
from langchain_openai import OpenAIEmbeddings

from api.llm.client import ChatModels, build_chat_models
from api.orchestrators.conversation_tasks import PassthroughSourceAnalyzer, SourceAnalyzer
from api.tools.retrieval_gateway import RetrievalGateway
from api.tools.vector_search import LangChainVectorSearch, VectorSearch, similarity_as_relevance
from libs.caching.redis_client import close_redis_client, create_redis_client
from libs.common.background import BackgroundTaskGroup
from libs.common.lifecycle import ProcessLifecycle
from libs.common.settings import Settings, get_settings
from libs.documents.loader import DocumentLoader
from libs.persistence.conversations import ConversationStore

logger = structlog.get_logger(__name__)


@dataclass
class AppServices:
    settings: Settings
    store: ConversationStore
    models: ChatModels
    gateway: RetrievalGateway
    background: BackgroundTaskGroup = field(default_factory=lambda: BackgroundTaskGroup("app"))
    source_analyzer: SourceAnalyzer = field(default_factory=PassthroughSourceAnalyzer)
    redis: Optional[object] = None


def default_vector_store(settings: Settings) -> VectorStore:
    """In-process store over the configured embedding endpoint; ingestion fills it externally."""
    embeddings = OpenAIEmbeddings(
        model=settings.embedding_model,
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        check_embedding_ctx_length=False,
    )
    return InMemoryVectorStore(embeddings)


async def build_services(
    settings: Optional[Settings] = None,
    vector_search: Optional[VectorSearch] = None,
    models: Optional[ChatModels] = None,
) -> AppServices:
    """Create every shared service from settings; collaborators may be injected."""
    settings = settings or get_settings()
    redis_client = await create_redis_client(settings.redis_url, use_fake=settings.is_test)
    store = ConversationStore(redis_client, ttl_seconds=settings.conversation_ttl_seconds)
    models = models or build_chat_models(settings)
    vector_search = vector_search or LangChainVectorSearch(
        default_vector_store(settings), relevance_score_fn=similarity_as_relevance
    )
    gateway = RetrievalGateway.from_settings(
        settings,
        vector_search,
        DocumentLoader(settings.documents_root),
        models,
    )
    return AppServices(settings=settings, store=store, models=models, gateway=gateway, redis=redis_client)


async def close_services(services: AppServices) -> None:
    await services.background.drain()
    await close_redis_client(services.redis)


def create_lifecycle(settings: Optional[Settings] = None) -> ProcessLifecycle[AppServices]:
    return ProcessLifecycle(lambda: build_services(settings), close_services)


def get_services(request: Request) -> AppServices:
    """FastAPI dependency: shared services, or 503 while the process is not initialized."""
    lifecycle: ProcessLifecycle[AppServices] = request.app.state.lifecycle
    if not lifecycle.is_initialized():
        logger.warning("Request received before initialization")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return lifecycle.services
