"""
Vector search adapter over a LangChain vector store.

The orchestration core only needs ``search(query, max_results, source_filter)``;
this adapter provides it for any ``langchain_core`` ``VectorStore`` whose
documents carry the chunk metadata written at ingestion time:
``source_id``, ``file_name``, ``file_path``, ``source``, ``total_chunks``
and ``chunk_index``.
"""

from typing import Any, Callable, List, Optional, Protocol, Sequence

import structlog
from langchain_core.documents import Document
from langchain_core.vectorstores import VectorStore
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from api.schemas.turn_state import RetrievedChunk, SourceFilter, SourceKind

logger = structlog.get_logger(__name__)


class VectorSearch(Protocol):
    async def search(
        self,
        query: str,
        max_results: int,
        source_filter: SourceFilter = "all",
    ) -> List[RetrievedChunk]:
        ...


FilterBuilder = Callable[[Sequence[SourceKind]], Any]
RelevanceScoreFn = Callable[[float], float]


def similarity_as_relevance(score: float) -> float:
    """For stores whose raw score is already a similarity, e.g. ``InMemoryVectorStore``."""
    return score


def callable_source_filter(kinds: Sequence[SourceKind]) -> Callable[[Document], bool]:
    """Filter for stores that accept a document predicate (e.g. ``InMemoryVectorStore``)."""
    allowed = {kind.value for kind in kinds}
    return lambda doc: doc.metadata.get("source", SourceKind.UPLOADED.value) in allowed


def document_to_chunk(doc: Document, score: float) -> RetrievedChunk:
    metadata = doc.metadata or {}
    file_path = str(metadata.get("file_path") or metadata.get("path") or "")
    try:
        source_kind = SourceKind(metadata.get("source", SourceKind.UPLOADED.value))
    except ValueError:
        source_kind = SourceKind.UPLOADED
    total_chunks = metadata.get("total_chunks")
    return RetrievedChunk(
        content=doc.page_content,
        source_id=str(metadata.get("source_id") or doc.id or file_path),
        file_name=str(metadata.get("file_name") or file_path.rsplit("/", 1)[-1] or "Unknown"),
        file_path=file_path,
        score=float(score),
        source_kind=source_kind,
        total_chunks=int(total_chunks) if total_chunks is not None else None,
        chunk_index=metadata.get("chunk_index"),
    )


class LangChainVectorSearch:
    """
    ``VectorSearch`` backed by a LangChain vector store.

    Features:
    - Scores normalised by the store so that higher means closer
    - Source allow-lists translated by a pluggable filter builder
    - Transient failures retried with exponential backoff
    - Persistent failures degrade to an empty result set

    Usage:
        search = LangChainVectorSearch(chroma_store)
        search = LangChainVectorSearch(InMemoryVectorStore(embeddings), relevance_score_fn=similarity_as_relevance)
        chunks = await search.search("tax return 2023", 10, [SourceKind.SCANNED])
    """

    def __init__(
        self,
        vector_store: VectorStore,
        filter_builder: Optional[FilterBuilder] = None,
        relevance_score_fn: Optional[RelevanceScoreFn] = None,
    ):
        """
        Args:
            vector_store: Any LangChain vector store
            filter_builder: Turns a source allow-list into the store's ``filter`` argument
            relevance_score_fn: Maps raw store scores to relevance. Only needed for
                stores without their own relevance function; otherwise the store's
                ``asimilarity_search_with_relevance_scores`` does the mapping.
        """
        self.vector_store = vector_store
        self.filter_builder = filter_builder or callable_source_filter
        self.relevance_score_fn = relevance_score_fn

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_not_exception_type(NotImplementedError),
        reraise=True,
    )
    async def _query(self, query: str, k: int, search_filter: Any):
        kwargs = {"filter": search_filter} if search_filter is not None else {}
        if self.relevance_score_fn is None:
            return await self.vector_store.asimilarity_search_with_relevance_scores(query, k=k, **kwargs)
        results = await self.vector_store.asimilarity_search_with_score(query, k=k, **kwargs)
        return [(doc, self.relevance_score_fn(score)) for doc, score in results]

    async def search(
        self,
        query: str,
        max_results: int,
        source_filter: SourceFilter = "all",
    ) -> List[RetrievedChunk]:
        if source_filter == "none" or max_results < 1:
            return []
        search_filter = None if source_filter == "all" else self.filter_builder(source_filter)

        try:
            results = await self._query(query, max_results, search_filter)
        except Exception as e:
            logger.warning("Vector search failed, returning no results", error=str(e), k=max_results)
            return []

        chunks = [document_to_chunk(doc, score) for doc, score in results]
        chunks.sort(key=lambda c: c.score, reverse=True)
        return chunks
