"""
Retrieval gateway for the chat pipeline.

One interface over two retrieval algorithms:
- Direct search: a single top-K vector query, used on the fast path
- Smart search: keyword analysis plus a broad probe decide which source
  kinds to focus on and how many chunks to fetch, then a second query
  fetches that many

Both are followed by full-content substitution: documents whose retrieved
chunks cover a small file, or a large share of a file, are replaced by the
whole document so the model reads it in one piece.

Every failure here degrades (empty results, chunk-level content); nothing
aborts the turn.
"""

import asyncio
import copy
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional, Sequence

import structlog
from langchain_core.messages import HumanMessage
from pydantic import BaseModel

from api.composer.prompts import COMPLEXITY_JUDGMENT_PROMPT, interpolate
from api.llm.constrained import parse_json_object
from api.schemas.turn_state import (
    VIRTUAL_SOURCE_KINDS,
    ContextBlock,
    QueryRoute,
    RetrievalResult,
    RetrievedChunk,
    RoutePath,
    SourceFilter,
    SourceKind,
)
from api.tools.vector_search import VectorSearch
from libs.common.settings import MAX_TOTAL_CHUNKS, Settings
from libs.documents.loader import DocumentLoader

logger = structlog.get_logger(__name__)

DEFAULT_TOTAL_CHUNKS = 100

Complexity = Literal["simple", "moderate", "complex"]

CHUNKS_BY_COMPLEXITY: Dict[str, int] = {"simple": 5, "moderate": 10, "complex": 20}

BOOK_KEYWORDS = (
    "book", "books", "read", "reading", "author", "novel", "story", "chapter",
    "rated", "rating", "review", "fiction", "non-fiction", "memoir", "biography",
)
DOCUMENT_KEYWORDS = (
    "document", "documents", "file", "files", "pdf", "scan", "scanned", "invoice",
    "receipt", "tax", "contract", "report", "form", "letter", "memo", "correspondence",
)

_COMPLEX_WORDS = re.compile(r"\b(how|why|explain)\b", re.IGNORECASE)


def _keyword_matches(text: str, keywords: Iterable[str]) -> List[str]:
    return [kw for kw in keywords if re.search(rf"\b{re.escape(kw)}\b", text)]


@dataclass
class QueryAnalysis:
    """Heuristic read of what a query needs from retrieval."""

    query_type: Literal["book", "document", "general", "mixed"]
    complexity: Complexity
    suggested_sources: SourceFilter
    suggested_chunk_count: int
    confidence: float
    keywords: List[str] = field(default_factory=list)


def analyze_query(query: str) -> QueryAnalysis:
    """
    Classify a query by topic keywords and complexity.

    Book keywords suggest reading history, document keywords suggest
    scanned and file-backed sources. Complexity maps to a chunk count:
    simple (five words or fewer) 5, moderate 10, complex (long, a
    question, or how/why/explain) 20.
    """
    lower = query.lower()
    word_count = len(lower.split())
    book_matches = _keyword_matches(lower, BOOK_KEYWORDS)
    doc_matches = _keyword_matches(lower, DOCUMENT_KEYWORDS)

    suggested_sources: SourceFilter = "all"
    if book_matches and not doc_matches:
        query_type = "book"
        confidence = min(0.9, 0.6 + len(book_matches) * 0.15)
        suggested_sources = [SourceKind.BOOKS]
    elif doc_matches and not book_matches:
        query_type = "document"
        confidence = min(0.9, 0.6 + len(doc_matches) * 0.15)
        suggested_sources = [SourceKind.SCANNED, SourceKind.UPLOADED, SourceKind.SYNCED]
    elif book_matches and doc_matches:
        query_type, confidence = "mixed", 0.7
    else:
        query_type, confidence = "general", 0.5

    if word_count <= 5:
        complexity: Complexity = "simple"
    elif word_count > 15 or "?" in lower or _COMPLEX_WORDS.search(lower):
        complexity = "complex"
    else:
        complexity = "moderate"

    return QueryAnalysis(
        query_type=query_type,
        complexity=complexity,
        suggested_sources=suggested_sources,
        suggested_chunk_count=CHUNKS_BY_COMPLEXITY[complexity],
        confidence=confidence,
        keywords=book_matches + doc_matches,
    )


def focus_sources(probe: Sequence[RetrievedChunk]) -> SourceFilter:
    """
    Pick the source kinds to focus on from probe hits.

    Focus on the best kind when its average score beats the runner-up by
    more than 15% with at least two hits; on the best two when more than two
    kinds were hit and the best beats the third by more than 20%; otherwise
    search everything.
    """
    totals: Dict[SourceKind, List[float]] = {}
    for chunk in probe:
        totals.setdefault(chunk.source_kind, []).append(chunk.score)
    averages = sorted(
        ((kind, sum(scores) / len(scores), len(scores)) for kind, scores in totals.items()),
        key=lambda item: item[1],
        reverse=True,
    )
    if len(averages) < 2:
        return "all"

    top, second = averages[0], averages[1]
    if top[1] > second[1] * 1.15 and top[2] >= 2:
        return [top[0]]
    if len(averages) > 2 and top[1] > averages[2][1] * 1.2:
        return [top[0], second[0]]
    return "all"


def dedupe(existing: Sequence[RetrievedChunk], new: Sequence[RetrievedChunk]) -> List[RetrievedChunk]:
    """New chunks whose content is not already present, in order, without repeats."""
    seen = {chunk.content for chunk in existing}
    unique: List[RetrievedChunk] = []
    for chunk in new:
        if chunk.content in seen:
            continue
        seen.add(chunk.content)
        unique.append(chunk)
    return unique


class ComplexityJudgment(BaseModel):
    complexity: Complexity


@dataclass
class SmartSearchResult:
    chunks: List[RetrievedChunk]
    used_sources: SourceFilter
    chunk_count: int
    analysis: QueryAnalysis


class RetrievalGateway:
    """
    Direct and smart search behind one interface, with full-content substitution.

    Features:
    - Result counts clamped to [1, MAX_TOTAL_CHUNKS]
    - Probe-driven source focusing and complexity-driven chunk counts
    - Optional fast-model complexity judgment with heuristic fallback
    - Small or heavily sampled documents loaded whole (file-backed sources only)

    Usage:
        gateway = RetrievalGateway(vector_search, DocumentLoader(root), models)
        result = await gateway.retrieve(query, route, "all", 35)
    """

    def __init__(
        self,
        vector_search: VectorSearch,
        document_loader: DocumentLoader,
        models=None,
        *,
        max_total_chunks: int = MAX_TOTAL_CHUNKS,
        fast_path_top_k: int = 10,
        probe_size: int = 10,
        small_document_chunks: int = 5,
        significant_portion_ratio: float = 0.3,
        use_model_judgment: bool = True,
    ):
        self.vector_search = vector_search
        self.document_loader = document_loader
        self.models = models
        self.max_total_chunks = max(1, min(max_total_chunks, MAX_TOTAL_CHUNKS))
        self.fast_path_top_k = fast_path_top_k
        self.probe_size = probe_size
        self.small_document_chunks = small_document_chunks
        self.significant_portion_ratio = significant_portion_ratio
        self.use_model_judgment = use_model_judgment

    @classmethod
    def from_settings(cls, settings: Settings, vector_search: VectorSearch, document_loader: DocumentLoader, models=None):
        return cls(
            vector_search,
            document_loader,
            models,
            max_total_chunks=settings.max_total_chunks,
            fast_path_top_k=settings.fast_path_top_k,
            probe_size=settings.smart_probe_size,
            small_document_chunks=settings.small_document_chunks,
            significant_portion_ratio=settings.significant_portion_ratio,
            use_model_judgment=settings.smart_search_model_judgment,
        )

    def with_models(self, models) -> "RetrievalGateway":
        """Copy of this gateway that makes its model calls through ``models``."""
        clone = copy.copy(self)
        clone.models = models
        return clone

    def clamp(self, max_results: Optional[int]) -> int:
        if max_results is None:
            return self.max_total_chunks
        return max(1, min(int(max_results), self.max_total_chunks))

    async def _search(self, query: str, k: int, source_filter: SourceFilter) -> List[RetrievedChunk]:
        try:
            return await self.vector_search.search(query, k, source_filter)
        except Exception as e:
            logger.warning("Vector search failed, continuing without results", error=str(e), k=k)
            return []

    async def direct_search(
        self,
        query: str,
        source_filter: SourceFilter = "all",
        max_results: Optional[int] = None,
    ) -> List[RetrievedChunk]:
        """Single top-K query; K is the fast-path constant unless ``max_results`` is lower."""
        if source_filter == "none":
            return []
        k = self.clamp(min(self.fast_path_top_k, self.clamp(max_results)))
        return (await self._search(query, k, source_filter))[:k]

    async def _judge_complexity(self, query: str, analysis: QueryAnalysis) -> int:
        """Chunk count from a fast-model judgment, or the heuristic on any failure."""
        try:
            reply = await self.models.complete(
                [HumanMessage(content=interpolate(COMPLEXITY_JUDGMENT_PROMPT, {"question": query}))],
                call_type="query_classification",
            )
        except Exception as e:
            logger.warning("Complexity judgment failed, using heuristic", error=str(e))
            return analysis.suggested_chunk_count

        judgment = parse_json_object(reply, ComplexityJudgment)
        if judgment is None:
            return analysis.suggested_chunk_count
        if judgment.complexity != analysis.complexity:
            logger.debug("Complexity judgment overrides heuristic", heuristic=analysis.complexity, model=judgment.complexity)
            analysis.complexity = judgment.complexity
            analysis.suggested_chunk_count = CHUNKS_BY_COMPLEXITY[judgment.complexity]
        return analysis.suggested_chunk_count

    async def _suggested_count(self, query: str, analysis: QueryAnalysis, use_model_judgment: bool) -> int:
        if use_model_judgment and self.models is not None:
            return await self._judge_complexity(query, analysis)
        return analysis.suggested_chunk_count

    async def smart_search(
        self,
        query: str,
        source_filter: SourceFilter = "all",
        max_results: Optional[int] = None,
        use_model_judgment: Optional[bool] = None,
    ) -> SmartSearchResult:
        """
        Two-stage search.

        Args:
            query: Search query
            source_filter: "all", "none" or an explicit allow-list
            max_results: Upper bound on returned chunks (clamped to [1, 35])
            use_model_judgment: Override the configured complexity judgment

        Returns:
            SmartSearchResult with the final chunks and the sources searched
        """
        analysis = analyze_query(query)
        limit = self.clamp(max_results)
        judge = self.use_model_judgment if use_model_judgment is None else use_model_judgment

        if source_filter == "none":
            return SmartSearchResult([], "none", 0, analysis)

        if source_filter != "all":
            count = min(await self._suggested_count(query, analysis, judge), limit)
            chunks = await self._search(query, count, source_filter)
            return SmartSearchResult(chunks[:count], source_filter, count, analysis)

        if analysis.confidence > 0.7 and analysis.suggested_sources != "all":
            count = min(await self._suggested_count(query, analysis, judge), limit)
            logger.debug("Smart search using suggested sources", confidence=round(analysis.confidence, 2))
            chunks = await self._search(query, count, analysis.suggested_sources)
            return SmartSearchResult(chunks[:count], analysis.suggested_sources, count, analysis)

        probe, suggested = await asyncio.gather(
            self._search(query, self.probe_size, "all"),
            self._suggested_count(query, analysis, judge),
        )
        if not probe:
            return SmartSearchResult([], "all", 0, analysis)

        focused = focus_sources(probe)
        count = min(suggested, limit)
        chunks = await self._search(query, count, focused)
        logger.info(
            "Smart search completed",
            probe_hits=len(probe),
            focused_sources=focused if focused == "all" else [k.value for k in focused],
            requested=count,
            returned=len(chunks),
        )
        return SmartSearchResult(chunks[:count], focused, count, analysis)

    async def retrieve(
        self,
        query: str,
        route: QueryRoute,
        source_filter: SourceFilter = "all",
        max_results: Optional[int] = None,
    ) -> RetrievalResult:
        """Run the algorithm the route asks for, then build context blocks."""
        if source_filter == "none":
            return RetrievalResult(strategy="none")

        start_time = time.time()
        limit = self.clamp(max_results)
        if route.path is RoutePath.FAST:
            chunks = await self.direct_search(query, source_filter, limit)
            strategy = "direct"
        else:
            chunks = (await self.smart_search(query, source_filter, limit)).chunks
            strategy = "smart"

        chunks = chunks[:limit]
        blocks = await self.build_context_blocks(chunks)
        logger.info(
            "Retrieval completed",
            strategy=strategy,
            chunks=len(chunks),
            blocks=len(blocks),
            full_documents=sum(1 for b in blocks if b.full_document),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return RetrievalResult(chunks=chunks, blocks=blocks, strategy=strategy)

    def qualifies_for_full_content(self, group: Sequence[RetrievedChunk]) -> bool:
        first = group[0]
        if first.source_kind in VIRTUAL_SOURCE_KINDS or not first.file_path:
            return False
        total = first.total_chunks or DEFAULT_TOTAL_CHUNKS
        return total <= self.small_document_chunks or len(group) / total > self.significant_portion_ratio

    async def _load_or_none(self, path: str) -> Optional[str]:
        try:
            return await self.document_loader.load(path)
        except Exception as e:
            logger.warning("Full document load failed, using chunks", path=path, error=str(e))
            return None

    async def build_context_blocks(self, chunks: Sequence[RetrievedChunk]) -> List[ContextBlock]:
        """
        Group chunks by document and substitute full content where it qualifies.

        Documents keep the order of their first chunk. A failed load falls
        back to that document's chunks only.
        """
        groups: Dict[str, List[RetrievedChunk]] = {}
        for chunk in chunks:
            key = chunk.file_path or f"{chunk.source_kind.value}:{chunk.source_id}"
            groups.setdefault(key, []).append(chunk)

        candidates = [key for key, group in groups.items() if self.qualifies_for_full_content(group)]
        loaded = await asyncio.gather(*(self._load_or_none(key) for key in candidates))
        full_content = {key: content for key, content in zip(candidates, loaded) if content is not None}

        blocks: List[ContextBlock] = []
        for key, group in groups.items():
            first = group[0]
            if key in full_content:
                blocks.append(
                    ContextBlock(file_name=first.file_name, file_path=first.file_path, content=full_content[key], full_document=True)
                )
                continue
            blocks.extend(
                ContextBlock(file_name=c.file_name, file_path=c.file_path, content=c.content) for c in group
            )
        return blocks
