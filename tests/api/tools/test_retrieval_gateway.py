"""
Tests for the retrieval gateway.

Tests verify:
- Keyword and complexity analysis of queries
- Probe-driven source focusing
- Direct search on the fast path, smart search on the slow path
- Full-content substitution for small or heavily sampled documents
- Degradation on search, judgment and load failures
"""

import pytest

from api.schemas.turn_state import QueryRoute, RoutePath, SourceKind
from api.tools.retrieval_gateway import (
    MAX_TOTAL_CHUNKS,
    RetrievalGateway,
    analyze_query,
    dedupe,
    focus_sources,
)
from libs.documents.loader import DocumentLoader

FAST = QueryRoute(path=RoutePath.FAST, skip_rephrasing=True, skip_iterative_retrieval=True, reason="test")
SLOW = QueryRoute(path=RoutePath.SLOW, skip_rephrasing=False, skip_iterative_retrieval=False, reason="test")


@pytest.fixture
def gateway_factory(make_vector_search, tmp_path):
    def build(corpus=(), models=None, **kwargs):
        kwargs.setdefault("use_model_judgment", False)
        search = make_vector_search(corpus)
        return RetrievalGateway(search, DocumentLoader(tmp_path), models, **kwargs), search

    return build


class TestQueryAnalysis:
    def test_book_query(self):
        analysis = analyze_query("books I rated highly")

        assert analysis.query_type == "book"
        assert analysis.suggested_sources == [SourceKind.BOOKS]
        assert analysis.confidence > 0.7

    def test_document_query(self):
        analysis = analyze_query("find my tax invoice")

        assert analysis.query_type == "document"
        assert SourceKind.SCANNED in analysis.suggested_sources

    def test_keywords_match_whole_words(self):
        # "bookkeeping" and "profile" must not count as "book" or "file"
        assert analyze_query("bookkeeping profile").query_type == "general"

    @pytest.mark.parametrize(
        "query,complexity,count",
        [
            ("dentist appointment", "simple", 5),
            ("summarise the quarterly goals for the garden project", "moderate", 10),
            ("why did the garden project slip last spring", "complex", 20),
        ],
    )
    def test_complexity_drives_chunk_count(self, query, complexity, count):
        analysis = analyze_query(query)

        assert analysis.complexity == complexity
        assert analysis.suggested_chunk_count == count


class TestFocusSources:
    def test_single_dominant_kind(self, make_chunk):
        probe = [
            make_chunk("a", score=0.9, source_kind=SourceKind.EMAIL),
            make_chunk("b", score=0.8, source_kind=SourceKind.EMAIL),
            make_chunk("c", score=0.5, source_kind=SourceKind.UPLOADED),
        ]

        assert focus_sources(probe) == [SourceKind.EMAIL]

    def test_top_two_kinds(self, make_chunk):
        probe = [
            make_chunk("a", score=0.80, source_kind=SourceKind.EMAIL),
            make_chunk("b", score=0.75, source_kind=SourceKind.CALENDAR),
            make_chunk("c", score=0.40, source_kind=SourceKind.UPLOADED),
        ]

        assert focus_sources(probe) == [SourceKind.EMAIL, SourceKind.CALENDAR]

    def test_no_clear_winner_searches_everything(self, make_chunk):
        probe = [
            make_chunk("a", score=0.80, source_kind=SourceKind.EMAIL),
            make_chunk("b", score=0.79, source_kind=SourceKind.UPLOADED),
        ]

        assert focus_sources(probe) == "all"

    def test_single_kind_searches_everything(self, make_chunk):
        assert focus_sources([make_chunk("a"), make_chunk("b")]) == "all"


def test_dedupe_by_exact_content(make_chunk):
    existing = [make_chunk("alpha"), make_chunk("beta")]
    new = [make_chunk("beta"), make_chunk("gamma"), make_chunk("gamma"), make_chunk("Alpha")]

    assert [c.content for c in dedupe(existing, new)] == ["gamma", "Alpha"]


def test_clamp(gateway_factory):
    gateway, _ = gateway_factory()

    assert gateway.clamp(None) == MAX_TOTAL_CHUNKS
    assert gateway.clamp(0) == 1
    assert gateway.clamp(500) == MAX_TOTAL_CHUNKS
    assert gateway.clamp(12) == 12


def test_configured_ceiling_cannot_exceed_hard_limit(gateway_factory):
    gateway, _ = gateway_factory(max_total_chunks=80)

    assert gateway.max_total_chunks == MAX_TOTAL_CHUNKS
    assert gateway.clamp(100) == MAX_TOTAL_CHUNKS
    assert gateway.clamp(None) == MAX_TOTAL_CHUNKS


@pytest.mark.asyncio
async def test_fast_route_uses_direct_search(gateway_factory, make_chunk):
    corpus = [make_chunk(f"chunk {i}", file_path=f"doc{i}.md", score=1 - i / 100) for i in range(30)]
    gateway, search = gateway_factory(corpus)

    result = await gateway.retrieve("dentist", FAST, "all", 35)

    assert result.strategy == "direct"
    assert result.count == 10
    assert len(search.calls) == 1
    assert search.calls[0]["k"] == 10


@pytest.mark.asyncio
async def test_direct_search_respects_lower_source_count(gateway_factory, make_chunk):
    corpus = [make_chunk(f"chunk {i}", file_path=f"doc{i}.md") for i in range(30)]
    gateway, _ = gateway_factory(corpus)

    result = await gateway.retrieve("dentist", FAST, "all", 3)

    assert result.count == 3


@pytest.mark.asyncio
async def test_source_filter_none_skips_search(gateway_factory, make_chunk):
    gateway, search = gateway_factory([make_chunk("x")])

    result = await gateway.retrieve("anything", SLOW, "none", 35)

    assert result.count == 0
    assert result.blocks == []
    assert search.calls == []


@pytest.mark.asyncio
async def test_search_failure_degrades_to_empty(make_vector_search, tmp_path):
    search = make_vector_search(error=ConnectionError("index offline"))
    gateway = RetrievalGateway(search, DocumentLoader(tmp_path), use_model_judgment=False)

    result = await gateway.retrieve("anything", FAST)

    assert result.count == 0


@pytest.mark.asyncio
async def test_smart_search_with_explicit_filter_is_single_query(gateway_factory, make_chunk):
    corpus = [make_chunk(f"mail {i}", source_kind=SourceKind.EMAIL) for i in range(10)]
    gateway, search = gateway_factory(corpus)

    result = await gateway.smart_search("dentist appointment", [SourceKind.EMAIL], 35)

    assert len(search.calls) == 1
    assert search.calls[0]["source_filter"] == [SourceKind.EMAIL]
    assert len(result.chunks) == 5


@pytest.mark.asyncio
async def test_smart_search_confident_keywords_skip_probe(gateway_factory, make_chunk):
    corpus = [make_chunk(f"book {i}", source_kind=SourceKind.BOOKS) for i in range(10)]
    gateway, search = gateway_factory(corpus)

    result = await gateway.smart_search("books I rated", "all", 35)

    assert len(search.calls) == 1
    assert result.used_sources == [SourceKind.BOOKS]


@pytest.mark.asyncio
async def test_smart_search_uses_model_judgment(gateway_factory, make_chunk, make_models):
    corpus = [make_chunk(f"note {i}", file_path=f"n{i}.md") for i in range(40)]
    models = make_models({"query_classification": '{"complexity": "complex"}'})
    gateway, _ = gateway_factory(corpus, models, use_model_judgment=True)

    result = await gateway.smart_search("garden plans", "all", 35)

    assert result.chunk_count == 20
    assert models.call_types() == ["query_classification"]


@pytest.mark.asyncio
async def test_smart_search_judgment_failure_uses_heuristic(gateway_factory, make_chunk, make_models):
    corpus = [make_chunk(f"note {i}", file_path=f"n{i}.md") for i in range(40)]
    models = make_models({"query_classification": RuntimeError("model offline")})
    gateway, _ = gateway_factory(corpus, models, use_model_judgment=True)

    result = await gateway.smart_search("garden plans", "all", 35)

    assert result.chunk_count == 5


@pytest.mark.asyncio
async def test_smart_search_substitutes_small_documents(gateway_factory, make_chunk, tmp_path):
    """
    A query spanning many documents: the probe sees 40 hits over 12
    documents, two of which have at most five chunks. Those two are
    loaded whole; the others stay chunk-level.
    """
    (tmp_path / "small-a.md").write_text("FULL TEXT OF A", encoding="utf-8")
    (tmp_path / "small-b.md").write_text("FULL TEXT OF B", encoding="utf-8")

    corpus = [
        make_chunk("a1", file_path="small-a.md", score=0.99, total_chunks=3),
        make_chunk("a2", file_path="small-a.md", score=0.98, total_chunks=3),
        make_chunk("b1", file_path="small-b.md", score=0.97, total_chunks=4),
        make_chunk("b2", file_path="small-b.md", score=0.96, total_chunks=4),
    ]
    for doc in range(10):
        for part in range(4):
            corpus.append(
                make_chunk(
                    f"large {doc}-{part}",
                    file_path=f"large-{doc}.md",
                    score=0.9 - (part * 10 + doc) / 100,
                    total_chunks=200,
                )
            )
    gateway, search = gateway_factory(corpus, probe_size=40)

    result = await gateway.retrieve("compare what my notes say about every garden project and explain", SLOW, "all", 35)

    probe_call = search.calls[0]
    assert probe_call["k"] == 40
    probe_hits = sorted(corpus, key=lambda c: c.score, reverse=True)[:40]
    assert len({c.file_path for c in probe_hits}) == 12
    assert result.strategy == "smart"
    assert result.count == 20

    full = [b for b in result.blocks if b.full_document]
    assert {b.file_path for b in full} == {"small-a.md", "small-b.md"}
    assert {b.content for b in full} == {"FULL TEXT OF A", "FULL TEXT OF B"}
    partial = [b for b in result.blocks if not b.full_document]
    assert len(partial) == 16
    assert all(b.file_path.startswith("large-") for b in partial)
    assert result.blocks[0].file_path == "small-a.md"


@pytest.mark.asyncio
async def test_significant_portion_loads_full_document(gateway_factory, make_chunk, tmp_path):
    (tmp_path / "diary.md").write_text("WHOLE DIARY", encoding="utf-8")
    chunks = [make_chunk(f"d{i}", file_path="diary.md", total_chunks=10) for i in range(4)]
    gateway, _ = gateway_factory()

    blocks = await gateway.build_context_blocks(chunks)

    assert len(blocks) == 1
    assert blocks[0].full_document is True
    assert blocks[0].content == "WHOLE DIARY"


@pytest.mark.asyncio
async def test_load_failure_keeps_chunks(gateway_factory, make_chunk):
    chunks = [make_chunk("m1", file_path="missing.md", total_chunks=2)]
    gateway, _ = gateway_factory()

    blocks = await gateway.build_context_blocks(chunks)

    assert [(b.content, b.full_document) for b in blocks] == [("m1", False)]


@pytest.mark.asyncio
async def test_virtual_sources_are_never_loaded(gateway_factory, make_chunk, tmp_path):
    (tmp_path / "receipt.txt").write_text("should not be read", encoding="utf-8")
    chunks = [
        make_chunk("ocr text", file_path="receipt.txt", total_chunks=1, source_kind=SourceKind.SCANNED),
        make_chunk("meeting at 10", file_path="", total_chunks=1, source_kind=SourceKind.CALENDAR),
    ]
    gateway, _ = gateway_factory()

    blocks = await gateway.build_context_blocks(chunks)

    assert [b.content for b in blocks] == ["ocr text", "meeting at 10"]
    assert not any(b.full_document for b in blocks)


@pytest.mark.asyncio
async def test_unknown_total_chunks_uses_large_default(gateway_factory, make_chunk, tmp_path):
    (tmp_path / "big.md").write_text("BIG", encoding="utf-8")
    chunks = [make_chunk(f"c{i}", file_path="big.md", total_chunks=None) for i in range(5)]
    gateway, _ = gateway_factory()

    blocks = await gateway.build_context_blocks(chunks)

    # 5 of an assumed 100 chunks is below the significant-portion ratio
    assert len(blocks) == 5
