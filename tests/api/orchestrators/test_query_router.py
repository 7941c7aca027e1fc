"""
Tests for query routing and the fast-path escape hatch.

Routing is a pure function of lexical features, so cases are enumerated
against the rule table directly.
"""

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from api.orchestrators.query_router import (
    ROUTE_RULES,
    QueryFeatures,
    check_escape_hatch,
    route_features,
    route_query,
    score_features,
)
from api.schemas.turn_state import RoutePath

HISTORY = [HumanMessage(content="Tell me about the Lisbon trip"), AIMessage(content="You fly on May 3.")]


@pytest.mark.parametrize(
    "query,is_first,expected",
    [
        ("hi", True, RoutePath.FAST),
        ("what is my wifi password", True, RoutePath.FAST),
        ("how many books did I read in 2023", True, RoutePath.FAST),
        ("list my upcoming appointments", False, RoutePath.FAST),
        ("when is the dentist appointment", False, RoutePath.FAST),
        ("why did the garden project slip and what should I change next spring?", True, RoutePath.SLOW),
        ("explain the differences between my two home insurance contracts and which covers flooding", True, RoutePath.SLOW),
        ("what does it cost?", False, RoutePath.SLOW),
        ("and the return flight?", False, RoutePath.SLOW),
        ("Which notes mention Ana? Which mention Rui? How do they differ?", True, RoutePath.SLOW),
    ],
)
def test_route_table(query, is_first, expected):
    assert route_features(QueryFeatures.extract(query, is_first)).path is expected


def test_route_is_deterministic():
    first = route_query("what does it cost?", False, HISTORY)
    second = route_query("what does it cost?", False, HISTORY)

    assert first == second


def test_fast_route_sets_skip_flags():
    route = route_query("hi", True)

    assert route.path is RoutePath.FAST
    assert route.skip_rephrasing is True
    assert route.skip_iterative_retrieval is True
    assert route.skip_source_analysis is True
    assert "short" in route.reason


def test_slow_route_clears_skip_flags():
    route = route_query("explain how my savings changed over the year and why", False, HISTORY)

    assert route.path is RoutePath.SLOW
    assert route.skip_rephrasing is False
    assert route.skip_iterative_retrieval is False


def test_reference_words_are_whole_words():
    """'item' and 'thesis' contain pronouns but are not references."""
    assert QueryFeatures.extract("show the item list for my thesis", False).has_reference is False
    assert QueryFeatures.extract("show it", False).has_reference is True


def test_how_many_is_counting_not_complex():
    features = QueryFeatures.extract("how many invoices", True)

    assert features.is_counting is True
    assert features.is_complex is False


def test_score_features_reports_matched_rules():
    features = QueryFeatures.extract("hi", True)

    fast, slow, matched = score_features(features)

    assert slow == 0
    assert fast == sum(r.weight for r in ROUTE_RULES if r.name in matched)
    assert set(matched) == {"short", "self_contained", "first_message"}


class TestEscapeHatch:
    @pytest.mark.asyncio
    async def test_no_upgrades_route_once(self, make_models):
        models = make_models({"query_classification": "NO"})
        route = route_query("what is my passport number", True)

        route = await check_escape_hatch(route, 1, "system", "what is my passport number", models)

        assert route.path is RoutePath.SLOW
        assert route.upgraded is True
        assert route.skip_iterative_retrieval is False
        assert route.skip_rephrasing is True
        assert models.call_types() == ["query_classification"]

        # A second check on the same turn never runs
        await check_escape_hatch(route, 1, "system", "what is my passport number", models)
        assert len(models.calls) == 1

    @pytest.mark.asyncio
    async def test_yes_keeps_fast_route(self, make_models):
        models = make_models({"query_classification": "YES"})
        route = route_query("hi", True)

        route = await check_escape_hatch(route, 2, "system", "hi", models)

        assert route.path is RoutePath.FAST
        assert route.upgraded is False

    @pytest.mark.parametrize("count", [0, 3, 10])
    @pytest.mark.asyncio
    async def test_only_runs_for_one_or_two_results(self, make_models, count):
        models = make_models({"query_classification": "NO"})
        route = route_query("hi", True)

        route = await check_escape_hatch(route, count, "system", "hi", models)

        assert route.path is RoutePath.FAST
        assert models.calls == []

    @pytest.mark.asyncio
    async def test_skipped_on_slow_route(self, make_models):
        models = make_models({"query_classification": "NO"})
        route = route_query("what does it cost?", False, HISTORY)

        await check_escape_hatch(route, 1, "system", "what does it cost?", models)

        assert models.calls == []

    @pytest.mark.parametrize("reply", ["maybe", RuntimeError("model offline")])
    @pytest.mark.asyncio
    async def test_unclear_or_failed_check_keeps_route(self, make_models, reply):
        models = make_models({"query_classification": reply})
        route = route_query("hi", True)

        route = await check_escape_hatch(route, 1, "system", "hi", models)

        assert route.path is RoutePath.FAST
        assert route.upgraded is False
