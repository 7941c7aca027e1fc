"""
Query routing for the chat pipeline.

Classifies each incoming query, before any retrieval, into a fast path
(direct search, no rephrasing, no iterative retrieval) or a slow path
(rephrasing, two-stage search, iterative retrieval). Routing is a pure
function of ``QueryFeatures`` scored against a table of weighted rules, so
identical inputs always produce identical routes.

The one model-assisted step is the escape hatch: when a fast-path search
finds only one or two chunks, the fast model is asked whether it can answer
with them, and a negative answer upgrades the route to slow.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from api.composer.prompts import ESCAPE_HATCH_PROMPT
from api.llm.constrained import parse_yes_no
from api.schemas.turn_state import QueryRoute, RoutePath

logger = structlog.get_logger(__name__)

SHORT_QUERY_WORDS = 8
LONG_QUERY_WORDS = 20
ESCAPE_HATCH_MAX_RESULTS = 2

_REFERENCE = re.compile(r"\b(it|this|that|these|those|they|them|he|she|his|her|their)\b", re.IGNORECASE)
_CONTINUATION = re.compile(r"^\s*(what about|how about|and)\b", re.IGNORECASE)
_DEFINITIONAL = re.compile(r"^\s*(what is|what's|what are|who is|who are|when is|when was|where is|define)\b", re.IGNORECASE)
_COUNTING = re.compile(r"\b(how many|how much|count|total|number of)\b", re.IGNORECASE)
_LIST_REQUEST = re.compile(r"^\s*(list|show me|give me|find)\s", re.IGNORECASE)
_COMPLEX = re.compile(r"\b(why|how(?!\s+(many|much)\b)|explain|analy[sz]e|compare|discuss|elaborate)\b", re.IGNORECASE)
_CLAUSES = re.compile(r" and | or |; ", re.IGNORECASE)


@dataclass(frozen=True)
class QueryFeatures:
    """Cheap lexical features of a query in its conversation position."""

    word_count: int
    is_first_message: bool
    has_reference: bool
    is_definitional: bool
    is_counting: bool
    is_list_request: bool
    is_complex: bool
    question_marks: int
    has_multiple_clauses: bool

    @property
    def is_short(self) -> bool:
        return self.word_count <= SHORT_QUERY_WORDS

    @property
    def is_long(self) -> bool:
        return self.word_count > LONG_QUERY_WORDS

    @property
    def is_self_contained(self) -> bool:
        return not self.has_reference

    @property
    def needs_context(self) -> bool:
        return not self.is_first_message and self.has_reference

    @classmethod
    def extract(cls, query: str, is_first_message: bool) -> "QueryFeatures":
        text = query.strip()
        return cls(
            word_count=len(text.split()),
            is_first_message=is_first_message,
            has_reference=bool(_REFERENCE.search(text) or _CONTINUATION.search(text)),
            is_definitional=bool(_DEFINITIONAL.search(text)),
            is_counting=bool(_COUNTING.search(text)),
            is_list_request=bool(_LIST_REQUEST.search(text)),
            is_complex=bool(_COMPLEX.search(text)),
            question_marks=text.count("?"),
            has_multiple_clauses=bool(_CLAUSES.search(text)),
        )


@dataclass(frozen=True)
class RouteRule:
    name: str
    path: RoutePath
    weight: int
    applies: Callable[[QueryFeatures], bool]


# A reference word in a follow-up outweighs shortness: "what does it cost?" needs history.
ROUTE_RULES: Tuple[RouteRule, ...] = (
    RouteRule("short", RoutePath.FAST, 3, lambda f: f.is_short),
    RouteRule("definitional", RoutePath.FAST, 2, lambda f: f.is_definitional),
    RouteRule("self_contained", RoutePath.FAST, 2, lambda f: f.is_self_contained),
    RouteRule("counting", RoutePath.FAST, 2, lambda f: f.is_counting),
    RouteRule("list_request", RoutePath.FAST, 1, lambda f: f.is_list_request),
    RouteRule("first_message", RoutePath.FAST, 1, lambda f: f.is_first_message),
    RouteRule("complex", RoutePath.SLOW, 3, lambda f: f.is_complex),
    RouteRule("multi_part", RoutePath.SLOW, 3, lambda f: f.question_marks > 1),
    RouteRule("multiple_clauses", RoutePath.SLOW, 2, lambda f: f.has_multiple_clauses),
    RouteRule("long", RoutePath.SLOW, 2, lambda f: f.is_long),
    RouteRule("needs_context", RoutePath.SLOW, 4, lambda f: f.needs_context),
)


def score_features(features: QueryFeatures, rules: Sequence[RouteRule] = ROUTE_RULES) -> Tuple[int, int, List[str]]:
    """Return (fast score, slow score, names of matched rules)."""
    fast_score = slow_score = 0
    matched: List[str] = []
    for rule in rules:
        if not rule.applies(features):
            continue
        matched.append(rule.name)
        if rule.path is RoutePath.FAST:
            fast_score += rule.weight
        else:
            slow_score += rule.weight
    return fast_score, slow_score, matched


def route_features(features: QueryFeatures, rules: Sequence[RouteRule] = ROUTE_RULES) -> QueryRoute:
    fast_score, slow_score, matched = score_features(features, rules)
    path = RoutePath.FAST if fast_score > slow_score else RoutePath.SLOW
    is_fast = path is RoutePath.FAST
    return QueryRoute(
        path=path,
        skip_rephrasing=is_fast,
        skip_iterative_retrieval=is_fast,
        skip_source_analysis=is_fast,
        reason=f"{path.value} path: score {fast_score} vs {slow_score} ({', '.join(matched) or 'no rules'})",
    )


def route_query(query: str, is_first_message: bool, history: Sequence[BaseMessage] = ()) -> QueryRoute:
    """
    Classify a query into the fast or slow path.

    Args:
        query: Raw user query
        is_first_message: True when the conversation has no prior turns
        history: Prior messages; only their presence matters, via ``is_first_message``

    Returns:
        A fresh QueryRoute for this turn
    """
    features = QueryFeatures.extract(query, is_first_message)
    route = route_features(features)
    logger.info("Query routed", path=route.path.value, reason=route.reason, history_messages=len(history))
    return route


async def check_escape_hatch(
    route: QueryRoute,
    result_count: int,
    system_prompt: str,
    query: str,
    models,
) -> QueryRoute:
    """
    Ask the fast model whether a thin fast-path context is enough.

    Only runs for a route that skips iterative retrieval and found 1-2
    chunks. A NO upgrades the route to slow (at most once per turn). Model
    failures and unparseable replies leave the route unchanged.
    """
    if not route.skip_iterative_retrieval or route.upgraded:
        return route
    if not 0 < result_count <= ESCAPE_HATCH_MAX_RESULTS:
        return route

    try:
        reply = await models.complete(
            [SystemMessage(content=system_prompt), HumanMessage(content=f"{query}\n\n{ESCAPE_HATCH_PROMPT}")],
            call_type="query_classification",
        )
    except Exception as e:
        logger.warning("Escape hatch check failed, keeping route", error=str(e))
        return route

    if parse_yes_no(reply) is False:
        route.upgrade_to_slow(f"only {result_count} result(s) and model cannot answer")
        logger.info("Route upgraded to slow path", result_count=result_count)
    return route
