"""
Result-type resolution.

The model may declare a result type; when it is missing or not one of the
four known literals the type is inferred from the query text with an ordered
rule table (first match wins, ``table`` when nothing matches).
"""
from __future__ import annotations

from enum import Enum
from typing import Callable


class ResultType(str, Enum):
    RANKING = "ranking"
    TREND = "trend"
    COMPARISON = "comparison"
    TABLE = "table"


_KNOWN_TYPES = frozenset(t.value for t in ResultType)


Predicate = Callable[[str], bool]


def contains_any(*needles: str) -> Predicate:
    """Predicate matching lower-cased query text containing any of *needles*."""
    lowered = tuple(n.lower() for n in needles)

    def _match(query: str) -> bool:
        return any(n in query for n in lowered)

    return _match


INFERENCE_RULES: tuple[tuple[Predicate, ResultType], ...] = (
    (contains_any("year"), ResultType.TREND),
    (contains_any("$top", "unitssold"), ResultType.RANKING),
    (contains_any("fuel", "make", "model"), ResultType.COMPARISON),
)


def infer_result_type(query: str) -> ResultType:
    q = query.lower()
    for predicate, result_type in INFERENCE_RULES:
        if predicate(q):
            return result_type
    return ResultType.TABLE


def normalize_result_type(declared: str | None, query: str) -> ResultType:
    """Use the declared type when valid, otherwise infer one from *query*."""
    normalized = (declared or "").strip().lower()
    if normalized in _KNOWN_TYPES:
        return ResultType(normalized)
    return infer_result_type(query)
