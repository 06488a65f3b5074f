"""
Entity-set allowlist.

A query may only target one of a configured set of collections (by default
``Vehicles`` and ``SalesData``).  Matching is case-insensitive and exact.
"""
from __future__ import annotations

from typing import Iterable

DEFAULT_ALLOWED_ENTITY_SETS: tuple[str, ...] = ("Vehicles", "SalesData")


def extract_entity_set(query: str) -> str:
    """Return the part of *query* before the first ``?``, trimmed."""
    trimmed = query.strip()
    head, _, _ = trimmed.partition("?")
    return head.strip()


def is_allowed_entity_set(query: str, allowed: Iterable[str] = DEFAULT_ALLOWED_ENTITY_SETS) -> bool:
    entity_set = extract_entity_set(query).lower()
    return any(entity_set == name.lower() for name in allowed)


def disallowed_entity_message(allowed: Iterable[str] = DEFAULT_ALLOWED_ENTITY_SETS) -> str:
    names = list(allowed)
    if len(names) > 1:
        joined = f"{', '.join(names[:-1])} or {names[-1]}"
    else:
        joined = "".join(names)
    return f"Query must target {joined}."
