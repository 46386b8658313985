"""Query engine: one predicate for reads and for write-time checks.

The same Query object is evaluated three ways:
- matches(): in-process, against Event objects
- compile_query(): as a SQL WHERE fragment over the events table
- highest_sequence(): the high-water mark of the matching events

compile_query() output is a plain fragment plus parameters so it can be
nested inside the conditional INSERT that backends run at append time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import Event, Query

if TYPE_CHECKING:
    from .backends.base import Backend


def matches(event: Event, query: Query) -> bool:
    """Return True if the event is selected by the query.

    A missing tag key never matches, even when the required value is "".
    """
    if query.types is not None and event.type not in query.types:
        return False
    if query.tags is not None:
        for key, value in query.tags.items():
            if key not in event.tags or event.tags[key] != value:
                return False
    return True


def compile_query(query: Query, alias: str = "e") -> tuple[str, list]:
    """Compile a query into a SQL boolean expression over `alias`.

    Tags are checked against the event_tags inverted index, one EXISTS
    clause per required key. Types become an IN list. Returns ("1", [])
    for a query that matches everything.

    Returns:
        (sql_fragment, params)
    """
    clauses: list[str] = []
    params: list = []

    if query.types is not None:
        types = sorted(query.types)
        placeholders = ", ".join("?" for _ in types)
        clauses.append(f"{alias}.type IN ({placeholders})")
        params.extend(types)

    if query.tags is not None:
        for key, value in sorted(query.tags.items()):
            clauses.append(
                "EXISTS (SELECT 1 FROM event_tags t"
                f" WHERE t.sequence = {alias}.sequence AND t.key = ? AND t.value = ?)"
            )
            params.extend([key, value])

    if not clauses:
        return "1", []
    return " AND ".join(clauses), params


def compile_highest_sequence(query: Query) -> tuple[str, list]:
    """SQL scalar sub-query yielding the highest matching sequence (or 0)."""
    where, params = compile_query(query, alias="hs")
    return f"(SELECT COALESCE(MAX(hs.sequence), 0) FROM events hs WHERE {where})", params


def highest_sequence(query: Query, backend: "Backend") -> int:
    """Highest sequence among events matching the query, or 0 if none match."""
    return backend.highest_sequence(query)
