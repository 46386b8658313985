"""Event store facade: validated reads and conditional appends.

The store never retries. A denied condition or a transient conflict comes
back as an AppendResult; the caller re-reads, rebuilds its decision and
tries again if it wants to.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Mapping, Optional

from pydantic import ValidationError

from .backends.base import Backend
from .errors import EventValidationError
from .models import AppendCondition, AppendResult, Event, NewEvent, Query

logger = logging.getLogger(__name__)


def _validate_tags(tags: Any, position: int) -> None:
    if not isinstance(tags, Mapping):
        raise EventValidationError(f"Event #{position}: tags must be a mapping")
    for key, value in tags.items():
        if not isinstance(key, str) or not key:
            raise EventValidationError(f"Event #{position}: tag keys must be non-empty strings")
        if not isinstance(value, str):
            raise EventValidationError(
                f"Event #{position}: tag {key!r} must have a string value"
            )


def _coerce_event(item: NewEvent | Mapping, position: int) -> NewEvent:
    """Validate one submitted event and return it as a NewEvent."""
    if isinstance(item, Mapping):
        if "tags" in item and item["tags"] is not None:
            _validate_tags(item["tags"], position)
        try:
            item = NewEvent.model_validate(dict(item))
        except ValidationError as e:
            raise EventValidationError(f"Event #{position}: {e}") from e
    elif not isinstance(item, NewEvent):
        raise EventValidationError(
            f"Event #{position}: expected NewEvent or mapping, got {type(item).__name__}"
        )

    if not isinstance(item.type, str) or not item.type.strip():
        raise EventValidationError(f"Event #{position}: type must be a non-empty string")
    _validate_tags(item.tags, position)
    if not isinstance(item.data, bytes):
        raise EventValidationError(f"Event #{position}: data must be bytes")
    return item


def _coerce_query(query: Query | Mapping | None) -> Query:
    if query is None:
        return Query.all()
    if isinstance(query, Query):
        return query
    try:
        return Query.from_dict(dict(query))
    except (ValidationError, TypeError) as e:
        raise EventValidationError(f"Malformed query: {e}") from e


class EventStore:
    """Append-only event store with Dynamic Consistency Boundaries.

    Consistency is enforced per append by a query: the caller passes the
    same query it read with, plus the highest sequence it saw, and the
    append succeeds only if no matching event was recorded since.

    Example:
        query = Query(types={"CourseDefined"}, tags={"courseId": "c1"})
        seen = store.highest_sequence(query)
        result = store.append(
            [NewEvent(type="CourseDefined", tags={"courseId": "c1"})],
            AppendCondition(fail_if_events_match=query, after=seen),
        )
        if not result.appended:
            ...  # re-read and decide again
    """

    def __init__(self, backend: Backend):
        self.backend = backend

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read(
        self,
        query: Query | Mapping | None = None,
        from_sequence: int = 0,
        limit: Optional[int] = None,
        tolerant: bool = True,
    ) -> Iterator[Event]:
        """Lazily read matching events in ascending sequence order.

        Args:
            query: Type/tag predicate (None = every event)
            from_sequence: Lowest sequence to return (inclusive)
            limit: Maximum number of events (None = unbounded)
            tolerant: If True, skip malformed rows with warnings.
                      If False, raise StorageError on the first one.

        Returns:
            Forward-only iterator; abandon it at any point, start a new
            read to begin again.
        """
        query = _coerce_query(query)
        if from_sequence < 0:
            raise EventValidationError("from_sequence must be >= 0")
        if limit is not None and limit < 0:
            raise EventValidationError("limit must be >= 0")
        return self.backend.scan(query, from_sequence=from_sequence, limit=limit, tolerant=tolerant)

    def highest_sequence(self, query: Query | Mapping | None = None) -> int:
        """Highest sequence among events matching the query, or 0."""
        return self.backend.highest_sequence(_coerce_query(query))

    def append(
        self,
        events: Iterable[NewEvent | Mapping],
        condition: Optional[AppendCondition] = None,
    ) -> AppendResult:
        """Append a batch of events, optionally guarded by a condition.

        Args:
            events: Non-empty ordered batch (NewEvent or mapping with
                    type/tags/data/metadata)
            condition: Fail if any event matching condition.fail_if_events_match
                       has a sequence greater than condition.after

        Returns:
            AppendResult: "appended" with (first, last), "denied" if the
            condition failed, "conflict" if the backend aborted the attempt.

        Raises:
            EventValidationError: Malformed input (nothing written)
            StorageError: Fatal storage failure
        """
        batch = [_coerce_event(item, position) for position, item in enumerate(events)]
        if not batch:
            raise EventValidationError("Cannot append an empty batch")
        if condition is not None and not isinstance(condition, AppendCondition):
            raise EventValidationError(
                f"condition must be an AppendCondition, got {type(condition).__name__}"
            )

        result = self.backend.run_atomic(batch, condition)
        if result.denied:
            logger.debug(
                f"Append of {len(batch)} events denied "
                f"(after={result.after}, observed={result.observed})"
            )
        elif result.conflict:
            logger.debug(f"Append of {len(batch)} events hit a transient conflict")
        return result

    def count(self) -> int:
        """Count events."""
        return self.backend.count()

    def close(self) -> None:
        """Release backend resources."""
        self.backend.close()
