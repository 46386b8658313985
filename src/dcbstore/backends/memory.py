"""In-process backend.

The log is a list of immutable Event records; an event's sequence is its
index + 1. A single writer lock serializes appends, so the condition check
and the insert cannot interleave with another writer. Readers never take
the lock: they capture the list length up front and iterate that prefix,
receiving copies so nothing outside the backend holds a stored record.
"""

import logging
import threading
from typing import Iterator, Optional

from ..condition import evaluate
from ..constants import STRATEGY_SERIALIZED
from ..models import AppendCondition, AppendResult, Event, NewEvent, Query, utc_now
from ..query import matches
from .base import Backend

logger = logging.getLogger(__name__)


def _detached(event: Event) -> Event:
    """Copy handed to readers; the stored record's tags stay unreachable."""
    return event.model_copy(update={"tags": dict(event.tags)})


class InMemoryBackend(Backend):
    """Single-writer-serialization backend held in process memory.

    Useful for tests and for embedding the store without a database file.
    """

    strategy = STRATEGY_SERIALIZED

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._write_lock = threading.Lock()

    def scan(
        self,
        query: Query,
        from_sequence: int = 0,
        limit: Optional[int] = None,
        tolerant: bool = True,
    ) -> Iterator[Event]:
        # Rows already committed when the read started; later appends are invisible
        end = len(self._events)
        start = max(from_sequence - 1, 0)
        yielded = 0
        for index in range(start, end):
            if limit is not None and yielded >= limit:
                return
            event = self._events[index]
            if matches(event, query):
                yielded += 1
                yield _detached(event)

    def highest_sequence(self, query: Query) -> int:
        end = len(self._events)
        for index in range(end - 1, -1, -1):
            event = self._events[index]
            if matches(event, query):
                return event.sequence
        return 0

    def run_atomic(
        self, batch: list[NewEvent], condition: Optional[AppendCondition] = None
    ) -> AppendResult:
        with self._write_lock:
            if condition is not None:
                observed = self.highest_sequence(condition.fail_if_events_match)
                verdict = evaluate(condition, observed)
                if not verdict.permit:
                    return verdict.to_result()

            first = len(self._events) + 1
            recorded_at = utc_now()
            staged = [
                Event(
                    sequence=first + offset,
                    id=new.id,
                    type=new.type,
                    tags=dict(new.tags),
                    data=new.data,
                    metadata=new.metadata,
                    recorded_at=recorded_at,
                )
                for offset, new in enumerate(batch)
            ]
            # Single list.extend: readers see all of the batch or none of it
            self._events.extend(staged)

        last = first + len(batch) - 1
        logger.debug(f"Appended {len(batch)} events at {first}..{last}")
        return AppendResult.success(first, last)

    def count(self) -> int:
        return len(self._events)
