"""Backend interface.

A backend owns the physical log and makes "evaluate condition + insert
batch" atomic. How it does that (one writer at a time, or serializable
transactions with conflict detection) is invisible to the store.
"""

from abc import ABC, abstractmethod
from typing import Iterator, Optional

from ..models import AppendCondition, AppendResult, Event, NewEvent, Query


class Backend(ABC):
    """Abstract event log backend.

    All implementations must guarantee:
    - Append-only (no updates, no deletes)
    - Strictly increasing, never reused sequence numbers
    - A batch gets a contiguous run of sequences, in input order
    - Condition check and insert are one atomic unit
    """

    strategy: str = ""

    @abstractmethod
    def scan(
        self,
        query: Query,
        from_sequence: int = 0,
        limit: Optional[int] = None,
        tolerant: bool = True,
    ) -> Iterator[Event]:
        """Yield matching events in ascending sequence order.

        Args:
            query: Predicate over type and tags
            from_sequence: Lowest sequence to return (inclusive)
            limit: Maximum number of events (None = unbounded)
            tolerant: Skip undecodable rows instead of raising
        """
        ...

    @abstractmethod
    def highest_sequence(self, query: Query) -> int:
        """Highest sequence among matching events, or 0."""
        ...

    @abstractmethod
    def run_atomic(
        self, batch: list[NewEvent], condition: Optional[AppendCondition] = None
    ) -> AppendResult:
        """Evaluate the condition and insert the batch as one atomic unit.

        Returns:
            AppendResult: "appended" with the assigned range, "denied" when
            the condition failed, or "conflict" when the backend aborted the
            transaction. Nothing is written unless the status is "appended".

        Raises:
            StorageError: On fatal storage failures
        """
        ...

    @abstractmethod
    def count(self) -> int:
        """Number of events in the log."""
        ...

    def close(self) -> None:
        """Release backend resources. Default does nothing."""
        return None
